"""Bitbucket Cloud Pipelines adapter."""

from __future__ import annotations

import logging
from typing import AsyncIterator, BinaryIO

from ci_leak_scanner.errors import ScanError
from ci_leak_scanner.models import FilterKind, Job, Platform, RepoFilter, Repository
from ci_leak_scanner.options import ScanOptions
from ci_leak_scanner.platforms.base import PlatformAdapter
from ci_leak_scanner.transport import HTTPTransport

logger = logging.getLogger(__name__)

WEB_URL = "https://bitbucket.org"


def bitbucket_transport(options: ScanOptions, **kwargs) -> HTTPTransport:
    return HTTPTransport(
        base_url=options.base_url,
        auth=(options.username, options.token),
        headers={"Accept": "application/json"},
        proxy=options.proxy or None,
        ignore_proxy=options.ignore_proxy,
        **kwargs,
    )


class BitbucketAdapter(PlatformAdapter):
    """Pipelines are listed per repository; each pipeline step is one job.

    Repository downloads are the closest thing to retained artifacts and are yielded
    as log-less jobs after the pipeline steps.
    """

    platform = Platform.BITBUCKET

    async def preflight(self) -> None:
        user = await self.preflight_get("/user")
        logger.debug("Authenticated to Bitbucket as %s", user.get("display_name", "?"))

    async def _paginate(self, url: str, params: dict | None = None) -> AsyncIterator[dict]:
        """Follow the ``next`` URL of paged responses."""
        next_url: str | None = url
        current_params = params
        while next_url:
            data = await self.transport.get_json(next_url, params=current_params)
            for item in data.get("values", []):
                yield item
            next_url = data.get("next")
            current_params = None

    async def list_repositories(self, repo_filter: RepoFilter) -> AsyncIterator[Repository]:
        kind = repo_filter.kind
        if kind == FilterKind.REPOSITORY:
            data = await self.transport.get_json(f"/repositories/{repo_filter.value}")
            yield self._repository(data)
            return

        params: dict[str, str] = {"pagelen": "100"}
        url = "/repositories"
        if kind == FilterKind.NAMESPACE:
            url = f"/repositories/{repo_filter.value}"
        elif kind == FilterKind.OWNED:
            params["role"] = "owner"
        elif kind == FilterKind.MEMBER:
            params["role"] = "member"
        elif kind == FilterKind.PUBLIC:
            after = self.options.extra.get("after")
            if after:
                params["after"] = after
        else:
            params["role"] = "member"

        async for data in self._paginate(url, params):
            yield self._repository(data)

    def _repository(self, data: dict) -> Repository:
        return Repository(
            id=data.get("uuid", ""),
            path=data.get("full_name", ""),
            web_url=((data.get("links") or {}).get("html") or {}).get("href", ""),
            default_branch=((data.get("mainbranch") or {}).get("name")) or "",
        )

    async def list_jobs(self, repo: Repository, max_items: int) -> AsyncIterator[Job]:
        count = 0
        pipelines = self._paginate(
            f"/repositories/{repo.path}/pipelines/", {"sort": "-created_on", "pagelen": "100"},
        )
        async for pipeline in pipelines:
            try:
                steps = [s async for s in self._paginate(
                    f"/repositories/{repo.path}/pipelines/{pipeline['uuid']}/steps/",
                )]
            except ScanError as exc:
                logger.error("Failed listing steps of pipeline %s in %s: %s", pipeline.get("build_number"), repo.path, exc)
                continue

            for step in steps:
                yield self._job(repo, pipeline, step)
                count += 1
                if 0 < max_items <= count:
                    return

        try:
            downloads = [d async for d in self._paginate(f"/repositories/{repo.path}/downloads")]
        except ScanError as exc:
            logger.debug("No downloads for %s: %s", repo.path, exc)
            return
        for data in downloads:
            yield self._download_job(repo, data)
            count += 1
            if 0 < max_items <= count:
                return

    def _job(self, repo: Repository, pipeline: dict, step: dict) -> Job:
        build = pipeline.get("build_number", "")
        return Job(
            id=step["uuid"],
            repo_id=repo.id,
            repo_path=repo.path,
            name=step.get("name") or f"pipeline #{build}",
            web_url=f"{WEB_URL}/{repo.path}/pipelines/results/{build}/steps/{step['uuid']}",
            extra={"pipeline_uuid": pipeline["uuid"]},
        )

    def _download_job(self, repo: Repository, data: dict) -> Job:
        href = ((data.get("links") or {}).get("self") or {}).get("href", "")
        return Job(
            id=f"download-{data.get('name', '')}",
            repo_id=repo.id,
            repo_path=repo.path,
            name=data.get("name", ""),
            web_url=href,
            artifact_size=data.get("size") or 0,
            has_artifact=True,
            has_log=False,
            extra={"download_url": href},
        )

    async def fetch_log(self, job: Job) -> bytes:
        return await self.transport.get_bytes(
            f"/repositories/{job.repo_path}/pipelines/{job.extra['pipeline_uuid']}/steps/{job.id}/log"
        )

    async def fetch_artifact(self, job: Job, max_bytes: int) -> BinaryIO:
        return await self.transport.download(job.extra["download_url"], max_bytes)
