"""GitHub (and GitHub Enterprise) Actions adapter."""

from __future__ import annotations

import logging
from typing import AsyncIterator, BinaryIO

from ci_leak_scanner.errors import ScanError
from ci_leak_scanner.models import FilterKind, Job, Platform, RepoFilter, Repository
from ci_leak_scanner.options import ScanOptions
from ci_leak_scanner.platforms.base import PlatformAdapter, parse_next_link
from ci_leak_scanner.transport import HTTPTransport

logger = logging.getLogger(__name__)


def github_transport(options: ScanOptions, **kwargs) -> HTTPTransport:
    return HTTPTransport(
        base_url=options.base_url,
        headers={
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
            "Authorization": f"Bearer {options.token}",
        },
        proxy=options.proxy or None,
        ignore_proxy=options.ignore_proxy,
        **kwargs,
    )


class GitHubAdapter(PlatformAdapter):
    """Workflow runs, their jobs and their artifacts.

    Artifacts belong to a run, not a job, so each artifact is yielded as its own
    log-less :class:`Job`.
    """

    platform = Platform.GITHUB

    async def preflight(self) -> None:
        user = await self.preflight_get("/user")
        logger.debug("Authenticated to %s as %s", self.platform.value, user.get("login", "?"))

    async def _paginate(self, url: str, params: dict | None = None, key: str = "") -> AsyncIterator[dict]:
        """Follow Link header pagination; ``key`` names the list inside an object payload."""
        next_url: str | None = url
        current_params = params

        while next_url:
            resp = await self.transport.get(next_url, params=current_params)
            data = resp.json()
            items = data.get(key, []) if key and isinstance(data, dict) else data
            for item in items or []:
                yield item

            next_url = parse_next_link(resp.headers.get("link", ""))
            current_params = None  # params are embedded in the Link URL

    def _repository_source(self, repo_filter: RepoFilter) -> tuple[str, dict, str]:
        per_page = {"per_page": "100"}
        kind = repo_filter.kind
        if kind == FilterKind.OWNED:
            return "/user/repos", {**per_page, "affiliation": "owner", "sort": "pushed"}, ""
        if kind == FilterKind.MEMBER:
            return "/user/repos", {**per_page, "affiliation": "collaborator,organization_member", "sort": "pushed"}, ""
        if kind == FilterKind.NAMESPACE:
            return f"/orgs/{repo_filter.value}/repos", {**per_page, "sort": "pushed"}, ""
        if kind == FilterKind.USER:
            return f"/users/{repo_filter.value}/repos", {**per_page, "sort": "pushed"}, ""
        if kind == FilterKind.PUBLIC:
            return "/repositories", {}, ""
        if kind == FilterKind.SEARCH:
            return "/search/repositories", {**per_page, "q": repo_filter.value}, "items"
        return "/user/repos", {**per_page, "sort": "pushed"}, ""

    async def list_repositories(self, repo_filter: RepoFilter) -> AsyncIterator[Repository]:
        if repo_filter.kind == FilterKind.REPOSITORY:
            data = await self.transport.get_json(f"/repos/{repo_filter.value}")
            yield self._repository(data)
            return

        url, params, key = self._repository_source(repo_filter)
        async for data in self._paginate(url, params, key):
            yield self._repository(data)

    def _repository(self, data: dict) -> Repository:
        return Repository(
            id=str(data["id"]),
            path=data.get("full_name", ""),
            web_url=data.get("html_url", ""),
            default_branch=data.get("default_branch") or "",
        )

    async def list_jobs(self, repo: Repository, max_items: int) -> AsyncIterator[Job]:
        count = 0
        runs = self._paginate(f"/repos/{repo.path}/actions/runs", {"per_page": "100"}, "workflow_runs")
        async for run in runs:
            try:
                jobs = [j async for j in self._paginate(
                    f"/repos/{repo.path}/actions/runs/{run['id']}/jobs", {"per_page": "100"}, "jobs",
                )]
                artifacts = [a async for a in self._paginate(
                    f"/repos/{repo.path}/actions/runs/{run['id']}/artifacts", {"per_page": "100"}, "artifacts",
                )]
            except ScanError as exc:
                logger.error("Failed listing workflow run %s of %s: %s", run.get("id"), repo.path, exc)
                continue

            for job in [self._job(repo, run, j) for j in jobs] + [
                self._artifact_job(repo, run, a) for a in artifacts if not a.get("expired")
            ]:
                yield job
                count += 1
                if 0 < max_items <= count:
                    return

    def _job(self, repo: Repository, run: dict, data: dict) -> Job:
        return Job(
            id=str(data["id"]),
            repo_id=repo.id,
            repo_path=repo.path,
            name=f"{run.get('name', '')} / {data.get('name', '')}".strip(" /"),
            web_url=data.get("html_url") or run.get("html_url", ""),
        )

    def _artifact_job(self, repo: Repository, run: dict, data: dict) -> Job:
        return Job(
            id=f"artifact-{data['id']}",
            repo_id=repo.id,
            repo_path=repo.path,
            name=data.get("name", ""),
            web_url=run.get("html_url", ""),
            artifact_size=data.get("size_in_bytes") or 0,
            has_artifact=True,
            has_log=False,
            extra={"artifact_id": str(data["id"]), "download_url": data.get("archive_download_url", "")},
        )

    async def fetch_log(self, job: Job) -> bytes:
        return await self.transport.get_bytes(f"/repos/{job.repo_path}/actions/jobs/{job.id}/logs")

    async def fetch_artifact(self, job: Job, max_bytes: int) -> BinaryIO:
        url = job.extra.get("download_url") or f"/repos/{job.repo_path}/actions/artifacts/{job.extra['artifact_id']}/zip"
        return await self.transport.download(url, max_bytes)
