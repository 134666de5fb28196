"""Azure DevOps Pipelines adapter."""

from __future__ import annotations

import logging
from typing import AsyncIterator, BinaryIO
from urllib.parse import quote

from ci_leak_scanner.errors import ScanError, Unauthenticated
from ci_leak_scanner.models import FilterKind, Job, Platform, RepoFilter, Repository
from ci_leak_scanner.options import ScanOptions
from ci_leak_scanner.platforms.base import PlatformAdapter
from ci_leak_scanner.transport import HTTPTransport

logger = logging.getLogger(__name__)

API_VERSION = "7.1"
CONTINUATION_HEADER = "x-ms-continuationtoken"


def devops_transport(options: ScanOptions, **kwargs) -> HTTPTransport:
    return HTTPTransport(
        base_url=options.base_url,
        auth=(options.username, options.token),
        headers={"Accept": "application/json"},
        proxy=options.proxy or None,
        ignore_proxy=options.ignore_proxy,
        **kwargs,
    )


class AzureDevOpsAdapter(PlatformAdapter):
    """Projects of one organization play the role of repositories; each build is a job."""

    platform = Platform.AZURE_DEVOPS

    @property
    def organization(self) -> str:
        return self.options.extra["organization"]

    async def preflight(self) -> None:
        url = f"/{self.organization}/_apis/projects"
        resp = await self.transport.get(url, params={"api-version": API_VERSION, "$top": "1"})
        # A rejected PAT is answered with a sign-in page instead of a 401.
        if resp.status_code == 203 or "json" not in resp.headers.get("content-type", ""):
            raise Unauthenticated(f"Azure DevOps rejected the credential for organization {self.organization}")
        logger.debug("Authenticated to Azure DevOps organization %s", self.organization)

    async def _paginate(self, url: str, params: dict | None = None) -> AsyncIterator[dict]:
        """Follow ``x-ms-continuationtoken`` headers."""
        params = {"api-version": API_VERSION, **(params or {})}
        while True:
            resp = await self.transport.get(url, params=params)
            for item in resp.json().get("value", []):
                yield item
            token = resp.headers.get(CONTINUATION_HEADER)
            if not token:
                return
            params["continuationToken"] = token

    async def list_repositories(self, repo_filter: RepoFilter) -> AsyncIterator[Repository]:
        if repo_filter.kind == FilterKind.REPOSITORY:
            data = await self.transport.get_json(
                f"/{self.organization}/_apis/projects/{quote(repo_filter.value, safe='')}",
                params={"api-version": API_VERSION},
            )
            yield self._repository(data)
            return

        async for data in self._paginate(f"/{self.organization}/_apis/projects"):
            yield self._repository(data)

    def _repository(self, data: dict) -> Repository:
        name = data.get("name", "")
        return Repository(
            id=data.get("id", name),
            path=f"{self.organization}/{name}",
            web_url=f"{self.options.base_url}/{self.organization}/{quote(name)}",
            extra={"project": name},
        )

    def _project_api(self, project: str) -> str:
        return f"/{self.organization}/{quote(project)}/_apis"

    async def list_jobs(self, repo: Repository, max_items: int) -> AsyncIterator[Job]:
        project = repo.extra["project"]
        api = self._project_api(project)
        params = {"queryOrder": "queueTimeDescending"}
        if max_items > 0:
            params["$top"] = str(max_items)

        count = 0
        async for build in self._paginate(f"{api}/build/builds", params):
            job = self._job(repo, build)
            yield job
            count += 1
            if 0 < max_items <= count:
                return

            try:
                artifacts = [a async for a in self._paginate(f"{api}/build/builds/{build['id']}/artifacts")]
            except ScanError as exc:
                logger.error("Failed listing artifacts of build %s in %s: %s", build.get("id"), repo.path, exc)
                continue
            for data in artifacts:
                yield self._artifact_job(repo, build, data)
                count += 1
                if 0 < max_items <= count:
                    return

    def _job(self, repo: Repository, build: dict) -> Job:
        definition = (build.get("definition") or {}).get("name", "")
        return Job(
            id=str(build["id"]),
            repo_id=repo.id,
            repo_path=repo.path,
            name=f"{definition} #{build.get('buildNumber', build['id'])}".strip(),
            web_url=(((build.get("_links") or {}).get("web") or {}).get("href", "")),
            extra={"project": repo.extra["project"]},
        )

    def _artifact_job(self, repo: Repository, build: dict, data: dict) -> Job:
        resource = data.get("resource") or {}
        size = (resource.get("properties") or {}).get("artifactsize") or "0"
        return Job(
            id=f"{build['id']}-artifact-{data.get('id', data.get('name', ''))}",
            repo_id=repo.id,
            repo_path=repo.path,
            name=data.get("name", ""),
            web_url=(((build.get("_links") or {}).get("web") or {}).get("href", "")),
            artifact_size=int(size) if str(size).isdigit() else 0,
            has_artifact=True,
            has_log=False,
            extra={"project": repo.extra["project"], "download_url": resource.get("downloadUrl", "")},
        )

    async def fetch_log(self, job: Job) -> bytes:
        api = self._project_api(job.extra["project"])
        logs = [entry async for entry in self._paginate(f"{api}/build/builds/{job.id}/logs")]
        parts = []
        for entry in logs:
            parts.append(await self.transport.get_bytes(
                f"{api}/build/builds/{job.id}/logs/{entry['id']}",
                params={"api-version": API_VERSION},
            ))
        return b"\n".join(parts)

    async def fetch_artifact(self, job: Job, max_bytes: int) -> BinaryIO:
        return await self.transport.download(job.extra["download_url"], max_bytes)
