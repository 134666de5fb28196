"""GitLab REST (v4) and GraphQL adapter."""

from __future__ import annotations

import gzip
import logging
import os
import zlib
from typing import AsyncIterator, BinaryIO
from urllib.parse import quote

from ci_leak_scanner.errors import CorruptArchive, ScanError, Unauthenticated
from ci_leak_scanner.models import FilterKind, Job, Platform, RepoFilter, Repository
from ci_leak_scanner.options import ScanOptions
from ci_leak_scanner.platforms.base import PlatformAdapter
from ci_leak_scanner.transport import HTTPTransport

logger = logging.getLogger(__name__)

API = "/api/v4"
SESSION_COOKIE = "_gitlab_session"

TERRAFORM_STATES_QUERY = """
query($fullPath: ID!) {
  project(fullPath: $fullPath) {
    terraformStates {
      nodes { name }
    }
  }
}
"""


def gitlab_transport(options: ScanOptions, **kwargs) -> HTTPTransport:
    return HTTPTransport(
        base_url=options.base_url,
        headers={"PRIVATE-TOKEN": options.token},
        proxy=options.proxy or None,
        ignore_proxy=options.ignore_proxy,
        **kwargs,
    )


class GitLabAdapter(PlatformAdapter):
    platform = Platform.GITLAB
    supports_dotenv = True
    supports_terraform = True

    async def preflight(self) -> None:
        user = await self.preflight_get(f"{API}/user")
        logger.debug("Authenticated to GitLab as %s", user.get("username", "?"))
        if self.options.cookie:
            await self.check_session_cookie()

    async def check_session_cookie(self) -> None:
        """Fail when the ``_gitlab_session`` cookie cannot open the active sessions page."""
        url = f"{self.options.base_url}/-/user_settings/active_sessions"
        resp = await self.transport.get(url, headers=self._cookie_header(), follow_redirects=False)
        if resp.status_code != 200:
            raise Unauthenticated(
                f"Invalid {SESSION_COOKIE}, not authorized to access {url} (HTTP {resp.status_code})"
            )
        logger.debug("Session cookie is valid")

    # --- listing ---

    async def _paginate(self, url: str, params: dict | None = None) -> AsyncIterator[dict]:
        """Follow ``X-Next-Page`` headers, yielding items page by page."""
        params = dict(params or {})
        params.setdefault("per_page", "100")
        page = "1"
        while page:
            params["page"] = page
            resp = await self.transport.get(url, params=params)
            for item in resp.json():
                yield item
            page = resp.headers.get("x-next-page", "").strip()

    async def list_repositories(self, repo_filter: RepoFilter) -> AsyncIterator[Repository]:
        if repo_filter.kind == FilterKind.REPOSITORY:
            data = await self.transport.get_json(f"{API}/projects/{quote(repo_filter.value, safe='')}")
            yield self._repository(data)
            return

        params: dict[str, str] = {"order_by": "last_activity_at", "sort": "desc"}
        url = f"{API}/projects"
        if repo_filter.kind == FilterKind.NAMESPACE:
            url = f"{API}/groups/{quote(repo_filter.value, safe='')}/projects"
            params["include_subgroups"] = "true"
        elif repo_filter.kind == FilterKind.OWNED:
            params["owned"] = "true"
        elif repo_filter.kind == FilterKind.MEMBER:
            params["membership"] = "true"
        elif repo_filter.kind == FilterKind.PUBLIC:
            params["visibility"] = "public"
        elif repo_filter.kind == FilterKind.SEARCH:
            params["search"] = repo_filter.value
            params["search_namespaces"] = "true"

        async for data in self._paginate(url, params):
            yield self._repository(data)

    def _repository(self, data: dict) -> Repository:
        permissions = data.get("permissions") or {}
        levels = [
            (permissions.get(scope) or {}).get("access_level") or 0
            for scope in ("project_access", "group_access")
        ]
        return Repository(
            id=str(data["id"]),
            path=data.get("path_with_namespace", ""),
            web_url=data.get("web_url", ""),
            default_branch=data.get("default_branch") or "",
            access_level=max(levels),
        )

    async def list_jobs(self, repo: Repository, max_items: int) -> AsyncIterator[Job]:
        count = 0
        async for pipeline in self._paginate(f"{API}/projects/{repo.id}/pipelines"):
            try:
                jobs = [job async for job in self._paginate(
                    f"{API}/projects/{repo.id}/pipelines/{pipeline['id']}/jobs",
                    {"include_retried": "true"},
                )]
            except ScanError as exc:
                logger.error("Failed listing jobs of pipeline %s in %s: %s", pipeline.get("id"), repo.path, exc)
                continue

            for data in jobs:
                yield self._job(repo, data)
                count += 1
                if 0 < max_items <= count:
                    return

    def _job(self, repo: Repository, data: dict) -> Job:
        artifacts = data.get("artifacts") or []
        archive_size = sum(a.get("size") or 0 for a in artifacts if a.get("file_type") == "archive")
        has_archive = any(a.get("file_type") == "archive" for a in artifacts)
        if not has_archive and data.get("artifacts_file"):
            has_archive = True
            archive_size = data["artifacts_file"].get("size") or 0
        return Job(
            id=str(data["id"]),
            repo_id=repo.id,
            repo_path=repo.path,
            name=data.get("name", ""),
            web_url=data.get("web_url", ""),
            artifact_size=archive_size,
            has_artifact=has_archive,
            has_dotenv=any(a.get("file_type") == "dotenv" for a in artifacts),
        )

    # --- fetching ---

    async def fetch_log(self, job: Job) -> bytes:
        return await self.transport.get_bytes(f"{API}/projects/{job.repo_id}/jobs/{job.id}/trace")

    async def fetch_artifact(self, job: Job, max_bytes: int) -> BinaryIO:
        return await self.transport.download(f"{API}/projects/{job.repo_id}/jobs/{job.id}/artifacts", max_bytes)

    async def fetch_secondary_artifact(self, job: Job) -> bytes:
        """Download the job's dotenv report through the web UI; empty without a cookie."""
        if not self.options.cookie:
            return b""
        url = f"{self.options.base_url}/{job.repo_path}/-/jobs/{job.id}/artifacts/download"
        resp = await self.transport.get(
            url,
            params={"file_type": "dotenv"},
            headers=self._cookie_header(),
            follow_redirects=False,
        )
        if resp.status_code != 200:
            raise Unauthenticated(f"{SESSION_COOKIE} rejected while downloading dotenv of job {job.id} (HTTP {resp.status_code})")
        data = resp.content
        if data[:2] == b"\x1f\x8b":
            try:
                data = gzip.decompress(data)
            except (gzip.BadGzipFile, EOFError, zlib.error) as exc:
                raise CorruptArchive(f"cannot read dotenv of job {job.id}: {exc}") from exc
        return data

    async def list_terraform_states(self, repo: Repository) -> AsyncIterator[Job]:
        payload = await self.transport.post_json(
            "/api/graphql",
            {"query": TERRAFORM_STATES_QUERY, "variables": {"fullPath": repo.path}},
        )
        project = (payload.get("data") or {}).get("project") or {}
        nodes = (project.get("terraformStates") or {}).get("nodes") or []
        for node in nodes:
            name = node.get("name")
            if not name:
                continue
            yield Job(
                id=name,
                repo_id=repo.id,
                repo_path=repo.path,
                name=name,
                web_url=f"{repo.web_url}/-/terraform",
                has_log=False,
            )

    async def fetch_terraform_state(self, job: Job) -> bytes:
        data = await self.transport.get_bytes(
            f"{API}/projects/{job.repo_id}/terraform/state/{quote(job.name, safe='')}"
        )
        if self.options.tf_output_dir and data:
            path = os.path.join(self.options.tf_output_dir, f"{job.repo_id}_{quote(job.name, safe='')}.tfstate")
            try:
                os.makedirs(self.options.tf_output_dir, exist_ok=True)
                with open(path, "wb") as f:
                    f.write(data)
            except OSError as exc:
                logger.error("Failed saving Terraform state %s: %s", path, exc)
            else:
                logger.info("Saved Terraform state %s of %s to %s", job.name, job.repo_path, path)
        return data

    # --- variables and secure files ---

    async def list_project_variables(self, repo: Repository) -> list[dict]:
        return [v async for v in self._paginate(f"{API}/projects/{repo.id}/variables")]

    async def list_group_variables(self, group: str) -> list[dict]:
        return [v async for v in self._paginate(f"{API}/groups/{quote(group, safe='')}/variables")]

    async def list_secure_files(self, repo: Repository) -> list[dict]:
        return await self.transport.get_json(f"{API}/projects/{repo.id}/secure_files")

    async def download_secure_file(self, repo: Repository, file_id: int | str) -> bytes:
        return await self.transport.get_bytes(f"{API}/projects/{repo.id}/secure_files/{file_id}/download")

    def _cookie_header(self) -> dict[str, str]:
        return {"Cookie": f"{SESSION_COOKIE}={self.options.cookie}"}
