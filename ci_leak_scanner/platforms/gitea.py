"""Gitea Actions adapter; the Actions endpoints mirror GitHub's."""

from __future__ import annotations

from ci_leak_scanner.models import FilterKind, Platform, RepoFilter
from ci_leak_scanner.options import ScanOptions
from ci_leak_scanner.platforms.github import GitHubAdapter
from ci_leak_scanner.transport import HTTPTransport

API = "/api/v1"


def gitea_transport(options: ScanOptions, **kwargs) -> HTTPTransport:
    return HTTPTransport(
        base_url=f"{options.base_url}{API}",
        headers={"Accept": "application/json", "Authorization": f"token {options.token}"},
        proxy=options.proxy or None,
        ignore_proxy=options.ignore_proxy,
        **kwargs,
    )


class GiteaAdapter(GitHubAdapter):
    platform = Platform.GITEA

    def _repository_source(self, repo_filter: RepoFilter) -> tuple[str, dict, str]:
        limit = {"limit": "50"}
        kind = repo_filter.kind
        if kind == FilterKind.NAMESPACE:
            return f"/orgs/{repo_filter.value}/repos", limit, ""
        if kind == FilterKind.USER:
            return f"/users/{repo_filter.value}/repos", limit, ""
        if kind == FilterKind.SEARCH:
            return "/repos/search", {**limit, "q": repo_filter.value}, "data"
        if kind == FilterKind.PUBLIC:
            return "/repos/search", {**limit, "private": "false"}, "data"
        return "/user/repos", limit, ""

    def _repository(self, data: dict):
        repo = super()._repository(data)
        permissions = data.get("permissions") or {}
        if permissions.get("admin"):
            repo.access_level = 40
        elif permissions.get("push"):
            repo.access_level = 30
        elif permissions.get("pull"):
            repo.access_level = 20
        return repo
