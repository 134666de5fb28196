"""Maps a platform to its adapter class and transport factory."""

from __future__ import annotations

import asyncio

from ci_leak_scanner.models import Platform
from ci_leak_scanner.options import ScanOptions
from ci_leak_scanner.platforms.base import PlatformAdapter
from ci_leak_scanner.platforms.bitbucket import BitbucketAdapter, bitbucket_transport
from ci_leak_scanner.platforms.devops import AzureDevOpsAdapter, devops_transport
from ci_leak_scanner.platforms.gitea import GiteaAdapter, gitea_transport
from ci_leak_scanner.platforms.github import GitHubAdapter, github_transport
from ci_leak_scanner.platforms.gitlab import GitLabAdapter, gitlab_transport

ADAPTERS = {
    Platform.GITLAB: (GitLabAdapter, gitlab_transport),
    Platform.GITHUB: (GitHubAdapter, github_transport),
    Platform.BITBUCKET: (BitbucketAdapter, bitbucket_transport),
    Platform.AZURE_DEVOPS: (AzureDevOpsAdapter, devops_transport),
    Platform.GITEA: (GiteaAdapter, gitea_transport),
}


def create_adapter(options: ScanOptions, cancel_event: asyncio.Event | None = None) -> PlatformAdapter:
    """Build the adapter for ``options.platform``; open its transport before use."""
    adapter_cls, transport_factory = ADAPTERS[options.platform]
    return adapter_cls(options, transport_factory(options, cancel_event=cancel_event))
