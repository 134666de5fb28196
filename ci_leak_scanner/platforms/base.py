"""Capability set every CI platform adapter provides to the Scanner."""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, BinaryIO

from ci_leak_scanner.errors import NetworkError
from ci_leak_scanner.models import Job, Platform, RateLimitState, RepoFilter, Repository
from ci_leak_scanner.options import ScanOptions
from ci_leak_scanner.transport import HTTPTransport

PREFLIGHT_TIMEOUT = 10.0


class PlatformAdapter(ABC):
    """Lists repositories and jobs and fetches their logs and artifacts.

    Adapters translate platform REST payloads into :class:`Repository` and :class:`Job`
    records; the Scanner never sees raw API responses.
    """

    platform: Platform
    # Repositories below this access level are skipped without a log line.
    min_access_level: int = 0
    supports_dotenv: bool = False
    supports_terraform: bool = False

    def __init__(self, options: ScanOptions, transport: HTTPTransport):
        self.options = options
        self.transport = transport

    @abstractmethod
    async def preflight(self) -> None:
        """Validate credentials once; any exception aborts the scan."""

    @abstractmethod
    def list_repositories(self, repo_filter: RepoFilter) -> AsyncIterator[Repository]:
        """Yield repositories matching ``repo_filter`` in platform order."""

    @abstractmethod
    def list_jobs(self, repo: Repository, max_items: int) -> AsyncIterator[Job]:
        """Yield up to ``max_items`` jobs (all when ``max_items <= 0``), newest first."""

    @abstractmethod
    async def fetch_log(self, job: Job) -> bytes:
        """Full job trace; empty when the platform pruned it."""

    @abstractmethod
    async def fetch_artifact(self, job: Job, max_bytes: int) -> BinaryIO:
        """Download the job's artifact into a file object, reading at most ``max_bytes``."""

    async def fetch_secondary_artifact(self, job: Job) -> bytes:
        """Cookie-authenticated extra artifact (GitLab dotenv); empty when unsupported."""
        return b""

    def list_terraform_states(self, repo: Repository) -> AsyncIterator[Job]:
        """Terraform states of ``repo`` expressed as jobs; none by default."""
        return _empty()

    async def fetch_terraform_state(self, job: Job) -> bytes:
        return b""

    async def preflight_get(self, url: str, **kwargs) -> Any:
        """GET ``url`` as JSON under the short preflight timeout."""
        try:
            return await asyncio.wait_for(self.transport.get_json(url, **kwargs), timeout=PREFLIGHT_TIMEOUT)
        except asyncio.TimeoutError as exc:
            raise NetworkError(f"preflight request {url} timed out after {PREFLIGHT_TIMEOUT}s") from exc

    def rate_limit_state(self) -> RateLimitState:
        return self.transport.rate_limit_state()

    def accepts(self, repo: Repository) -> bool:
        return repo.access_level >= self.min_access_level


async def _empty() -> AsyncIterator[Job]:
    return
    yield


def parse_next_link(link_header: str) -> str | None:
    """Return the ``rel="next"`` URL of an RFC 5988 Link header."""
    for part in link_header.split(","):
        if 'rel="next"' in part:
            return part.split(";")[0].strip().strip("<>")
    return None
