"""Immutable, validated scan configuration handed to the Scanner."""

from __future__ import annotations

import httpx
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator, model_validator

from ci_leak_scanner.errors import InvalidConfig
from ci_leak_scanner.models import Confidence, FilterKind, Platform, RepoFilter
from ci_leak_scanner.sizes import parse_duration, parse_size

MIN_WORKERS = 1
MAX_WORKERS = 256

# Known credential prefixes per platform.
TOKEN_PREFIXES: dict[Platform, tuple[str, ...]] = {
    Platform.GITLAB: ("glpat-", "gloas-", "glcbt-"),
    Platform.GITHUB: ("ghp_", "github_pat_", "gho_", "ghs_", "ghu_"),
}


class ScanOptions(BaseModel):
    """Everything one scan needs, checked once before any network I/O."""
    model_config = ConfigDict(frozen=True)

    platform: Platform
    base_url: str
    token: str
    username: str = ""
    cookie: str = ""
    repo_filter: RepoFilter = RepoFilter()
    max_items_per_repo: int = 0
    max_workers: int = 4
    artifacts: bool = False
    max_artifact_bytes: int = 500_000_000
    confidence_filter: frozenset[Confidence] = frozenset()
    verify: bool = True
    hit_timeout: float = 60.0
    queue_dir: str = ""
    keep_queue: bool = False
    terraform: bool = False
    tf_output_dir: str = ""
    status_interval: float = 30.0
    proxy: str = ""
    ignore_proxy: bool = False
    extra: dict[str, str] = {}

    @classmethod
    def create(cls, **values) -> ScanOptions:
        """Build options, turning every validation failure into :class:`InvalidConfig`."""
        try:
            return cls(**values)
        except ValidationError as exc:
            raise InvalidConfig(_describe(exc)) from exc

    @field_validator("base_url")
    @classmethod
    def _check_url(cls, value: str) -> str:
        try:
            url = httpx.URL(value)
        except (httpx.InvalidURL, TypeError) as exc:
            raise InvalidConfig(f"invalid base URL {value!r}: {exc}") from exc
        if url.scheme not in ("http", "https") or not url.host:
            raise InvalidConfig(f"invalid base URL {value!r}: expected http(s)://host")
        return value.rstrip("/")

    @field_validator("max_workers")
    @classmethod
    def _check_workers(cls, value: int) -> int:
        if not MIN_WORKERS <= value <= MAX_WORKERS:
            raise InvalidConfig(f"threads must be between {MIN_WORKERS} and {MAX_WORKERS}, got {value}")
        return value

    @field_validator("max_artifact_bytes", mode="before")
    @classmethod
    def _parse_size(cls, value) -> int:
        return parse_size(value)

    @field_validator("hit_timeout", "status_interval", mode="before")
    @classmethod
    def _parse_duration(cls, value) -> float:
        return parse_duration(value)

    @field_validator("hit_timeout")
    @classmethod
    def _check_hit_timeout(cls, value: float) -> float:
        if value <= 0:
            raise InvalidConfig("hit-timeout must be positive")
        return value

    @field_validator("confidence_filter", mode="before")
    @classmethod
    def _parse_confidence(cls, value) -> frozenset[Confidence]:
        if value is None or value == "":
            return frozenset()
        if isinstance(value, str):
            value = value.split(",")
        parsed = set()
        for tag in value:
            if isinstance(tag, Confidence):
                parsed.add(tag)
                continue
            tag = str(tag).strip().lower()
            if not tag:
                continue
            try:
                parsed.add(Confidence(tag))
            except ValueError:
                known = ", ".join(c.value for c in Confidence)
                raise InvalidConfig(f"unknown confidence {tag!r}, expected one of: {known}") from None
        return frozenset(parsed)

    @model_validator(mode="after")
    def _check_credentials(self) -> ScanOptions:
        check_token(self.platform, self.token)
        if self.platform in (Platform.BITBUCKET, Platform.AZURE_DEVOPS) and not self.username:
            raise InvalidConfig(f"{self.platform.value} requires a username/email for basic auth")
        if self.platform == Platform.AZURE_DEVOPS and not self.extra.get("organization"):
            raise InvalidConfig("azure_devops requires --organization")
        if self.cookie and any(c.isspace() for c in self.cookie):
            raise InvalidConfig("cookie must not contain whitespace")
        return self

    @property
    def artifacts_enabled(self) -> bool:
        return self.artifacts and self.max_artifact_bytes > 0


def check_token(platform: Platform, token: str) -> None:
    """Reject empty tokens, tokens with whitespace and tokens of another platform's family."""
    if not token:
        raise InvalidConfig("token must not be empty")
    if any(c.isspace() for c in token):
        raise InvalidConfig("token must not contain whitespace")

    own = TOKEN_PREFIXES.get(platform)
    if own is None:
        return
    for other, prefixes in TOKEN_PREFIXES.items():
        if other == platform:
            continue
        if token.startswith(prefixes) and not token.startswith(own):
            raise InvalidConfig(
                f"token looks like a {other.value} token, not a {platform.value} token"
            )


def build_repo_filter(
    owned: bool = False,
    member: bool = False,
    public: bool = False,
    repository: str = "",
    namespace: str = "",
    user: str = "",
    search: str = "",
) -> RepoFilter:
    """Combine target-selector flags into one filter; at most one may be set."""
    selected = []
    if owned:
        selected.append(RepoFilter(kind=FilterKind.OWNED))
    if member:
        selected.append(RepoFilter(kind=FilterKind.MEMBER))
    if public:
        selected.append(RepoFilter(kind=FilterKind.PUBLIC))
    if repository:
        selected.append(RepoFilter(kind=FilterKind.REPOSITORY, value=repository.strip("/")))
    if namespace:
        selected.append(RepoFilter(kind=FilterKind.NAMESPACE, value=namespace.strip("/")))
    if user:
        selected.append(RepoFilter(kind=FilterKind.USER, value=user))
    if search:
        selected.append(RepoFilter(kind=FilterKind.SEARCH, value=search))

    if len(selected) > 1:
        names = ", ".join(f.kind.value for f in selected)
        raise InvalidConfig(f"target selectors are mutually exclusive, got: {names}")
    return selected[0] if selected else RepoFilter()


def _describe(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(p) for p in error.get("loc", ()))
        parts.append(f"{location}: {error.get('msg')}" if location else error.get("msg", ""))
    return "; ".join(parts) or str(exc)
