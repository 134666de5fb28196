"""Shared Pydantic models for ci-leak-scanner."""

from __future__ import annotations

import json
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

MAX_MATCH_EXCERPT_BYTES = 200


class Platform(str, Enum):
    GITLAB = "gitlab"
    GITHUB = "github"
    BITBUCKET = "bitbucket"
    AZURE_DEVOPS = "azure_devops"
    GITEA = "gitea"


class Confidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class Verification(str, Enum):
    VERIFIED = "verified"
    UNVERIFIED = "unverified"
    UNKNOWN = "unknown"


class HitType(str, Enum):
    """Where a finding was discovered."""
    LOG = "log"
    ARCHIVE = "archive"
    NESTED_ARCHIVE = "nested-archive"
    DOTENV = "dotenv"
    TERRAFORM_STATE = "terraform-state"
    SECURE_FILE = "secure-file"
    VARIABLE = "variable"


class FilterKind(str, Enum):
    ALL = "all"
    OWNED = "owned"
    MEMBER = "member"
    PUBLIC = "public"
    REPOSITORY = "repository"
    NAMESPACE = "namespace"
    USER = "user"
    SEARCH = "search"


class RepoFilter(BaseModel):
    """Which repositories an adapter should enumerate."""
    model_config = ConfigDict(frozen=True)

    kind: FilterKind = FilterKind.ALL
    value: str = ""


class Repository(BaseModel):
    """A repository (project) discovered by an adapter."""
    id: str
    path: str
    web_url: str = ""
    default_branch: str = ""
    access_level: int = 0
    extra: dict[str, str] = {}


class Job(BaseModel):
    """Leaf unit of log scanning, newest first within a repository."""
    id: str
    repo_id: str
    repo_path: str = ""
    name: str = ""
    web_url: str = ""
    artifact_size: int = Field(default=0, ge=0)
    has_artifact: bool = False
    has_log: bool = True
    has_dotenv: bool = False
    created_at: datetime | None = None
    extra: dict[str, str] = {}


class QueueItemType(str, Enum):
    JOB_TRACE = "job_trace"
    JOB_ARTIFACT = "job_artifact"
    DOTENV = "dotenv"
    TERRAFORM_STATE = "terraform_state"


class QueueMeta(BaseModel):
    """Identity of the work behind a queue item."""
    project_id: str
    project_path: str = ""
    job_id: str = ""
    job_web_url: str = ""
    job_name: str = ""
    artifact_size: int = 0
    has_artifact: bool = False
    extra: dict[str, str] = {}


class QueueItem(BaseModel):
    """Self-describing unit of work stored in the disk queue."""
    type: QueueItemType
    meta: QueueMeta

    def to_record(self) -> bytes:
        return self.model_dump_json().encode("utf-8")

    @classmethod
    def from_record(cls, record: bytes | str) -> QueueItem:
        return cls.model_validate_json(record)

    def to_job(self) -> Job:
        """Rebuild the adapter-facing job this item was created from."""
        return Job(
            id=self.meta.job_id,
            repo_id=self.meta.project_id,
            repo_path=self.meta.project_path,
            name=self.meta.job_name,
            web_url=self.meta.job_web_url,
            artifact_size=self.meta.artifact_size,
            has_artifact=self.meta.has_artifact,
            extra=dict(self.meta.extra),
        )

    @classmethod
    def for_job(cls, item_type: QueueItemType, job: Job) -> QueueItem:
        return cls(
            type=item_type,
            meta=QueueMeta(
                project_id=job.repo_id,
                project_path=job.repo_path,
                job_id=job.id,
                job_web_url=job.web_url,
                job_name=job.name,
                artifact_size=job.artifact_size,
                has_artifact=job.has_artifact,
                extra=dict(job.extra),
            ),
        )


class RuleMatch(BaseModel):
    """Raw detector output for one rule match inside a buffer."""
    rule: str
    confidence: Confidence
    text: str
    verification: Verification = Verification.UNKNOWN


class Finding(BaseModel):
    """One detected secret with its source attribution."""
    platform: Platform
    repository: str = ""
    repository_url: str = ""
    url: str = ""
    job_name: str = ""
    type: HitType = HitType.LOG
    file: str = ""
    archive: str = ""
    rule: str
    confidence: Confidence
    verification: Verification
    value: str

    @classmethod
    def from_match(cls, match: RuleMatch, **source) -> Finding:
        return cls(
            rule=match.rule,
            confidence=match.confidence,
            verification=match.verification,
            value=truncate_excerpt(match.text),
            **source,
        )

    def to_fields(self) -> dict[str, str]:
        """Flat string fields as written to a hit record, empty values omitted."""
        data = json.loads(self.model_dump_json())
        return {key: value for key, value in data.items() if value != ""}


class RateLimitState(BaseModel):
    """Last rate-limit information observed by the transport."""
    limit: int | None = None
    remaining: int | None = None
    reset_at: datetime | None = None
    throttled: bool = False


class StatusSnapshot(BaseModel):
    """Point-in-time view of scan progress for operators."""
    pending: int
    in_flight: int
    processed: int
    busy_workers: int
    max_workers: int
    rate_limit: RateLimitState = RateLimitState()


def truncate_excerpt(text: str, max_bytes: int = MAX_MATCH_EXCERPT_BYTES) -> str:
    """Cut ``text`` to at most ``max_bytes`` UTF-8 bytes without splitting a character."""
    encoded = text.encode("utf-8")
    if len(encoded) <= max_bytes:
        return text
    return encoded[:max_bytes].decode("utf-8", errors="ignore")
