"""GitLab CI/CD variable dumping and secure file scanning."""

from __future__ import annotations

import asyncio
import logging
import os

from ci_leak_scanner.errors import AccessDenied, DetectorTimeout, NotFound, ScanError
from ci_leak_scanner.models import Finding, HitType, Platform, RepoFilter, Repository
from ci_leak_scanner.options import ScanOptions
from ci_leak_scanner.platforms.gitlab import GitLabAdapter
from ci_leak_scanner.reporter import Reporter
from ci_leak_scanner.scanners.archive import extract_printable_strings, looks_binary
from ci_leak_scanner.scanners.detector import Detector

logger = logging.getLogger(__name__)


async def _report(detector: Detector, reporter: Reporter, data: bytes, options: ScanOptions, **source) -> None:
    """Detect in a worker thread under the per-buffer timeout and report the matches."""
    try:
        matches = await asyncio.wait_for(
            asyncio.to_thread(detector.detect, data, options.verify, options.hit_timeout),
            timeout=options.hit_timeout,
        )
    except (DetectorTimeout, asyncio.TimeoutError):
        logger.warning(
            "Detector timeout",
            extra={"fields": {"repository": source.get("repository", ""), "file": source.get("file", "")}},
        )
        return
    for match in matches:
        reporter.report(Finding.from_match(match, **source))


async def dump_variables(
    adapter: GitLabAdapter,
    repo_filter: RepoFilter,
    detector: Detector,
    reporter: Reporter,
    group: str = "",
) -> list[dict]:
    """Collect CI/CD variables of the matching projects (or of one group) and scan their values.

    Projects whose variables the token may not read are skipped.
    """
    rows: list[dict] = []
    options = adapter.options

    if group:
        variables = await adapter.list_group_variables(group)
        for var in variables:
            rows.append(_variable_row(group, var))
            await _scan_variable(detector, reporter, options, group, options.base_url + f"/groups/{group}", var)
        return rows

    async for repo in adapter.list_repositories(repo_filter):
        try:
            variables = await adapter.list_project_variables(repo)
        except (AccessDenied, NotFound) as exc:
            logger.debug("Cannot read variables of %s: %s", repo.path, exc)
            continue
        for var in variables:
            rows.append(_variable_row(repo.path, var))
            await _scan_variable(detector, reporter, options, repo.path, repo.web_url, var)
    return rows


def _variable_row(owner: str, var: dict) -> dict:
    return {
        "project": owner,
        "key": var.get("key", ""),
        "value": var.get("value") or "",
        "protected": bool(var.get("protected")),
        "masked": bool(var.get("masked")),
        "environment": var.get("environment_scope") or "*",
    }


async def _scan_variable(
    detector: Detector, reporter: Reporter, options: ScanOptions, owner: str, url: str, var: dict,
) -> None:
    value = var.get("value") or ""
    if not value:
        return
    await _report(
        detector, reporter, f"{var.get('key', '')}={value}".encode("utf-8"), options,
        platform=Platform.GITLAB, repository=owner, repository_url=url, url=f"{url}/-/settings/ci_cd",
        type=HitType.VARIABLE, file=var.get("key", ""),
    )


async def scan_secure_files(
    adapter: GitLabAdapter,
    repo_filter: RepoFilter,
    detector: Detector,
    reporter: Reporter,
    output_dir: str = "",
) -> int:
    """Download every secure file of the matching projects and scan it; returns the file count."""
    count = 0
    async for repo in adapter.list_repositories(repo_filter):
        try:
            files = await adapter.list_secure_files(repo)
        except (AccessDenied, NotFound) as exc:
            logger.debug("Cannot list secure files of %s: %s", repo.path, exc)
            continue

        for meta in files:
            name = meta.get("name", str(meta.get("id", "")))
            try:
                data = await adapter.download_secure_file(repo, meta["id"])
            except ScanError as exc:
                logger.error("Failed downloading secure file %s of %s: %s", name, repo.path, exc)
                continue
            count += 1
            logger.info("Secure file", extra={"fields": {"project": repo.path, "file": name, "size": len(data)}})
            if output_dir:
                _save(output_dir, repo, name, data)
            if looks_binary(data):
                data = extract_printable_strings(data)
            await _report(
                detector, reporter, data, adapter.options,
                platform=adapter.platform, repository=repo.path, repository_url=repo.web_url,
                url=f"{repo.web_url}/-/ci/secure_files", type=HitType.SECURE_FILE, file=name,
            )
    return count


def _save(output_dir: str, repo: Repository, name: str, data: bytes) -> None:
    os.makedirs(output_dir, exist_ok=True)
    path = os.path.join(output_dir, f"{repo.id}_{os.path.basename(name)}")
    with open(path, "wb") as f:
        f.write(data)
    logger.debug("Saved secure file to %s", path)
