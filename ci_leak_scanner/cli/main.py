"""Typer CLI for ci-leak-scanner."""

from __future__ import annotations

import asyncio
import json
import logging
import signal
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.table import Table

from ci_leak_scanner.config import Settings, load_settings
from ci_leak_scanner.errors import InvalidConfig, ScanError
from ci_leak_scanner.log import fatal, run_teardown, setup_logging
from ci_leak_scanner.models import Platform, RepoFilter
from ci_leak_scanner.options import ScanOptions, build_repo_filter
from ci_leak_scanner.platforms.gitlab import GitLabAdapter, gitlab_transport
from ci_leak_scanner.platforms.gitlab_tools import dump_variables, scan_secure_files
from ci_leak_scanner.platforms.registry import create_adapter
from ci_leak_scanner.reporter import Reporter
from ci_leak_scanner.scanner import ScanResult, Scanner
from ci_leak_scanner.scanners.detector import Detector

logger = logging.getLogger("ci_leak_scanner.cli")

app = typer.Typer(
    name="cileak",
    help="Scan CI/CD platforms for secrets leaked in job logs, artifacts and pipeline state.",
    no_args_is_help=True,
)
gl_app = typer.Typer(help="GitLab: scan job logs and artifacts, dump variables and secure files.", no_args_is_help=True)
gh_app = typer.Typer(help="GitHub Actions.", no_args_is_help=True)
bb_app = typer.Typer(help="Bitbucket Pipelines.", no_args_is_help=True)
ad_app = typer.Typer(help="Azure DevOps Pipelines.", no_args_is_help=True)
gitea_app = typer.Typer(help="Gitea Actions.", no_args_is_help=True)
app.add_typer(gl_app, name="gl")
app.add_typer(gh_app, name="gh")
app.add_typer(bb_app, name="bb")
app.add_typer(ad_app, name="ad")
app.add_typer(gitea_app, name="gitea")

console = Console()

# Options shared by every scan command. None means "not given on the command line".
Token = Annotated[Optional[str], typer.Option("--token", "-t", help="API token")]
Threads = Annotated[Optional[int], typer.Option("--threads", help="Number of concurrent workers (default 4)")]
Verification = Annotated[Optional[bool], typer.Option(
    "--truffle-hog-verification/--no-truffle-hog-verification",
    help="Actively verify found credentials against their service (default on)",
)]
Artifacts = Annotated[Optional[bool], typer.Option("--artifacts/--no-artifacts", "-a", help="Scan job artifacts")]
MaxArtifactSize = Annotated[Optional[str], typer.Option(
    "--max-artifact-size", help="Skip artifacts larger than this, e.g. 500Mb, 2GiB (default 500Mb)",
)]
ConfidenceOpt = Annotated[Optional[str], typer.Option(
    "--confidence", help="Comma separated confidence filter: high,medium,low (default all)",
)]
HitTimeout = Annotated[Optional[str], typer.Option("--hit-timeout", help="Per-item detector timeout (default 60s)")]
Owned = Annotated[bool, typer.Option("--owned", "-o", help="Scan only repositories owned by the user")]
Member = Annotated[bool, typer.Option("--member", "-m", help="Scan only repositories the user is a member of")]
Public = Annotated[bool, typer.Option("--public", "-p", help="Scan public repositories")]
Repo = Annotated[str, typer.Option("--repo", "-r", help="Scan a single repository, e.g. owner/repo")]
Search = Annotated[str, typer.Option("--search", "-s", help="Scan repositories matching a search query")]
QueueDir = Annotated[Optional[str], typer.Option("--queue", "-q", help="Directory for the on-disk work queue")]
KeepQueue = Annotated[Optional[bool], typer.Option("--keep-queue", help="Keep the queue directory after exit (debug)")]


@app.callback()
def main(
    ctx: typer.Context,
    config: str = typer.Option("", "--config", help="Config file (yaml, json or toml)"),
    json_output: Optional[bool] = typer.Option(None, "--json", help="Log one JSON object per line"),
    logfile: Optional[str] = typer.Option(None, "--logfile", "-l", help="Append logs to this file"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="debug, info, warn, error"),
    color: Optional[bool] = typer.Option(None, "--color/--no-color", help="Force colored output on or off"),
    ignore_proxy: Optional[bool] = typer.Option(None, "--ignore-proxy", help="Ignore HTTP_PROXY and friends"),
):
    """Global options; apply to every subcommand."""
    try:
        settings = load_settings(config)
    except InvalidConfig as exc:
        setup_logging(json_output=bool(json_output))
        fatal("Invalid configuration: %s", exc)

    level = "debug" if verbose else (log_level or settings.log.level)
    try:
        setup_logging(
            level=level,
            json_output=settings.log.json_output if json_output is None else json_output,
            logfile=settings.log.logfile if logfile is None else logfile,
            color=settings.log.color if color is None else color,
        )
    except ValueError as exc:
        raise typer.BadParameter(str(exc), param_hint="--log-level") from exc
    except OSError as exc:
        raise typer.BadParameter(str(exc), param_hint="--logfile") from exc

    if ignore_proxy is not None:
        settings.common.ignore_proxy = ignore_proxy
    ctx.obj = settings


def _pick(flag, configured):
    return configured if flag is None else flag


def _common_values(
    settings: Settings,
    threads: Optional[int],
    verification: Optional[bool],
    artifacts: Optional[bool],
    max_artifact_size: Optional[str],
    confidence: Optional[str],
    hit_timeout: Optional[str],
    queue_dir: Optional[str],
    keep_queue: Optional[bool],
) -> dict:
    common = settings.common
    return {
        "max_workers": _pick(threads, common.threads),
        "verify": _pick(verification, common.trufflehog_verification),
        "artifacts": _pick(artifacts, common.artifacts),
        "max_artifact_bytes": _pick(max_artifact_size, common.max_artifact_size),
        "confidence_filter": _pick(confidence, common.confidence_filter),
        "hit_timeout": _pick(hit_timeout, common.hit_timeout),
        "queue_dir": _pick(queue_dir, common.queue_dir),
        "keep_queue": _pick(keep_queue, common.keep_queue),
        "status_interval": common.status_interval,
        "proxy": common.proxy,
        "ignore_proxy": common.ignore_proxy,
    }


def _build_options(**values) -> ScanOptions:
    try:
        return ScanOptions.create(**values)
    except InvalidConfig as exc:
        fatal("Invalid configuration: %s", exc)


def _install_signal_handlers(cancel: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()

    def _on_signal(sig: signal.Signals) -> None:
        logger.warning("Received %s, stopping after in-flight items", sig.name)
        cancel.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _on_signal, sig)
        except (NotImplementedError, RuntimeError):
            logger.debug("Signal handler for %s unavailable on this platform", sig.name)


async def _run_scan(options: ScanOptions) -> ScanResult:
    cancel = asyncio.Event()
    _install_signal_handlers(cancel)
    adapter = create_adapter(options, cancel_event=cancel)
    async with adapter.transport:
        scanner = Scanner(options, adapter, cancel_event=cancel)
        return await scanner.run()


def _execute(options: ScanOptions) -> None:
    logger.info(
        "Starting scan",
        extra={"fields": {
            "platform": options.platform.value,
            "url": options.base_url,
            "threads": options.max_workers,
            "artifacts": options.artifacts_enabled,
        }},
    )
    try:
        result = asyncio.run(_run_scan(options))
    except ScanError as exc:
        fatal("Scan failed: %s", exc)
    finally:
        run_teardown()
    if result.cancelled:
        logger.warning("Scan was cancelled before the queue drained")


# --- GitLab ---


@gl_app.command("scan")
def gl_scan(
    ctx: typer.Context,
    token: Token = None,
    gitlab: Annotated[Optional[str], typer.Option("--gitlab", "-g", help="GitLab instance URL")] = None,
    cookie: Annotated[Optional[str], typer.Option("--cookie", "-c", help="_gitlab_session cookie for dotenv artifacts")] = None,
    owned: Owned = False,
    member: Member = False,
    public: Public = False,
    repo: Repo = "",
    namespace: Annotated[str, typer.Option("--namespace", "-n", help="Scan all projects of a group")] = "",
    search: Search = "",
    job_limit: Annotated[Optional[int], typer.Option("--job-limit", "-j", help="Max jobs per project (0 = all)")] = None,
    terraform: Annotated[Optional[bool], typer.Option("--terraform", help="Also scan Terraform states")] = None,
    tf_output_dir: Annotated[Optional[str], typer.Option("--tf-output-dir", help="Save downloaded Terraform states here")] = None,
    threads: Threads = None,
    verification: Verification = None,
    artifacts: Artifacts = None,
    max_artifact_size: MaxArtifactSize = None,
    confidence: ConfidenceOpt = None,
    hit_timeout: HitTimeout = None,
    queue_dir: QueueDir = None,
    keep_queue: KeepQueue = None,
):
    """Scan GitLab job logs, artifacts, dotenv reports and Terraform states."""
    settings: Settings = ctx.obj
    section = settings.gitlab
    repo_filter = _repo_filter(owned=owned, member=member, public=public, repository=repo, namespace=namespace, search=search)
    options = _build_options(
        platform=Platform.GITLAB,
        base_url=_pick(gitlab, section.url),
        token=_pick(token, section.token),
        cookie=_pick(cookie, section.cookie),
        repo_filter=repo_filter,
        max_items_per_repo=_pick(job_limit, section.job_limit),
        terraform=_pick(terraform, section.terraform),
        tf_output_dir=_pick(tf_output_dir, section.tf_output_dir),
        **_common_values(settings, threads, verification, artifacts, max_artifact_size, confidence, hit_timeout, queue_dir, keep_queue),
    )
    _execute(options)


@gl_app.command("variables")
def gl_variables(
    ctx: typer.Context,
    token: Token = None,
    gitlab: Annotated[Optional[str], typer.Option("--gitlab", "-g", help="GitLab instance URL")] = None,
    owned: Owned = False,
    member: Member = False,
    repo: Repo = "",
    namespace: Annotated[str, typer.Option("--namespace", "-n", help="Projects of a group")] = "",
    search: Search = "",
    group: Annotated[str, typer.Option("--group", help="Dump the variables of this group instead of projects")] = "",
    output: Annotated[str, typer.Option("--format", help="table or json")] = "table",
):
    """Print project (or group) CI/CD variables and report secrets found in their values."""
    settings: Settings = ctx.obj
    options = _build_options(
        platform=Platform.GITLAB,
        base_url=_pick(gitlab, settings.gitlab.url),
        token=_pick(token, settings.gitlab.token),
        repo_filter=_repo_filter(owned=owned, member=member, repository=repo, namespace=namespace, search=search),
        verify=settings.common.trufflehog_verification,
        confidence_filter=settings.common.confidence_filter,
        proxy=settings.common.proxy,
        ignore_proxy=settings.common.ignore_proxy,
    )

    async def _run():
        adapter = GitLabAdapter(options, gitlab_transport(options))
        detector = _detector(options)
        try:
            async with adapter.transport:
                await adapter.preflight()
                return await dump_variables(adapter, options.repo_filter, detector, Reporter(), group=group)
        finally:
            detector.close()

    try:
        rows = asyncio.run(_run())
    except ScanError as exc:
        fatal("Listing variables failed: %s", exc)
    finally:
        run_teardown()

    if output == "json":
        console.print_json(json.dumps(rows))
        return
    if not rows:
        console.print("[green]No CI/CD variables found[/green]")
        return

    table = Table(title=f"CI/CD Variables ({len(rows)})")
    table.add_column("Project", style="bold cyan")
    table.add_column("Key")
    table.add_column("Value")
    table.add_column("Protected")
    table.add_column("Masked")
    table.add_column("Environment")
    for row in rows:
        table.add_row(
            row["project"], row["key"], row["value"][:80],
            "yes" if row["protected"] else "no", "yes" if row["masked"] else "no", row["environment"],
        )
    console.print(table)


@gl_app.command("secure-files")
def gl_secure_files(
    ctx: typer.Context,
    token: Token = None,
    gitlab: Annotated[Optional[str], typer.Option("--gitlab", "-g", help="GitLab instance URL")] = None,
    owned: Owned = False,
    member: Member = False,
    repo: Repo = "",
    namespace: Annotated[str, typer.Option("--namespace", "-n", help="Projects of a group")] = "",
    search: Search = "",
    output_dir: Annotated[str, typer.Option("--output-dir", help="Save downloaded secure files here")] = "",
):
    """Download project CI/CD secure files and scan them for secrets."""
    settings: Settings = ctx.obj
    options = _build_options(
        platform=Platform.GITLAB,
        base_url=_pick(gitlab, settings.gitlab.url),
        token=_pick(token, settings.gitlab.token),
        repo_filter=_repo_filter(owned=owned, member=member, repository=repo, namespace=namespace, search=search),
        verify=settings.common.trufflehog_verification,
        confidence_filter=settings.common.confidence_filter,
        proxy=settings.common.proxy,
        ignore_proxy=settings.common.ignore_proxy,
    )

    async def _run():
        adapter = GitLabAdapter(options, gitlab_transport(options))
        detector = _detector(options)
        try:
            async with adapter.transport:
                await adapter.preflight()
                return await scan_secure_files(adapter, options.repo_filter, detector, Reporter(), output_dir)
        finally:
            detector.close()

    try:
        count = asyncio.run(_run())
    except ScanError as exc:
        fatal("Scanning secure files failed: %s", exc)
    finally:
        run_teardown()
    logger.info("Scanned %d secure files", count)


# --- GitHub ---


@gh_app.command("scan")
def gh_scan(
    ctx: typer.Context,
    token: Token = None,
    github: Annotated[Optional[str], typer.Option("--github", help="API URL, e.g. https://ghe.example.com/api/v3")] = None,
    owned: Owned = False,
    member: Member = False,
    public: Public = False,
    repo: Repo = "",
    org: Annotated[str, typer.Option("--org", help="Scan all repositories of an organization")] = "",
    user: Annotated[str, typer.Option("--user", help="Scan all repositories of a user")] = "",
    search: Search = "",
    max_workflows: Annotated[Optional[int], typer.Option("--max-workflows", help="Max jobs per repository (0 = all)")] = None,
    threads: Threads = None,
    verification: Verification = None,
    artifacts: Artifacts = None,
    max_artifact_size: MaxArtifactSize = None,
    confidence: ConfidenceOpt = None,
    hit_timeout: HitTimeout = None,
    queue_dir: QueueDir = None,
    keep_queue: KeepQueue = None,
):
    """Scan GitHub Actions workflow logs and artifacts."""
    settings: Settings = ctx.obj
    section = settings.github
    options = _build_options(
        platform=Platform.GITHUB,
        base_url=_pick(github, section.url),
        token=_pick(token, section.token),
        repo_filter=_repo_filter(owned=owned, member=member, public=public, repository=repo, namespace=org, user=user, search=search),
        max_items_per_repo=_pick(max_workflows, section.max_workflows),
        **_common_values(settings, threads, verification, artifacts, max_artifact_size, confidence, hit_timeout, queue_dir, keep_queue),
    )
    _execute(options)


# --- Bitbucket ---


@bb_app.command("scan")
def bb_scan(
    ctx: typer.Context,
    token: Token = None,
    email: Annotated[Optional[str], typer.Option("--email", "-e", help="Atlassian account email")] = None,
    bitbucket: Annotated[Optional[str], typer.Option("--bitbucket", help="API URL")] = None,
    owned: Owned = False,
    member: Member = False,
    public: Public = False,
    repo: Repo = "",
    workspace: Annotated[str, typer.Option("--workspace", "-w", help="Scan all repositories of a workspace")] = "",
    after: Annotated[str, typer.Option("--after", help="With --public: repositories created after this date")] = "",
    max_pipelines: Annotated[Optional[int], typer.Option("--max-pipelines", help="Max steps per repository (0 = all)")] = None,
    threads: Threads = None,
    verification: Verification = None,
    artifacts: Artifacts = None,
    max_artifact_size: MaxArtifactSize = None,
    confidence: ConfidenceOpt = None,
    hit_timeout: HitTimeout = None,
    queue_dir: QueueDir = None,
    keep_queue: KeepQueue = None,
):
    """Scan Bitbucket Pipelines step logs and repository downloads."""
    settings: Settings = ctx.obj
    section = settings.bitbucket
    options = _build_options(
        platform=Platform.BITBUCKET,
        base_url=_pick(bitbucket, section.url),
        token=_pick(token, section.token),
        username=_pick(email, section.email),
        repo_filter=_repo_filter(owned=owned, member=member, public=public, repository=repo, namespace=workspace),
        max_items_per_repo=_pick(max_pipelines, section.max_pipelines),
        extra={"after": after} if after else {},
        **_common_values(settings, threads, verification, artifacts, max_artifact_size, confidence, hit_timeout, queue_dir, keep_queue),
    )
    _execute(options)


# --- Azure DevOps ---


@ad_app.command("scan")
def ad_scan(
    ctx: typer.Context,
    token: Token = None,
    username: Annotated[Optional[str], typer.Option("--username", "-u", help="Azure DevOps username")] = None,
    devops: Annotated[Optional[str], typer.Option("--devops", help="Azure DevOps URL")] = None,
    organization: Annotated[Optional[str], typer.Option("--organization", help="Organization to scan")] = None,
    project: Annotated[str, typer.Option("--project", help="Scan a single project")] = "",
    max_builds: Annotated[Optional[int], typer.Option("--max-builds", help="Max builds per project (0 = all)")] = None,
    threads: Threads = None,
    verification: Verification = None,
    artifacts: Artifacts = None,
    max_artifact_size: MaxArtifactSize = None,
    confidence: ConfidenceOpt = None,
    hit_timeout: HitTimeout = None,
    queue_dir: QueueDir = None,
    keep_queue: KeepQueue = None,
):
    """Scan Azure DevOps build logs and artifacts."""
    settings: Settings = ctx.obj
    section = settings.azure_devops
    org = _pick(organization, section.organization)
    options = _build_options(
        platform=Platform.AZURE_DEVOPS,
        base_url=_pick(devops, section.url),
        token=_pick(token, section.token),
        username=_pick(username, section.username),
        repo_filter=_repo_filter(repository=project),
        max_items_per_repo=_pick(max_builds, section.max_builds),
        extra={"organization": org} if org else {},
        **_common_values(settings, threads, verification, artifacts, max_artifact_size, confidence, hit_timeout, queue_dir, keep_queue),
    )
    _execute(options)


# --- Gitea ---


@gitea_app.command("scan")
def gitea_scan(
    ctx: typer.Context,
    token: Token = None,
    gitea: Annotated[Optional[str], typer.Option("--gitea", help="Gitea instance URL")] = None,
    owned: Owned = False,
    organization: Annotated[str, typer.Option("--organization", help="Scan all repositories of an organization")] = "",
    repo: Repo = "",
    search: Search = "",
    runs_limit: Annotated[Optional[int], typer.Option("--runs-limit", help="Max jobs per repository (0 = all)")] = None,
    threads: Threads = None,
    verification: Verification = None,
    artifacts: Artifacts = None,
    max_artifact_size: MaxArtifactSize = None,
    confidence: ConfidenceOpt = None,
    hit_timeout: HitTimeout = None,
    queue_dir: QueueDir = None,
    keep_queue: KeepQueue = None,
):
    """Scan Gitea Actions logs and artifacts."""
    settings: Settings = ctx.obj
    section = settings.gitea
    options = _build_options(
        platform=Platform.GITEA,
        base_url=_pick(gitea, section.url),
        token=_pick(token, section.token),
        repo_filter=_repo_filter(owned=owned, repository=repo, namespace=organization, search=search),
        max_items_per_repo=_pick(runs_limit, section.runs_limit),
        **_common_values(settings, threads, verification, artifacts, max_artifact_size, confidence, hit_timeout, queue_dir, keep_queue),
    )
    _execute(options)


# --- helpers ---


def _repo_filter(**selectors) -> RepoFilter:
    try:
        return build_repo_filter(**selectors)
    except InvalidConfig as exc:
        fatal("Invalid configuration: %s", exc)


def _detector(options: ScanOptions) -> Detector:
    return Detector(options.confidence_filter)
