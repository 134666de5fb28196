"""Scan orchestration: discovery, disk queue, worker pool, detection and reporting."""

from __future__ import annotations

import asyncio
import functools
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum

from ci_leak_scanner.diskqueue import DEFAULT_CAPACITY, PersistentQueue
from ci_leak_scanner.errors import (
    AccessDenied,
    Cancelled,
    CorruptArchive,
    DetectorTimeout,
    NotFound,
    Oversized,
    OversizedAfterDownload,
    ScanError,
    SinkError,
    Unauthenticated,
)
from ci_leak_scanner.models import (
    Finding,
    HitType,
    Job,
    QueueItem,
    QueueItemType,
    Repository,
    RuleMatch,
    StatusSnapshot,
)
from ci_leak_scanner.options import ScanOptions
from ci_leak_scanner.platforms.base import PlatformAdapter
from ci_leak_scanner.reporter import Reporter
from ci_leak_scanner.scanners.archive import iter_artifact_entries
from ci_leak_scanner.scanners.detector import Detector
from ci_leak_scanner.sizes import format_size

logger = logging.getLogger(__name__)


class ScanState(str, Enum):
    CONFIGURED = "configured"
    VALIDATING = "validating"
    RUNNING = "running"
    DRAINING = "draining"
    DONE = "done"
    FAILED = "failed"


@dataclass
class ScanResult:
    state: ScanState
    repositories: int = 0
    enqueued: int = 0
    processed: int = 0
    hits: int = 0
    cancelled: bool = False


class Scanner:
    """Runs one scan from preflight to queue drain.

    A single producer walks repositories and jobs into the disk queue while
    ``max_workers`` worker tasks dequeue items, fetch their content and hand it to the
    detector in a thread pool. The scan ends when the producer is done and every
    enqueued item reached a terminal outcome, or when ``cancel_event`` is set.
    """

    def __init__(
        self,
        options: ScanOptions,
        adapter: PlatformAdapter,
        detector: Detector | None = None,
        reporter: Reporter | None = None,
        cancel_event: asyncio.Event | None = None,
        queue_capacity: int = DEFAULT_CAPACITY,
    ):
        self.options = options
        self.adapter = adapter
        self.detector = detector
        self.reporter = reporter or Reporter()
        self.cancel_event = cancel_event or asyncio.Event()
        self.queue_capacity = queue_capacity
        self.state = ScanState.CONFIGURED
        self.result = ScanResult(state=self.state)

        self._queue: PersistentQueue | None = None
        self._executor: ThreadPoolExecutor | None = None
        self._in_flight = 0
        self._in_flight_cond = asyncio.Condition()
        self._busy = 0
        self._fatal: ScanError | None = None

    # --- lifecycle ---

    async def run(self) -> ScanResult:
        """Validate, scan and drain.

        Raises:
            ScanError: a fatal error (preflight, detector, queue or output sink).
        """
        self._set_state(ScanState.VALIDATING)
        try:
            await self.adapter.preflight()
            if self.detector is None:
                self.detector = Detector(self.options.confidence_filter)
            self._queue = PersistentQueue(
                self.options.queue_dir, capacity=self.queue_capacity, keep=self.options.keep_queue,
            )
        except ScanError:
            self._set_state(ScanState.FAILED)
            raise

        self._set_state(ScanState.RUNNING)
        self._executor = ThreadPoolExecutor(max_workers=self.options.max_workers, thread_name_prefix="detector")
        workers = [asyncio.create_task(self._worker()) for _ in range(self.options.max_workers)]
        status = asyncio.create_task(self._status_loop()) if self.options.status_interval > 0 else None
        producer = asyncio.create_task(self._produce())
        drained = asyncio.create_task(self._drain(producer))
        cancelled = asyncio.create_task(self.cancel_event.wait())

        try:
            await asyncio.wait({drained, cancelled}, return_when=asyncio.FIRST_COMPLETED)
            if drained.done():
                drained.result()
            else:
                self.result.cancelled = True
                logger.warning("Scan cancelled, waiting for in-flight items")
                producer.cancel()
                drained.cancel()
                await asyncio.gather(producer, drained, return_exceptions=True)
            await self._queue.close()
            await asyncio.gather(*workers)
        finally:
            leftovers = [t for t in (*workers, producer, drained, cancelled, status) if t is not None and not t.done()]
            for task in leftovers:
                task.cancel()
            await asyncio.gather(*leftovers, return_exceptions=True)
            await self._queue.close()
            self._executor.shutdown(wait=False, cancel_futures=True)
            self.detector.close()

        self.result.hits = self.reporter.hits
        if self._fatal is not None:
            self._set_state(ScanState.FAILED)
            raise self._fatal
        self._set_state(ScanState.DONE)
        logger.info(
            "Scan finished",
            extra={"fields": {
                "repositories": self.result.repositories,
                "processed": self.result.processed,
                "hits": self.result.hits,
            }},
        )
        return self.result

    def _set_state(self, state: ScanState) -> None:
        logger.debug("Scanner state %s -> %s", self.state.value, state.value)
        self.state = state
        self.result.state = state

    async def _drain(self, producer: asyncio.Task) -> None:
        await producer
        self._set_state(ScanState.DRAINING)
        async with self._in_flight_cond:
            await self._in_flight_cond.wait_for(lambda: self._in_flight == 0)

    def snapshot(self) -> StatusSnapshot:
        return StatusSnapshot(
            pending=self._queue.depth() if self._queue else 0,
            in_flight=self._in_flight,
            processed=self.result.processed,
            busy_workers=self._busy,
            max_workers=self.options.max_workers,
            rate_limit=self.adapter.rate_limit_state(),
        )

    async def _status_loop(self) -> None:
        while True:
            try:
                await asyncio.wait_for(self.cancel_event.wait(), timeout=self.options.status_interval)
                return
            except asyncio.TimeoutError:
                self.reporter.status(self.snapshot())

    # --- producer ---

    async def _produce(self) -> None:
        try:
            async for repo in self.adapter.list_repositories(self.options.repo_filter):
                if self.cancel_event.is_set():
                    return
                if not self.adapter.accepts(repo):
                    continue
                self.result.repositories += 1
                try:
                    await self._produce_repository(repo)
                except Cancelled:
                    return
                except (ScanError, ValueError) as exc:
                    logger.error("Failed enumerating repository %s: %s", repo.path, exc)
        except Cancelled:
            return
        except (ScanError, ValueError) as exc:
            logger.error("Failed listing repositories: %s", exc)
        logger.debug("Producer finished, %d items enqueued", self.result.enqueued)

    async def _produce_repository(self, repo: Repository) -> None:
        logger.debug("Enumerating jobs of %s", repo.path)
        max_items = self.options.max_items_per_repo
        seen = 0
        async for job in self.adapter.list_jobs(repo, max_items):
            if self.cancel_event.is_set():
                return
            job.extra.setdefault("repo_url", repo.web_url)
            if job.has_log:
                await self._enqueue(QueueItem.for_job(QueueItemType.JOB_TRACE, job))
            if job.has_artifact and self._artifact_allowed(job):
                await self._enqueue(QueueItem.for_job(QueueItemType.JOB_ARTIFACT, job))
            if self.adapter.supports_dotenv and job.has_dotenv and self.options.cookie:
                await self._enqueue(QueueItem.for_job(QueueItemType.DOTENV, job))
            seen += 1
            if 0 < max_items <= seen:
                break

        if self.options.terraform and self.adapter.supports_terraform:
            async for state in self.adapter.list_terraform_states(repo):
                state.extra.setdefault("repo_url", repo.web_url)
                await self._enqueue(QueueItem.for_job(QueueItemType.TERRAFORM_STATE, state))

    def _artifact_allowed(self, job: Job) -> bool:
        if not self.options.artifacts_enabled:
            return False
        if job.artifact_size > self.options.max_artifact_bytes:
            logger.debug(
                "Skipped large artifact",
                extra={"fields": {
                    "job": job.name,
                    "url": job.web_url,
                    "size": format_size(job.artifact_size),
                    "max": format_size(self.options.max_artifact_bytes),
                }},
            )
            return False
        return True

    async def _enqueue(self, item: QueueItem) -> None:
        async with self._in_flight_cond:
            self._in_flight += 1
        try:
            await self._queue.put(item.to_record())
        except BaseException:
            await self._release()
            raise
        self.result.enqueued += 1

    async def _release(self) -> None:
        async with self._in_flight_cond:
            self._in_flight -= 1
            self._in_flight_cond.notify_all()

    # --- workers ---

    async def _worker(self) -> None:
        while not self.cancel_event.is_set():
            leased = await self._queue.get()
            if leased is None or self.cancel_event.is_set():
                return
            item_id, record = leased
            self._busy += 1
            try:
                await self._process(QueueItem.from_record(record))
            except SinkError as exc:
                logger.critical("Output sink failed: %s", exc)
                self._fatal = exc
                self.cancel_event.set()
            finally:
                self._busy -= 1
                self.result.processed += 1
                await self._queue.ack(item_id)
                await self._release()

    async def _process(self, item: QueueItem) -> None:
        job = item.to_job()
        identity = {"type": item.type.value, "repository": job.repo_path, "job": job.name, "url": job.web_url}
        try:
            if item.type == QueueItemType.JOB_TRACE:
                await self._scan_buffer(await self.adapter.fetch_log(job), job, HitType.LOG)
            elif item.type == QueueItemType.JOB_ARTIFACT:
                await self._scan_artifact(job)
            elif item.type == QueueItemType.DOTENV:
                data = await self.adapter.fetch_secondary_artifact(job)
                if data:
                    await self._scan_buffer(data, job, HitType.DOTENV, file=".env")
            elif item.type == QueueItemType.TERRAFORM_STATE:
                data = await self.adapter.fetch_terraform_state(job)
                await self._scan_buffer(data, job, HitType.TERRAFORM_STATE, file=f"{job.name}.tfstate")
        except DetectorTimeout:
            logger.warning("Detector timeout", extra={"fields": identity})
        except Oversized as exc:
            logger.debug("Skipped large artifact after download: %s", exc, extra={"fields": identity})
        except CorruptArchive as exc:
            logger.warning("Skipped unreadable archive: %s", exc, extra={"fields": identity})
        except Unauthenticated as exc:
            if item.type != QueueItemType.DOTENV:
                logger.error("Failed processing item: %s", exc, extra={"fields": identity})
            else:
                logger.warning("Skipped dotenv artifact: %s", exc, extra={"fields": identity})
        except (AccessDenied, NotFound) as exc:
            logger.error("Skipped inaccessible item: %s", exc, extra={"fields": identity})
        except Cancelled:
            logger.debug("Item interrupted by cancellation", extra={"fields": identity})
        except SinkError:
            raise
        except (ScanError, ValueError) as exc:
            logger.error("Failed processing item: %s", exc, extra={"fields": identity})
        except Exception as exc:
            logger.error("Failed processing item: %s", exc, extra={"fields": identity}, exc_info=True)

    async def _scan_artifact(self, job: Job) -> None:
        max_bytes = self.options.max_artifact_bytes
        fileobj = await self.adapter.fetch_artifact(job, max_bytes)
        loop = asyncio.get_running_loop()
        entries = None
        try:
            fileobj.seek(0, 2)
            size = fileobj.tell()
            if size > max_bytes:
                raise OversizedAfterDownload(f"artifact {job.name} is {format_size(size)}, cap is {format_size(max_bytes)}")
            fileobj.seek(0)

            entries = iter_artifact_entries(fileobj, job.name, max_bytes)
            while True:
                entry = await loop.run_in_executor(self._executor, next, entries, None)
                if entry is None:
                    break
                hit_type = HitType.NESTED_ARCHIVE if entry.depth else HitType.ARCHIVE
                try:
                    await self._scan_buffer(entry.data, job, hit_type, file=entry.name, archive=entry.archive or job.name)
                except DetectorTimeout:
                    logger.warning(
                        "Detector timeout",
                        extra={"fields": {"repository": job.repo_path, "job": job.name, "url": job.web_url,
                                          "archive": entry.archive or job.name, "file": entry.name}},
                    )
        finally:
            if entries is not None:
                entries.close()
            fileobj.close()

    async def _scan_buffer(self, data: bytes, job: Job, hit_type: HitType, file: str = "", archive: str = "") -> None:
        for match in await self._detect(data):
            if self.options.confidence_filter and match.confidence not in self.options.confidence_filter:
                continue
            self.reporter.report(Finding.from_match(
                match,
                platform=self.adapter.platform,
                repository=job.repo_path,
                repository_url=job.extra.get("repo_url", ""),
                url=job.web_url,
                job_name=job.name,
                type=hit_type,
                file=file,
                archive=archive,
            ))

    async def _detect(self, data: bytes) -> list[RuleMatch]:
        loop = asyncio.get_running_loop()
        call = functools.partial(self.detector.detect, data, self.options.verify, self.options.hit_timeout)
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(self._executor, call), timeout=self.options.hit_timeout,
            )
        except asyncio.TimeoutError as exc:
            raise DetectorTimeout("Detector timeout") from exc
