"""Serialized emission of hit records and status snapshots."""

from __future__ import annotations

import logging
import threading

from ci_leak_scanner.errors import SinkError
from ci_leak_scanner.log import log_hit, sink_health
from ci_leak_scanner.models import Finding, StatusSnapshot

logger = logging.getLogger(__name__)

# Consecutive failed writes after which the sink counts as blocked.
MAX_SINK_FAILURES = 3


class Reporter:
    """Writes one ``hit`` record per finding, one writer at a time."""

    def __init__(self, log: logging.Logger | None = None):
        self._log = log or logger
        self._lock = threading.Lock()
        self.hits = 0

    def report(self, finding: Finding) -> None:
        """Emit ``finding``.

        Raises:
            SinkError: the output has failed :data:`MAX_SINK_FAILURES` times in a row.
        """
        with self._lock:
            log_hit(self._log, finding.to_fields())
            self.hits += 1
            if sink_health.consecutive_failures >= MAX_SINK_FAILURES:
                raise SinkError(f"output sink is blocked: {sink_health.last_error}")
            if sink_health.consecutive_failures:
                logger.debug("Write to output sink failed: %s", sink_health.last_error)

    def status(self, snapshot: StatusSnapshot) -> None:
        rate = snapshot.rate_limit
        fields = {
            "pending": snapshot.pending,
            "in_flight": snapshot.in_flight,
            "processed": snapshot.processed,
            "workers": f"{snapshot.busy_workers}/{snapshot.max_workers}",
            "throttled": rate.throttled,
        }
        if rate.remaining is not None:
            fields["rate_limit_remaining"] = rate.remaining
        if rate.reset_at is not None:
            fields["rate_limit_reset"] = rate.reset_at.isoformat()
        with self._lock:
            self._log.info("Status", extra={"fields": fields})
