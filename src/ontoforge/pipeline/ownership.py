"""
Run ownership, heartbeats and orphan recovery.

A run has at most one live owner. The owner refreshes `last_heartbeat` every
interval; a running run whose heartbeat is older than interval * multiplier
is orphaned and may be reclaimed by exactly one process through a
conditional UPDATE.
"""

from __future__ import annotations

import logging
import os
import socket
import threading
import uuid
from datetime import datetime, timedelta
from typing import List, Optional

from ontoforge.config import HeartbeatConfig
from ontoforge.models import RunRecord, RunStatus
from ontoforge.pipeline.stage import CancellationToken
from ontoforge.storage.repository import RunRepository
from ontoforge.storage.tables import utcnow

logger = logging.getLogger(__name__)

REASON_CANCELLED = "cancelled"
REASON_OWNERSHIP_LOST = "ownership lost"
REASON_SHUTDOWN = "shutdown"


def generate_owner_id() -> str:
    """Identity of this process: host, pid and a random suffix."""
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class OwnershipManager:
    """Claims, reclaims and finds orphaned runs for one owner identity."""

    def __init__(
        self,
        runs: RunRepository,
        config: Optional[HeartbeatConfig] = None,
        owner_id: Optional[str] = None,
    ):
        self.runs = runs
        self.config = config or HeartbeatConfig()
        self.owner_id = owner_id or generate_owner_id()

    def stale_before(self, threshold_seconds: Optional[float] = None) -> datetime:
        """Heartbeats older than this instant are stale."""
        threshold = (
            threshold_seconds if threshold_seconds is not None
            else self.config.orphan_threshold_seconds
        )
        return utcnow() - timedelta(seconds=threshold)

    def find_orphaned(
        self,
        threshold_seconds: Optional[float] = None,
        project_id: Optional[str] = None,
    ) -> List[RunRecord]:
        """Running runs whose heartbeat is older than the threshold or missing."""
        return self.runs.find_orphaned(self.stale_before(threshold_seconds), project_id)

    def reclaim_ownership(
        self,
        run_id: str,
        new_owner: Optional[str] = None,
        threshold_seconds: Optional[float] = None,
    ) -> bool:
        """
        Take over an orphaned run.

        Returns:
            True if exactly one row changed; a live owner or a concurrent
            reclaimer makes this return False.
        """
        owner = new_owner or self.owner_id
        reclaimed = self.runs.reclaim_ownership(run_id, owner, self.stale_before(threshold_seconds))
        if reclaimed:
            logger.info(f"Reclaimed run {run_id} as {owner}")
        return reclaimed

    def claim(self, run_id: str) -> bool:
        return self.runs.claim_run(run_id, self.owner_id)


class Heartbeat:
    """
    Background thread keeping a run's heartbeat fresh.

    If the conditional update stops matching, the durable state changed under
    us: a cancel from another process, or another process reclaimed the run.
    Either way the run's token is cancelled so the worker stops at its next
    checkpoint.
    """

    def __init__(
        self,
        runs: RunRepository,
        run_id: str,
        owner_id: str,
        interval_seconds: float,
        token: CancellationToken,
    ):
        self.runs = runs
        self.run_id = run_id
        self.owner_id = owner_id
        self.interval_seconds = interval_seconds
        self.token = token
        self.ownership_lost = False
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        self._thread = threading.Thread(
            target=self._loop,
            name=f"heartbeat-{self.run_id[:8]}",
            daemon=True,
        )
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=self.interval_seconds + 1)

    def beat(self) -> bool:
        """One heartbeat. Returns False once the run is no longer ours to run."""
        if self.runs.heartbeat(self.run_id, self.owner_id):
            return True

        status = self.runs.get_run_status(self.run_id)
        if status == RunStatus.CANCELLED:
            logger.info(f"Run {self.run_id} was cancelled externally")
            self.token.cancel(REASON_CANCELLED)
        elif status == RunStatus.RUNNING:
            logger.warning(f"Lost ownership of run {self.run_id}")
            self.ownership_lost = True
            self.token.cancel(REASON_OWNERSHIP_LOST)
        return False

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            try:
                if not self.beat():
                    return
            except Exception as e:
                # A missed beat is tolerated; staleness needs several in a row
                logger.warning(f"Heartbeat for run {self.run_id} failed: {e}")
