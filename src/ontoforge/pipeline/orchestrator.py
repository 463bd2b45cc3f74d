"""
Extraction orchestrator.

Runs the stage DAG for a project with durable state:
- Every run and stage transition is persisted before work proceeds
- One worker thread per run, plus a heartbeat thread proving liveness
- Transient failures are retried with bounded exponential backoff
- Cancellation is durable (database) and cooperative (token checkpoints)
- Runs left behind by a dead process are reclaimed and resumed
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from tenacity import RetryCallState

from ontoforge.config import EngineConfig
from ontoforge.discovery import (
    CandidateCollector,
    ColumnFeatureClassifier,
    EntityDiscoverer,
    RelationshipEnricher,
    RelationshipValidator,
)
from ontoforge.errors import (
    InvariantViolation,
    RunCancelled,
    RunNotFoundError,
    RunNotResumableError,
    StageTimeoutError,
)
from ontoforge.llm.client import LLMClient
from ontoforge.metadata.catalog import SchemaCatalog
from ontoforge.models import (
    STAGE_DEPENDENCIES,
    STAGE_ORDER,
    ChangeSet,
    RunKind,
    RunRecord,
    RunStatus,
    StageName,
    StageStatus,
    topological_stage_order,
)
from ontoforge.pipeline.ownership import (
    REASON_CANCELLED,
    REASON_OWNERSHIP_LOST,
    REASON_SHUTDOWN,
    Heartbeat,
    OwnershipManager,
)
from ontoforge.pipeline.retry import stage_retrying
from ontoforge.pipeline.stage import CancellationToken, Stage, StageContext, StageOutcome, StageServices
from ontoforge.pipeline.stages import build_stages
from ontoforge.storage import (
    ColumnFeatureRepository,
    CorrectionRepository,
    Database,
    EntityRepository,
    OntologyRepository,
    ProjectRepository,
    RelationshipRepository,
    RunRepository,
)

logger = logging.getLogger(__name__)

WAIT_POLL_SECONDS = 0.5


@dataclass
class _ActiveRun:
    """Process-local handle of a run executing in this orchestrator."""
    run_id: str
    token: CancellationToken = field(default_factory=CancellationToken)
    done: threading.Event = field(default_factory=threading.Event)
    thread: Optional[threading.Thread] = None
    ownership_lost: bool = False


class Orchestrator:
    """
    Persisted, crash-recoverable executor of the extraction DAG.

    The database is the source of truth; the in-memory registry only tracks
    which runs this process is executing right now.

    Example:
        db = Database("sqlite:///ontoforge.db")
        db.create_tables()
        orchestrator = Orchestrator(db, SQLAlchemyCatalog("postgresql://..."))
        run = orchestrator.start_run("sales", background=False)
        print(run.status)
    """

    def __init__(
        self,
        db: Database,
        catalog: SchemaCatalog,
        config: Optional[EngineConfig] = None,
        llm: Optional[LLMClient] = None,
        owner_id: Optional[str] = None,
        stages: Optional[Iterable[Stage]] = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            db: Database holding run state and results
            catalog: Schema catalog of the source system
            config: Engine configuration
            llm: LLM client; ignored when llm.enabled is false
            owner_id: Identity used for run ownership (generated if omitted)
            stages: Stage implementations replacing the built-in ones by name
        """
        self.db = db
        self.catalog = catalog
        self.config = config or EngineConfig()
        self.llm = llm if self.config.llm.enabled else None

        self.runs = RunRepository(db)
        self.relationships = RelationshipRepository(db)
        self.features = ColumnFeatureRepository(db)
        self.projects = ProjectRepository(db)
        self.corrections = CorrectionRepository(db)
        self.ontologies = OntologyRepository(db)
        self.entities = EntityRepository(db)
        self.ownership = OwnershipManager(self.runs, self.config.heartbeat, owner_id)

        self.services = StageServices(
            config=self.config,
            catalog=catalog,
            runs=self.runs,
            relationships=self.relationships,
            features=self.features,
            projects=self.projects,
            corrections=self.corrections,
            ontologies=self.ontologies,
            entities=self.entities,
            classifier=ColumnFeatureClassifier(
                llm=self.llm,
                max_concurrency=self.config.llm.max_concurrency,
                use_llm=self.config.llm.classify_columns,
            ),
            collector=CandidateCollector(catalog, self.config.discovery),
            validator=RelationshipValidator(
                self.config.confidence, self.llm, self.config.llm.max_concurrency
            ),
            discoverer=EntityDiscoverer(),
            enricher=RelationshipEnricher(
                llm=self.llm,
                max_concurrency=self.config.llm.max_concurrency,
                use_llm=self.config.llm.enrich_relationships,
            ),
        )

        self.stages: Dict[StageName, Stage] = build_stages()
        for stage in stages or ():
            self.stages[stage.name] = stage

        self._active: Dict[str, _ActiveRun] = {}
        self._abandoned: Dict[str, List[Future]] = {}
        self._lock = threading.Lock()

    @property
    def owner_id(self) -> str:
        return self.ownership.owner_id

    # ------------------------------------------------------------------
    # Control entrypoints
    # ------------------------------------------------------------------

    def start_run(
        self,
        project_id: str,
        kind: RunKind = RunKind.EXTRACTION,
        change_set: Optional[ChangeSet] = None,
        plan: Optional[Iterable[StageName]] = None,
        background: bool = True,
    ) -> RunRecord:
        """
        Create a run with its full stage set and begin executing it.

        Args:
            project_id: Project to extract
            kind: extraction or refresh
            change_set: Changes that triggered a refresh run
            plan: Stages to execute; the rest are recorded as skipped
            background: Execute on a worker thread instead of the caller's

        Returns:
            The new run, or the project's already active run. An active run
            whose owner is gone is taken over and executed instead.
        """
        active = self.runs.find_active_run(project_id)
        if active is not None:
            adopted = self._adopt(active, background)
            if adopted is not None:
                return adopted
            logger.info(f"Project {project_id} already has active run {active.id} ({active.status.value})")
            return active

        run_id = str(uuid.uuid4())
        self.runs.create_run(
            project_id,
            run_id,
            kind,
            STAGE_ORDER,
            change_set.to_dict() if change_set is not None else None,
        )

        if plan is not None:
            planned = set(plan)
            unplanned = [s for s in STAGE_ORDER if s not in planned]
            if unplanned:
                self.runs.skip_stages(run_id, unplanned, "not affected by change set")

        if kind == RunKind.EXTRACTION:
            stale = self.relationships.mark_stale(project_id)
            if stale:
                logger.info(f"Marked {stale} relationships stale for project {project_id}")

        if not self.ownership.claim(run_id):
            # Cancelled between insert and claim
            logger.warning(f"Could not claim new run {run_id}")
            return self.runs.get_run(run_id)

        logger.info(f"Started {kind.value} run {run_id} for project {project_id}")
        return self._launch(run_id, background)

    def resume_run(self, run_id: str, background: bool = True) -> RunRecord:
        """
        Re-attach execution to an existing run.

        Completed and skipped stages are not repeated. A completed run is
        returned untouched.

        Raises:
            RunNotFoundError: Unknown run id
            RunNotResumableError: Cancelled run, a run still held by a live owner, or
                one with a timed-out stage attempt still executing
        """
        run = self.runs.get_run(run_id)
        if run is None:
            raise RunNotFoundError(f"Run {run_id} not found")

        with self._lock:
            if run_id in self._active:
                return run

        if run.status == RunStatus.COMPLETED:
            logger.info(f"Run {run_id} already completed, nothing to resume")
            return run

        if run.status == RunStatus.CANCELLED:
            raise RunNotResumableError(f"Run {run_id} was cancelled and cannot be resumed")

        live = self.live_attempts(run_id)
        if live:
            raise RunNotResumableError(
                f"Run {run_id} still has {live} timed-out stage attempts executing in this process"
            )

        if run.status == RunStatus.FAILED:
            if not self.runs.reopen_failed_run(run_id, self.owner_id):
                raise RunNotResumableError(f"Run {run_id} changed state while reopening")
            logger.info(f"Reopened failed run {run_id}")

        elif run.status == RunStatus.RUNNING:
            if run.owner_id != self.owner_id and not self.ownership.reclaim_ownership(run_id):
                raise RunNotResumableError(
                    f"Run {run_id} is held by live owner {run.owner_id}"
                )
            reset = self.runs.reset_running_stages(run_id)
            if reset:
                logger.info(f"Reset {reset} interrupted stages of run {run_id}")

        elif not self.ownership.claim(run_id):
            raise RunNotResumableError(f"Run {run_id} could not be claimed")

        return self._launch(run_id, background)

    def cancel(self, run_id: str) -> bool:
        """
        Cancel a pending or running run.

        The cancel is durable immediately; the in-flight stage stops at its
        next checkpoint. Returns False if the run had already ended.
        """
        cancelled = self.runs.cancel_run(run_id)
        with self._lock:
            handle = self._active.get(run_id)
        if handle is not None:
            handle.token.cancel(REASON_CANCELLED)

        if cancelled:
            logger.info(f"Cancelled run {run_id}")
        else:
            logger.info(f"Run {run_id} is not active, nothing to cancel")
        return cancelled

    def get_status(self, run_id: str) -> Optional[RunRecord]:
        return self.runs.get_run(run_id)

    def latest_status(self, project_id: str) -> Optional[RunRecord]:
        return self.runs.latest_run(project_id)

    def wait(self, run_id: str, timeout: Optional[float] = None) -> Optional[RunRecord]:
        """
        Block until the run ends or `timeout` elapses.

        Runs executing elsewhere are polled in the database.
        """
        with self._lock:
            handle = self._active.get(run_id)
        if handle is not None:
            handle.done.wait(timeout)
            return self.runs.get_run(run_id)

        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            run = self.runs.get_run(run_id)
            if run is None or run.status.is_terminal:
                return run
            if deadline is not None and time.monotonic() >= deadline:
                return run
            time.sleep(WAIT_POLL_SECONDS)

    def recover_orphaned_runs(
        self,
        background: bool = True,
        project_id: Optional[str] = None,
    ) -> List[RunRecord]:
        """
        Reclaim and resume every orphaned run, optionally of one project only.

        Safe to call from several processes at once: each orphan is reclaimed
        by exactly one of them.
        """
        recovered = []
        for run in self.ownership.find_orphaned(project_id=project_id):
            with self._lock:
                if run.id in self._active:
                    continue
            if not self.ownership.reclaim_ownership(run.id):
                logger.info(f"Run {run.id} was reclaimed by another process")
                continue
            reset = self.runs.reset_running_stages(run.id)
            logger.info(f"Recovering run {run.id} ({reset} interrupted stages reset)")
            recovered.append(self._launch(run.id, background))
        if not recovered:
            logger.debug("No orphaned runs to recover")
        return recovered

    def shutdown(self, timeout: Optional[float] = None) -> None:
        """
        Stop local execution without cancelling runs durably.

        Ownership is released so another process can reclaim the runs
        immediately.
        """
        with self._lock:
            handles = list(self._active.values())
        for handle in handles:
            handle.token.cancel(REASON_SHUTDOWN)
        for handle in handles:
            if handle.thread is not None:
                handle.thread.join(timeout)
        if handles:
            logger.info(f"Shut down {len(handles)} local runs")

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _adopt(self, run: RunRecord, background: bool) -> Optional[RunRecord]:
        """
        Take over an active run nobody is executing.

        A pending run was never claimed; a running run qualifies once its
        heartbeat is stale or missing. Returns None when the run is live.
        """
        with self._lock:
            if run.id in self._active:
                return None

        if run.status == RunStatus.PENDING:
            if not self.ownership.claim(run.id):
                return None
            logger.info(f"Claimed unstarted run {run.id}")
        elif self.ownership.reclaim_ownership(run.id):
            reset = self.runs.reset_running_stages(run.id)
            logger.info(f"Took over orphaned run {run.id} ({reset} interrupted stages reset)")
        else:
            return None
        return self._launch(run.id, background)

    def _launch(self, run_id: str, background: bool) -> RunRecord:
        handle = _ActiveRun(run_id=run_id)
        with self._lock:
            self._active[run_id] = handle

        if background:
            handle.thread = threading.Thread(
                target=self._execute,
                args=(handle,),
                name=f"run-{run_id[:8]}",
                daemon=True,
            )
            handle.thread.start()
        else:
            self._execute(handle)
        return self.runs.get_run(run_id)

    def _execute(self, handle: _ActiveRun) -> None:
        heartbeat = Heartbeat(
            self.runs,
            handle.run_id,
            self.owner_id,
            self.config.heartbeat.interval_seconds,
            handle.token,
        )
        heartbeat.start()
        error: Optional[str] = None
        try:
            error = self._schedule(handle)
        except Exception as e:
            logger.exception(f"Run {handle.run_id} aborted outside a stage")
            error = f"{type(e).__name__}: {e}"
        finally:
            heartbeat.stop()
            handle.ownership_lost = handle.ownership_lost or heartbeat.ownership_lost
            try:
                self._finish(handle, error)
            finally:
                with self._lock:
                    self._active.pop(handle.run_id, None)
                handle.done.set()

    def _schedule(self, handle: _ActiveRun) -> Optional[str]:
        """Execute ready stages until none remain. Returns the failure message, if any."""
        while not handle.token.cancelled:
            run = self.runs.get_run(handle.run_id)
            if run is None or run.status != RunStatus.RUNNING:
                return None

            statuses = {s.name: s.status for s in run.stages}
            pending = [n for n, s in statuses.items() if s == StageStatus.PENDING]
            if not pending:
                return None

            ready = [
                name for name in topological_stage_order(pending)
                if all(
                    statuses.get(dep, StageStatus.COMPLETED).is_resolved
                    for dep in STAGE_DEPENDENCIES[name]
                )
            ]
            if not ready:
                blocked = ", ".join(n.value for n in pending)
                return str(InvariantViolation(f"Stages blocked by unresolved dependencies: {blocked}"))

            parallelism = (
                max(1, self.config.pipeline.refresh_parallelism)
                if run.kind == RunKind.REFRESH else 1
            )
            batch = ready[:parallelism]
            if len(batch) == 1:
                failures = [self._run_stage(handle, run, batch[0])]
            else:
                with ThreadPoolExecutor(max_workers=len(batch), thread_name_prefix="stage") as pool:
                    failures = list(pool.map(lambda name: self._run_stage(handle, run, name), batch))

            failure = next((f for f in failures if f), None)
            if failure:
                return failure
        return None

    def _run_stage(self, handle: _ActiveRun, run: RunRecord, name: StageName) -> Optional[str]:
        """Execute one stage with retries. Returns a failure message, or None."""
        run_id = handle.run_id
        if not self.runs.start_stage(run_id, self.owner_id, name):
            self._sync_with_database(handle)
            return None
        self.runs.set_current_stage(run_id, self.owner_id, name)

        stage = self.stages[name]
        change_set = ChangeSet.from_dict(run.change_set)
        started = time.monotonic()
        logger.info(f"[{run_id[:8]}] Stage {name.value} started")

        def attempt() -> StageOutcome:
            ctx = StageContext(
                run_id, run.project_id, run.kind, name, handle.token.child(), self.services, change_set
            )
            return self._execute_with_timeout(stage, ctx)

        def before_sleep(retry_state: RetryCallState) -> None:
            message = _describe(retry_state.outcome.exception())
            self.runs.record_retry(run_id, name, message)
            logger.warning(
                f"[{run_id[:8]}] Stage {name.value} attempt {retry_state.attempt_number} failed "
                f"({message}), retrying in {retry_state.next_action.sleep:.2f}s"
            )

        try:
            outcome = stage_retrying(self.config.retry, handle.token, before_sleep)(attempt)
        except RunCancelled:
            return self._stage_cancelled(handle, name)
        except Exception as e:
            if handle.token.cancelled:
                return self._stage_cancelled(handle, name)
            message = _describe(e)
            logger.error(f"[{run_id[:8]}] Stage {name.value} failed: {message}")
            self.runs.fail_stage(run_id, self.owner_id, name, message, self._elapsed_ms(started))
            return f"Stage {name.value} failed: {message}"

        self.runs.complete_stage(run_id, self.owner_id, name, self._elapsed_ms(started))
        logger.info(f"[{run_id[:8]}] Stage {name.value} completed: {outcome.summary}")
        return None

    def _execute_with_timeout(self, stage: Stage, ctx: StageContext) -> StageOutcome:
        timeout = self.config.pipeline.stage_timeout_seconds
        if not timeout or timeout <= 0:
            return stage.execute(ctx)

        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"attempt-{stage.name.value}")
        try:
            future = pool.submit(stage.execute, ctx)
            try:
                return future.result(timeout=timeout)
            except FutureTimeout:
                ctx.token.cancel("timeout")
                # The attempt thread cannot be killed; it stops at its next checkpoint
                with self._lock:
                    self._abandoned.setdefault(ctx.run_id, []).append(future)
                raise StageTimeoutError(stage.name.value, timeout) from None
        finally:
            pool.shutdown(wait=False)

    def live_attempts(self, run_id: str) -> int:
        """Timed-out attempts of the run whose threads are still executing in this process."""
        with self._lock:
            futures = [f for f in self._abandoned.get(run_id, []) if not f.done()]
            if futures:
                self._abandoned[run_id] = futures
            else:
                self._abandoned.pop(run_id, None)
        return len(futures)

    def _stage_cancelled(self, handle: _ActiveRun, name: StageName) -> None:
        """
        Record the interrupted stage.

        Only a durable cancel skips the stage. After a shutdown or lost
        ownership the stage stays running so recovery resets and repeats it.
        """
        status = self.runs.get_run_status(handle.run_id)
        if status == RunStatus.CANCELLED:
            self.runs.skip_stage(handle.run_id, self.owner_id, name, "run cancelled")
            logger.info(f"[{handle.run_id[:8]}] Stage {name.value} stopped by cancel")
        else:
            self._sync_with_database(handle)
        return None

    def _sync_with_database(self, handle: _ActiveRun) -> None:
        """Align the local token with the durable run state after a refused transition."""
        run = self.runs.get_run(handle.run_id)
        if run is None:
            return
        if run.status == RunStatus.CANCELLED:
            handle.token.cancel(REASON_CANCELLED)
        elif run.status == RunStatus.RUNNING and run.owner_id != self.owner_id:
            handle.ownership_lost = True
            handle.token.cancel(REASON_OWNERSHIP_LOST)

    def _finish(self, handle: _ActiveRun, error: Optional[str]) -> None:
        run_id = handle.run_id
        if handle.ownership_lost:
            logger.warning(f"Run {run_id} continues under another owner; leaving its state alone")
            return

        if handle.token.cancel_reason == REASON_SHUTDOWN:
            self.runs.release_ownership(run_id, self.owner_id)
            logger.info(f"Run {run_id} released for recovery")
            return

        status = self.runs.get_run_status(run_id)
        if status == RunStatus.CANCELLED:
            self.runs.release_cancelled(run_id, self.owner_id)
            logger.info(f"Run {run_id} cancelled")
            return

        if status != RunStatus.RUNNING:
            return

        if error:
            finished = self.runs.finish_run(run_id, self.owner_id, RunStatus.FAILED, error)
            if finished:
                logger.error(f"Run {run_id} failed: {error}")
        else:
            finished = self.runs.finish_run(run_id, self.owner_id, RunStatus.COMPLETED)
            if finished:
                logger.info(f"Run {run_id} completed")

        if not finished:
            logger.warning(f"Run {run_id} changed state before it could be finished")

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return int((time.monotonic() - started) * 1000)


def _describe(exc: BaseException) -> str:
    return f"{type(exc).__name__}: {exc}"
