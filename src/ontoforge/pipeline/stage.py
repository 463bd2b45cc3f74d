"""
Stage framework.

A stage is one node of the extraction DAG. The orchestrator knows only its
name and `execute(ctx)`; everything a stage needs (catalog, repositories,
discovery services) arrives through the StageContext.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from ontoforge.errors import RunCancelled
from ontoforge.models import ChangeSet, RunKind, StageName

if TYPE_CHECKING:
    from ontoforge.config import EngineConfig
    from ontoforge.discovery import (
        CandidateCollector,
        ColumnFeatureClassifier,
        EntityDiscoverer,
        RelationshipEnricher,
        RelationshipValidator,
    )
    from ontoforge.metadata.catalog import SchemaCatalog
    from ontoforge.storage import (
        ColumnFeatureRepository,
        CorrectionRepository,
        EntityRepository,
        OntologyRepository,
        ProjectRepository,
        RelationshipRepository,
        RunRepository,
    )

logger = logging.getLogger(__name__)


class CancellationToken:
    """
    Cooperative cancellation flag.

    Child tokens report cancelled when they or any ancestor are cancelled, so
    a per-attempt token can be abandoned on timeout without cancelling the run.
    """

    def __init__(self, parent: Optional[CancellationToken] = None):
        self._event = threading.Event()
        self._parent = parent
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._parent is not None and self._parent.cancelled

    @property
    def cancel_reason(self) -> Optional[str]:
        if self._event.is_set():
            return self.reason
        return self._parent.cancel_reason if self._parent is not None else None

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise RunCancelled(self.cancel_reason or "cancelled")

    def wait(self, timeout: float) -> bool:
        """Sleep up to `timeout` seconds; returns True early if cancelled."""
        if self._parent is None:
            return self._event.wait(timeout)
        # Poll so that a parent cancellation also wakes us
        deadline = timeout
        step = min(0.05, timeout) if timeout > 0 else 0
        while deadline > 0:
            if self.cancelled:
                return True
            self._event.wait(step)
            deadline -= step
        return self.cancelled

    def child(self) -> CancellationToken:
        return CancellationToken(parent=self)


@dataclass
class StageServices:
    """Collaborators shared by every stage of an orchestrator."""
    config: "EngineConfig"
    catalog: "SchemaCatalog"
    runs: "RunRepository"
    relationships: "RelationshipRepository"
    features: "ColumnFeatureRepository"
    projects: "ProjectRepository"
    corrections: "CorrectionRepository"
    ontologies: "OntologyRepository"
    entities: "EntityRepository"
    classifier: "ColumnFeatureClassifier"
    collector: "CandidateCollector"
    validator: "RelationshipValidator"
    discoverer: "EntityDiscoverer"
    enricher: "RelationshipEnricher"


@dataclass
class StageOutcome:
    """What a stage reports back on success."""
    summary: Dict[str, Any] = field(default_factory=dict)


class StageContext:
    """Per-execution handle passed to Stage.execute."""

    def __init__(
        self,
        run_id: str,
        project_id: str,
        run_kind: RunKind,
        stage_name: StageName,
        token: CancellationToken,
        services: StageServices,
        change_set: Optional[ChangeSet] = None,
    ):
        self.run_id = run_id
        self.project_id = project_id
        self.run_kind = run_kind
        self.stage_name = stage_name
        self.token = token
        self.services = services
        self.change_set = change_set or ChangeSet()
        self.warnings: List[str] = []

    def check_cancelled(self) -> None:
        """Cancellation checkpoint. Raises RunCancelled."""
        self.token.raise_if_cancelled()

    def report_progress(self, current: int, total: int, message: str = "") -> None:
        self.services.runs.update_progress(self.run_id, self.stage_name, current, total, message)

    def warn(self, message: str) -> None:
        """Record a non-fatal warning. Warnings never block completion."""
        self.warnings.append(message)
        self.services.runs.add_warning(self.run_id, self.stage_name, message)
        logger.warning(f"[{self.stage_name.value}] {message}")


class Stage(ABC):
    """One node of the extraction DAG."""

    name: StageName

    @abstractmethod
    def execute(self, ctx: StageContext) -> StageOutcome:
        """Do the stage's work. Must be safe to repeat after a crash."""

    def __repr__(self) -> str:
        return f"<{type(self).__name__}({self.name.value})>"
