"""Experiment variant assignment and event tracking.

Assignment is deterministic: the variant for (experiment, subject) is a pure
function of the experiment key, the subject ID and the variant weights, so
concurrent first calls on different instances pick the same variant and the
store's insert-if-absent keeps a single row.

Both operations sit on the caller's business path and never raise for store
failures; they log and degrade to "not enrolled" / "not recorded".
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from experiments_core.core.clock import utc_now
from experiments_core.core.errors import StoreError
from experiments_core.core.logging import get_logger
from experiments_core.core.metrics import experiment_assignments_total, experiment_events_total
from experiments_core.models.context import UserContext
from experiments_core.models.experiment import (
    Experiment,
    ExperimentAssignment,
    ExperimentEvent,
    ExperimentStatus,
    Variant,
)
from experiments_core.services.bucketing import ConsistentBucketer
from experiments_core.services.segment_matcher import SegmentMatcher
from experiments_core.store.base import ExperimentsStore

logger = get_logger(__name__)


class AssignmentTracker:
    """Assigns subjects to variants and records their events."""

    def __init__(
        self,
        store: ExperimentsStore,
        bucketer: Optional[ConsistentBucketer] = None,
        matcher: Optional[SegmentMatcher] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.bucketer = bucketer or ConsistentBucketer()
        self.matcher = matcher or SegmentMatcher()
        self._clock = clock

    def get_variant(self, experiment_key: str, ctx: UserContext) -> Optional[Variant]:
        """Get (assigning on first call) the subject's variant.

        Returns None when the experiment is unknown or not running, the
        subject falls outside the traffic share or segment, or the store is
        unavailable.
        """
        try:
            return self._get_variant(experiment_key, ctx)
        except StoreError as e:
            logger.warning(
                "experiment_assignment_failed",
                experiment_key=experiment_key,
                subject_id=ctx.subject_id,
                error=str(e),
            )
            return None

    def _get_variant(self, experiment_key: str, ctx: UserContext) -> Optional[Variant]:
        experiment = self.store.get_experiment_by_key(experiment_key)
        if experiment is None or experiment.status != ExperimentStatus.RUNNING:
            return None

        if not self._is_eligible(experiment, ctx):
            experiment_assignments_total.labels(result="not_enrolled").inc()
            return None

        existing = self.store.get_assignment(experiment.id, ctx.subject_id)
        if existing is not None:
            return self._resolve_existing(experiment, existing)

        variants = self.store.get_variants(experiment.id)
        if not variants:
            return None

        variant = self.bucketer.bucket_variant(experiment.key, ctx.subject_id, variants)
        assignment = ExperimentAssignment(
            id=str(uuid.uuid4()),
            experiment_id=experiment.id,
            subject_id=ctx.subject_id,
            variant_id=variant.id,
            assigned_at=self._clock(),
        )

        try:
            created = self.store.create_assignment_if_absent(assignment)
        except StoreError as e:
            # Bucketing is deterministic, so the next call persists the same variant
            logger.warning(
                "experiment_assignment_persist_failed",
                experiment_key=experiment.key,
                subject_id=ctx.subject_id,
                variant=variant.key,
                error=str(e),
            )
            created = False

        experiment_assignments_total.labels(result="created" if created else "race_lost").inc()
        logger.debug(
            "experiment_variant_assigned",
            experiment_key=experiment.key,
            subject_id=ctx.subject_id,
            variant=variant.key,
            created=created,
        )
        return variant

    def _is_eligible(self, experiment: Experiment, ctx: UserContext) -> bool:
        if not self.bucketer.is_in_percentage(experiment.key, ctx.subject_id, experiment.traffic_percentage):
            return False
        if experiment.segment_rules is not None and not self.matcher.matches(ctx, experiment.segment_rules):
            return False
        return True

    def _resolve_existing(self, experiment: Experiment, assignment: ExperimentAssignment) -> Optional[Variant]:
        for variant in self.store.get_variants(experiment.id):
            if variant.id == assignment.variant_id:
                experiment_assignments_total.labels(result="existing").inc()
                return variant

        # Assignments are never rewritten, so a removed variant leaves the subject unenrolled
        logger.warning(
            "experiment_assignment_dangling",
            experiment_key=experiment.key,
            subject_id=assignment.subject_id,
            variant_id=assignment.variant_id,
        )
        return None

    def track_event(
        self,
        subject_id: str,
        experiment_key: str,
        event_type: str,
        event_value: Optional[float] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Record an event against the subject's assignment.

        Unknown experiments, unassigned subjects and store failures are not
        errors: nothing is recorded and False is returned.
        """
        try:
            experiment = self.store.get_experiment_by_key(experiment_key)
            if experiment is None:
                experiment_events_total.labels(result="dropped").inc()
                return False

            assignment = self.store.get_assignment(experiment.id, subject_id)
            if assignment is None:
                experiment_events_total.labels(result="dropped").inc()
                return False

            self.store.record_event(
                ExperimentEvent(
                    id=str(uuid.uuid4()),
                    experiment_id=experiment.id,
                    subject_id=subject_id,
                    variant_id=assignment.variant_id,
                    event_type=event_type,
                    event_value=event_value,
                    metadata=dict(metadata or {}),
                    created_at=self._clock(),
                )
            )
        except StoreError as e:
            experiment_events_total.labels(result="dropped").inc()
            logger.warning(
                "experiment_event_dropped",
                experiment_key=experiment_key,
                subject_id=subject_id,
                event_type=event_type,
                error=str(e),
            )
            return False

        experiment_events_total.labels(result="recorded").inc()
        return True
