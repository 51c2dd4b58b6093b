"""Flag and experiment operations exposed to the handler layer.

``ExperimentsService`` wires the store, the flag cache and the evaluation,
lifecycle, assignment and analysis components together. Every flag write
invalidates the flag cache; override writes do not, since overrides are read
through to the store on every evaluation.

Error handling:
- Evaluation paths (evaluate_flag, evaluate_flags, is_enabled,
  get_variant_for_user, track_event) never raise for store failures.
- Administrative paths raise ``RequestValidationError`` / ``NotFoundError``
  as-is and surface ``StoreError`` as ``InternalError``.
"""

from __future__ import annotations

import functools
import time
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from experiments_core.core.clock import utc_now
from experiments_core.core.config import settings
from experiments_core.core.errors import InternalError, NotFoundError, RequestValidationError, StoreError
from experiments_core.core.logging import get_logger
from experiments_core.models.context import UserContext
from experiments_core.models.experiment import Experiment, ExperimentResults, ExperimentStatus, Variant
from experiments_core.models.flag import FeatureFlag, FlagOverride, FlagStatus
from experiments_core.models.schemas import (
    CreateExperimentRequest,
    CreateFlagRequest,
    CreateOverrideRequest,
    TrackEventRequest,
    UpdateFlagRequest,
)
from experiments_core.services.assignment_tracker import AssignmentTracker
from experiments_core.services.bucketing import ConsistentBucketer
from experiments_core.services.experiment_lifecycle import ExperimentLifecycle
from experiments_core.services.flag_cache import FlagCache
from experiments_core.services.flag_evaluation import EvaluationResult, FlagEvaluationEngine
from experiments_core.services.segment_matcher import SegmentMatcher
from experiments_core.services.statistics import StatisticalAnalyzer
from experiments_core.store.base import ExperimentsStore

logger = get_logger(__name__)


def admin_operation(func):
    """Surface store failures on administrative paths as InternalError."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except StoreError as e:
            logger.error(
                "admin_operation_failed",
                operation=func.__name__,
                error=str(e),
            )
            raise InternalError(f"{func.__name__} failed", details={"error": e.message}) from e

    return wrapper


def parse_expiry(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO 8601 expiry. Naive timestamps are taken as UTC.

    Raises:
        RequestValidationError: If the value is not a valid timestamp
    """
    if value is None or value == "":
        return None
    raw = value.strip()
    if raw.endswith(("Z", "z")):
        raw = raw[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError as e:
        raise RequestValidationError(
            "Invalid expires_at timestamp; expected ISO 8601",
            details={"expires_at": value},
        ) from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class ExperimentsService:
    """Facade over flag evaluation, flag administration and experiments."""

    def __init__(
        self,
        store: ExperimentsStore,
        cache_ttl_seconds: Optional[float] = None,
        clock: Callable[[], datetime] = utc_now,
        timer: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self._clock = clock
        bucketer = ConsistentBucketer()
        matcher = SegmentMatcher()
        self.cache = FlagCache(store, ttl_seconds=cache_ttl_seconds, timer=timer)
        self.engine = FlagEvaluationEngine(store, self.cache, bucketer=bucketer, matcher=matcher)
        self.lifecycle = ExperimentLifecycle(store, clock=clock)
        self.tracker = AssignmentTracker(store, bucketer=bucketer, matcher=matcher, clock=clock)
        self.analyzer = StatisticalAnalyzer()

    # ========================================================================
    # Flag evaluation
    # ========================================================================

    def evaluate_flag(self, key: str, ctx: Optional[UserContext] = None) -> EvaluationResult:
        return self.engine.evaluate(key, ctx)

    def evaluate_flags(self, keys: Iterable[str], ctx: Optional[UserContext] = None) -> Dict[str, EvaluationResult]:
        return self.engine.evaluate_many(keys, ctx)

    def is_enabled(self, key: str, ctx: Optional[UserContext] = None) -> bool:
        """Shorthand for ``evaluate_flag(key, ctx).enabled``."""
        return self.engine.evaluate(key, ctx).enabled

    # ========================================================================
    # Flag administration
    # ========================================================================

    @admin_operation
    def create_flag(self, admin_id: Optional[str], req: CreateFlagRequest) -> FeatureFlag:
        """Create an active flag.

        Raises:
            RequestValidationError: If a flag with the same key exists
        """
        if self.store.get_flag_by_key(req.key) is not None:
            raise RequestValidationError(
                f"Feature flag with key '{req.key}' already exists",
                details={"key": req.key},
            )

        now = self._clock()
        flag = FeatureFlag(
            id=str(uuid.uuid4()),
            key=req.key,
            name=req.name,
            description=req.description,
            flag_type=req.flag_type,
            status=FlagStatus.ACTIVE,
            enabled=req.enabled,
            rollout_percentage=req.rollout_percentage,
            allowed_subject_ids=list(req.allowed_subject_ids),
            blocked_subject_ids=list(req.blocked_subject_ids),
            segment_rules=req.segment_rules,
            tags=list(req.tags),
            created_by=admin_id,
            created_at=now,
            updated_at=now,
        )
        flag = self.store.create_flag(flag)
        self.cache.invalidate()

        logger.info("feature_flag_created", key=flag.key, flag_type=flag.flag_type.value, created_by=admin_id)
        return flag

    @admin_operation
    def update_flag(self, key: str, req: UpdateFlagRequest) -> FeatureFlag:
        """Apply the fields set on ``req`` to a flag."""
        flag = self._get_modifiable_flag(key)

        # An explicit None only clears segment_rules; other fields are non-nullable
        changes = {
            field: getattr(req, field)
            for field in req.model_fields_set
            if getattr(req, field) is not None or field == "segment_rules"
        }
        updated = replace(flag, **changes, updated_at=self._clock())

        updated = self.store.update_flag(updated)
        self.cache.invalidate()

        logger.info("feature_flag_updated", key=key, fields=sorted(changes))
        return updated

    @admin_operation
    def toggle_flag(self, key: str, enabled: bool) -> FeatureFlag:
        """Set a flag's static ``enabled`` value. Repeating a call is a no-op."""
        flag = self._get_modifiable_flag(key)

        updated = replace(flag, enabled=enabled, updated_at=self._clock())
        updated = self.store.update_flag(updated)
        self.cache.invalidate()

        logger.info("feature_flag_toggled", key=key, enabled=updated.enabled)
        return updated

    @admin_operation
    def archive_flag(self, key: str) -> None:
        """Archive a flag. Archived flags evaluate as not found."""
        flag = self._get_flag(key)

        self.store.update_flag_status(flag.id, FlagStatus.ARCHIVED, self._clock())
        self.cache.invalidate()

        logger.info("feature_flag_archived", key=key)

    @admin_operation
    def get_flag(self, key: str) -> FeatureFlag:
        """Look up a flag in any status directly in the store."""
        return self._get_flag(key)

    @admin_operation
    def list_flags(
        self, status: Optional[FlagStatus] = None, limit: Optional[int] = None, offset: int = 0
    ) -> List[FeatureFlag]:
        return self.store.list_flags(status=status, limit=limit or settings.FLAG_LIST_DEFAULT_LIMIT, offset=offset)

    def _get_flag(self, key: str) -> FeatureFlag:
        flag = self.store.get_flag_by_key(key)
        if flag is None:
            raise NotFoundError(f"Feature flag '{key}' not found", details={"key": key})
        return flag

    def _get_modifiable_flag(self, key: str) -> FeatureFlag:
        flag = self._get_flag(key)
        if flag.status == FlagStatus.ARCHIVED:
            raise RequestValidationError(f"Feature flag '{key}' is archived", details={"key": key})
        return flag

    # ========================================================================
    # Overrides
    # ========================================================================

    @admin_operation
    def create_override(self, admin_id: Optional[str], flag_key: str, req: CreateOverrideRequest) -> FlagOverride:
        """Pin a flag result for one subject, replacing any existing override."""
        expires_at = parse_expiry(req.expires_at)
        flag = self._get_flag(flag_key)

        override = FlagOverride(
            id=str(uuid.uuid4()),
            flag_id=flag.id,
            subject_id=req.subject_id,
            enabled=req.enabled,
            reason=req.reason,
            expires_at=expires_at,
            created_by=admin_id,
            created_at=self._clock(),
        )
        override = self.store.upsert_override(override)

        logger.info(
            "flag_override_set",
            key=flag_key,
            subject_id=req.subject_id,
            enabled=req.enabled,
            expires_at=expires_at.isoformat() if expires_at else None,
        )
        return override

    @admin_operation
    def list_overrides(self, flag_key: str) -> List[FlagOverride]:
        flag = self._get_flag(flag_key)
        return self.store.list_overrides(flag.id)

    @admin_operation
    def delete_override(self, flag_key: str, subject_id: str) -> None:
        """Remove a subject's override.

        Raises:
            NotFoundError: If the flag or the override does not exist
        """
        flag = self._get_flag(flag_key)
        if not self.store.delete_override(flag.id, subject_id):
            raise NotFoundError(
                f"No override for subject '{subject_id}' on flag '{flag_key}'",
                details={"key": flag_key, "subject_id": subject_id},
            )
        logger.info("flag_override_deleted", key=flag_key, subject_id=subject_id)

    # ========================================================================
    # Experiments
    # ========================================================================

    @admin_operation
    def create_experiment(
        self, admin_id: Optional[str], req: CreateExperimentRequest
    ) -> Tuple[Experiment, List[Variant]]:
        return self.lifecycle.create(admin_id, req)

    @admin_operation
    def start_experiment(self, experiment_id: str) -> Experiment:
        return self.lifecycle.start(experiment_id)

    @admin_operation
    def pause_experiment(self, experiment_id: str) -> Experiment:
        return self.lifecycle.pause(experiment_id)

    @admin_operation
    def conclude_experiment(self, experiment_id: str) -> Experiment:
        return self.lifecycle.conclude(experiment_id)

    @admin_operation
    def archive_experiment(self, experiment_id: str) -> Experiment:
        return self.lifecycle.archive(experiment_id)

    @admin_operation
    def list_experiments(
        self, status: Optional[ExperimentStatus] = None, limit: Optional[int] = None, offset: int = 0
    ) -> List[Experiment]:
        return self.store.list_experiments(
            status=status, limit=limit or settings.EXPERIMENT_LIST_DEFAULT_LIMIT, offset=offset
        )

    @admin_operation
    def get_experiment(self, key: str) -> Tuple[Experiment, List[Variant]]:
        """Look up an experiment by key together with its variants."""
        experiment = self.store.get_experiment_by_key(key)
        if experiment is None:
            raise NotFoundError(f"Experiment '{key}' not found", details={"key": key})
        return experiment, self.store.get_variants(experiment.id)

    @admin_operation
    def list_running_experiments(self) -> List[Experiment]:
        return self.store.list_running_experiments()

    @admin_operation
    def get_assignment_counts(self, experiment_id: str) -> Dict[str, int]:
        """Number of subjects assigned to each variant, keyed by variant ID."""
        return self.store.get_assignment_counts(experiment_id)

    def get_variant_for_user(self, experiment_key: str, ctx: UserContext) -> Optional[Variant]:
        return self.tracker.get_variant(experiment_key, ctx)

    def track_event(self, subject_id: str, req: TrackEventRequest) -> bool:
        """Record an event; returns False when nothing was recorded."""
        return self.tracker.track_event(
            subject_id,
            req.experiment_key,
            req.event_type,
            event_value=req.event_value,
            metadata=req.metadata,
        )

    @admin_operation
    def get_results(self, experiment_id: str) -> ExperimentResults:
        """Compute per-variant metrics and the significance verdict."""
        experiment = self.store.get_experiment_by_id(experiment_id)
        if experiment is None:
            raise NotFoundError(
                f"Experiment '{experiment_id}' not found",
                details={"experiment_id": experiment_id},
            )

        metrics = self.store.get_variant_metrics(experiment.id)
        results = self.analyzer.analyze(metrics, experiment.min_sample_size, experiment.confidence_level)
        results.experiment = experiment

        logger.debug(
            "experiment_results_computed",
            key=experiment.key,
            recommended_action=results.recommended_action.value,
            is_significant=results.is_significant,
        )
        return results
