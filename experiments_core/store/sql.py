"""SQLAlchemy-backed store.

Each operation runs in its own session. Datetimes are stored as naive UTC
and handed back timezone-aware. Backend failures surface as ``StoreError``.
"""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Generator, List, Optional

from sqlalchemy import case, delete, func, or_, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from experiments_core.core.clock import utc_now
from experiments_core.core.database import build_session_factory, transaction
from experiments_core.core.errors import StoreError
from experiments_core.core.logging import get_logger
from experiments_core.models.experiment import (
    EVENT_CONVERSION,
    EVENT_IMPRESSION,
    Experiment,
    ExperimentAssignment,
    ExperimentEvent,
    ExperimentStatus,
    Variant,
    VariantMetrics,
)
from experiments_core.models.flag import FeatureFlag, FlagOverride, FlagStatus, FlagType, SegmentRules
from experiments_core.models.tables import (
    AssignmentRow,
    EventRow,
    ExperimentRow,
    FeatureFlagRow,
    FlagOverrideRow,
    VariantRow,
)

logger = get_logger(__name__)


def _to_db(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _from_db(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _rules_to_db(rules: Optional[SegmentRules]) -> Optional[Dict[str, Any]]:
    return rules.to_dict() if rules is not None else None


def _flag_type(value: str):
    try:
        return FlagType(value)
    except ValueError:
        # Written by a newer version; evaluates with the static default
        return value


# ============================================================================
# Row <-> entity conversion
# ============================================================================


def _flag_from_row(row: FeatureFlagRow) -> FeatureFlag:
    return FeatureFlag(
        id=row.id,
        key=row.key,
        name=row.name,
        description=row.description or "",
        flag_type=_flag_type(row.flag_type),
        status=FlagStatus(row.status),
        enabled=bool(row.enabled),
        rollout_percentage=row.rollout_percentage or 0,
        allowed_subject_ids=list(row.allowed_subject_ids or []),
        blocked_subject_ids=list(row.blocked_subject_ids or []),
        segment_rules=SegmentRules.from_dict(row.segment_rules),
        tags=list(row.tags or []),
        created_by=row.created_by,
        created_at=_from_db(row.created_at),
        updated_at=_from_db(row.updated_at),
    )


def _apply_flag(row: FeatureFlagRow, flag: FeatureFlag) -> None:
    row.key = flag.key
    row.name = flag.name
    row.description = flag.description
    row.flag_type = getattr(flag.flag_type, "value", flag.flag_type)
    row.status = flag.status.value
    row.enabled = flag.enabled
    row.rollout_percentage = flag.rollout_percentage
    row.allowed_subject_ids = list(flag.allowed_subject_ids)
    row.blocked_subject_ids = list(flag.blocked_subject_ids)
    row.segment_rules = _rules_to_db(flag.segment_rules)
    row.tags = list(flag.tags)
    row.created_by = flag.created_by
    row.created_at = _to_db(flag.created_at)
    row.updated_at = _to_db(flag.updated_at)


def _override_from_row(row: FlagOverrideRow) -> FlagOverride:
    return FlagOverride(
        id=row.id,
        flag_id=row.flag_id,
        subject_id=row.subject_id,
        enabled=bool(row.enabled),
        reason=row.reason,
        expires_at=_from_db(row.expires_at),
        created_by=row.created_by,
        created_at=_from_db(row.created_at),
    )


def _experiment_from_row(row: ExperimentRow) -> Experiment:
    return Experiment(
        id=row.id,
        key=row.key,
        name=row.name,
        description=row.description or "",
        hypothesis=row.hypothesis or "",
        status=ExperimentStatus(row.status),
        traffic_percentage=row.traffic_percentage,
        segment_rules=SegmentRules.from_dict(row.segment_rules),
        primary_metric=row.primary_metric or "",
        secondary_metrics=list(row.secondary_metrics or []),
        min_sample_size=row.min_sample_size,
        confidence_level=row.confidence_level,
        started_at=_from_db(row.started_at),
        ended_at=_from_db(row.ended_at),
        created_by=row.created_by,
        created_at=_from_db(row.created_at),
        updated_at=_from_db(row.updated_at),
    )


def _apply_experiment(row: ExperimentRow, experiment: Experiment) -> None:
    row.key = experiment.key
    row.name = experiment.name
    row.description = experiment.description
    row.hypothesis = experiment.hypothesis
    row.status = experiment.status.value
    row.traffic_percentage = experiment.traffic_percentage
    row.segment_rules = _rules_to_db(experiment.segment_rules)
    row.primary_metric = experiment.primary_metric
    row.secondary_metrics = list(experiment.secondary_metrics)
    row.min_sample_size = experiment.min_sample_size
    row.confidence_level = experiment.confidence_level
    row.started_at = _to_db(experiment.started_at)
    row.ended_at = _to_db(experiment.ended_at)
    row.created_by = experiment.created_by
    row.created_at = _to_db(experiment.created_at)
    row.updated_at = _to_db(experiment.updated_at)


def _variant_from_row(row: VariantRow) -> Variant:
    return Variant(
        id=row.id,
        experiment_id=row.experiment_id,
        key=row.key,
        name=row.name or "",
        description=row.description or "",
        is_control=bool(row.is_control),
        weight=row.weight,
        config=dict(row.config or {}),
        created_at=_from_db(row.created_at),
    )


def _assignment_from_row(row: AssignmentRow) -> ExperimentAssignment:
    return ExperimentAssignment(
        id=row.id,
        experiment_id=row.experiment_id,
        subject_id=row.subject_id,
        variant_id=row.variant_id,
        assigned_at=_from_db(row.assigned_at),
    )


class SQLAlchemyExperimentsStore:
    """``ExperimentsStore`` on top of a SQLAlchemy engine."""

    def __init__(
        self,
        engine: Engine,
        session_factory: Optional[sessionmaker] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.engine = engine
        self._session_factory = session_factory or build_session_factory(engine)
        self._clock = clock

    @contextmanager
    def _session(self) -> Generator[Session, None, None]:
        db = self._session_factory()
        try:
            yield db
        except SQLAlchemyError as e:
            logger.error("store_operation_failed", error=str(e), error_type=type(e).__name__)
            raise StoreError("Store operation failed", details={"error": str(e)}) from e
        finally:
            db.close()

    # ------------------------------------------------------------------
    # Flags
    # ------------------------------------------------------------------

    def create_flag(self, flag: FeatureFlag) -> FeatureFlag:
        with self._session() as db, transaction(db):
            row = FeatureFlagRow(id=flag.id)
            _apply_flag(row, flag)
            db.add(row)
        return flag

    def get_flag_by_key(self, key: str) -> Optional[FeatureFlag]:
        with self._session() as db:
            row = db.execute(select(FeatureFlagRow).where(FeatureFlagRow.key == key)).scalar_one_or_none()
            return _flag_from_row(row) if row else None

    def get_flag_by_id(self, flag_id: str) -> Optional[FeatureFlag]:
        with self._session() as db:
            row = db.get(FeatureFlagRow, flag_id)
            return _flag_from_row(row) if row else None

    def list_flags(self, status: Optional[FlagStatus] = None, limit: int = 50, offset: int = 0) -> List[FeatureFlag]:
        with self._session() as db:
            query = select(FeatureFlagRow)
            if status is not None:
                query = query.where(FeatureFlagRow.status == status.value)
            query = query.order_by(FeatureFlagRow.created_at.desc()).limit(limit).offset(offset)
            return [_flag_from_row(row) for row in db.execute(query).scalars().all()]

    def update_flag(self, flag: FeatureFlag) -> FeatureFlag:
        with self._session() as db, transaction(db):
            row = db.get(FeatureFlagRow, flag.id)
            if row is None:
                row = FeatureFlagRow(id=flag.id)
                db.add(row)
            _apply_flag(row, flag)
        return flag

    def update_flag_status(self, flag_id: str, status: FlagStatus, updated_at: datetime) -> None:
        with self._session() as db, transaction(db):
            db.execute(
                update(FeatureFlagRow)
                .where(FeatureFlagRow.id == flag_id)
                .values(status=status.value, updated_at=_to_db(updated_at))
            )

    def list_active_flags(self) -> List[FeatureFlag]:
        with self._session() as db:
            rows = db.execute(select(FeatureFlagRow).where(FeatureFlagRow.status == FlagStatus.ACTIVE.value))
            return [_flag_from_row(row) for row in rows.scalars().all()]

    # ------------------------------------------------------------------
    # Overrides
    # ------------------------------------------------------------------

    def upsert_override(self, override: FlagOverride) -> FlagOverride:
        try:
            return self._upsert_override(override)
        except StoreError as e:
            if not isinstance(e.__cause__, IntegrityError):
                raise
            # Lost an insert race for the same (flag, subject); the row now exists
            return self._upsert_override(override)

    def _upsert_override(self, override: FlagOverride) -> FlagOverride:
        with self._session() as db, transaction(db):
            row = db.execute(
                select(FlagOverrideRow).where(
                    FlagOverrideRow.flag_id == override.flag_id,
                    FlagOverrideRow.subject_id == override.subject_id,
                )
            ).scalar_one_or_none()
            if row is None:
                row = FlagOverrideRow(
                    id=override.id,
                    flag_id=override.flag_id,
                    subject_id=override.subject_id,
                    created_at=_to_db(override.created_at),
                )
                db.add(row)
            row.enabled = override.enabled
            row.reason = override.reason
            row.expires_at = _to_db(override.expires_at)
            row.created_by = override.created_by
            db.flush()
            return _override_from_row(row)

    def get_override(self, flag_id: str, subject_id: str) -> Optional[FlagOverride]:
        now = _to_db(self._clock())
        with self._session() as db:
            row = db.execute(
                select(FlagOverrideRow).where(
                    FlagOverrideRow.flag_id == flag_id,
                    FlagOverrideRow.subject_id == subject_id,
                    or_(FlagOverrideRow.expires_at.is_(None), FlagOverrideRow.expires_at > now),
                )
            ).scalar_one_or_none()
            return _override_from_row(row) if row else None

    def list_overrides(self, flag_id: str) -> List[FlagOverride]:
        with self._session() as db:
            rows = db.execute(
                select(FlagOverrideRow)
                .where(FlagOverrideRow.flag_id == flag_id)
                .order_by(FlagOverrideRow.created_at.desc())
            )
            return [_override_from_row(row) for row in rows.scalars().all()]

    def delete_override(self, flag_id: str, subject_id: str) -> bool:
        with self._session() as db, transaction(db):
            result = db.execute(
                delete(FlagOverrideRow).where(
                    FlagOverrideRow.flag_id == flag_id,
                    FlagOverrideRow.subject_id == subject_id,
                )
            )
            return result.rowcount > 0

    # ------------------------------------------------------------------
    # Experiments
    # ------------------------------------------------------------------

    def create_experiment(self, experiment: Experiment, variants: List[Variant]) -> Experiment:
        with self._session() as db, transaction(db):
            row = ExperimentRow(id=experiment.id)
            _apply_experiment(row, experiment)
            db.add(row)
            for variant in variants:
                db.add(
                    VariantRow(
                        id=variant.id,
                        experiment_id=experiment.id,
                        key=variant.key,
                        name=variant.name,
                        description=variant.description,
                        is_control=variant.is_control,
                        weight=variant.weight,
                        config=dict(variant.config),
                        created_at=_to_db(variant.created_at),
                    )
                )
        return experiment

    def get_experiment_by_key(self, key: str) -> Optional[Experiment]:
        with self._session() as db:
            row = db.execute(select(ExperimentRow).where(ExperimentRow.key == key)).scalar_one_or_none()
            return _experiment_from_row(row) if row else None

    def get_experiment_by_id(self, experiment_id: str) -> Optional[Experiment]:
        with self._session() as db:
            row = db.get(ExperimentRow, experiment_id)
            return _experiment_from_row(row) if row else None

    def list_experiments(
        self, status: Optional[ExperimentStatus] = None, limit: int = 20, offset: int = 0
    ) -> List[Experiment]:
        with self._session() as db:
            query = select(ExperimentRow)
            if status is not None:
                query = query.where(ExperimentRow.status == status.value)
            query = query.order_by(ExperimentRow.created_at.desc()).limit(limit).offset(offset)
            return [_experiment_from_row(row) for row in db.execute(query).scalars().all()]

    def update_experiment(self, experiment: Experiment) -> Experiment:
        with self._session() as db, transaction(db):
            row = db.get(ExperimentRow, experiment.id)
            if row is None:
                row = ExperimentRow(id=experiment.id)
                db.add(row)
            _apply_experiment(row, experiment)
        return experiment

    def get_variants(self, experiment_id: str) -> List[Variant]:
        with self._session() as db:
            rows = db.execute(
                select(VariantRow)
                .where(VariantRow.experiment_id == experiment_id)
                .order_by(VariantRow.is_control.desc(), VariantRow.key.asc())
            )
            return [_variant_from_row(row) for row in rows.scalars().all()]

    def list_running_experiments(self) -> List[Experiment]:
        with self._session() as db:
            rows = db.execute(select(ExperimentRow).where(ExperimentRow.status == ExperimentStatus.RUNNING.value))
            return [_experiment_from_row(row) for row in rows.scalars().all()]

    # ------------------------------------------------------------------
    # Assignments and events
    # ------------------------------------------------------------------

    def get_assignment(self, experiment_id: str, subject_id: str) -> Optional[ExperimentAssignment]:
        with self._session() as db:
            row = db.execute(
                select(AssignmentRow).where(
                    AssignmentRow.experiment_id == experiment_id,
                    AssignmentRow.subject_id == subject_id,
                )
            ).scalar_one_or_none()
            return _assignment_from_row(row) if row else None

    def create_assignment_if_absent(self, assignment: ExperimentAssignment) -> bool:
        with self._session() as db:
            db.add(
                AssignmentRow(
                    id=assignment.id,
                    experiment_id=assignment.experiment_id,
                    subject_id=assignment.subject_id,
                    variant_id=assignment.variant_id,
                    assigned_at=_to_db(assignment.assigned_at),
                )
            )
            try:
                db.commit()
            except IntegrityError:
                # Unique (experiment_id, subject_id): another writer got there first
                db.rollback()
                return False
            return True

    def get_assignment_counts(self, experiment_id: str) -> Dict[str, int]:
        with self._session() as db:
            rows = db.execute(
                select(AssignmentRow.variant_id, func.count(AssignmentRow.id))
                .where(AssignmentRow.experiment_id == experiment_id)
                .group_by(AssignmentRow.variant_id)
            )
            return {variant_id: count for variant_id, count in rows.all()}

    def record_event(self, event: ExperimentEvent) -> None:
        with self._session() as db, transaction(db):
            db.add(
                EventRow(
                    id=event.id,
                    experiment_id=event.experiment_id,
                    subject_id=event.subject_id,
                    variant_id=event.variant_id,
                    event_type=event.event_type,
                    event_value=event.event_value,
                    event_metadata=dict(event.metadata),
                    created_at=_to_db(event.created_at),
                )
            )

    def get_variant_metrics(self, experiment_id: str) -> List[VariantMetrics]:
        variants = self.get_variants(experiment_id)
        counts = self.get_assignment_counts(experiment_id)
        with self._session() as db:
            rows = db.execute(
                select(
                    EventRow.variant_id,
                    func.sum(case((EventRow.event_type == EVENT_IMPRESSION, 1), else_=0)),
                    func.sum(case((EventRow.event_type == EVENT_CONVERSION, 1), else_=0)),
                    func.avg(EventRow.event_value),
                    func.sum(EventRow.event_value),
                )
                .where(EventRow.experiment_id == experiment_id)
                .group_by(EventRow.variant_id)
            )
            aggregates = {row[0]: row[1:] for row in rows.all()}

        metrics = []
        for variant in variants:
            impressions, conversions, avg_value, total_value = aggregates.get(variant.id, (0, 0, None, None))
            impressions = int(impressions or 0)
            conversions = int(conversions or 0)
            metrics.append(
                VariantMetrics(
                    variant_id=variant.id,
                    variant_key=variant.key,
                    is_control=variant.is_control,
                    sample_size=counts.get(variant.id, 0),
                    impressions=impressions,
                    conversions=conversions,
                    conversion_rate=conversions / impressions if impressions > 0 else 0.0,
                    avg_event_value=float(avg_value or 0.0),
                    total_event_value=float(total_value or 0.0),
                )
            )
        return metrics
