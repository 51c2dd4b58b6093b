"""Store collaborator contract.

The services depend on ``ExperimentsStore`` only. Implementations raise
``StoreError`` when their backend is unavailable and never raise for a
missing row: lookups return ``None`` instead.
"""

from __future__ import annotations

from datetime import datetime
from typing import Dict, Iterable, List, Optional, Protocol

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
from experiments_core.models.flag import FeatureFlag, FlagOverride, FlagStatus


class ExperimentsStore(Protocol):
    """Persistence operations consumed by the flag and experiment services."""

    # Flags

    def create_flag(self, flag: FeatureFlag) -> FeatureFlag: ...

    def get_flag_by_key(self, key: str) -> Optional[FeatureFlag]: ...

    def get_flag_by_id(self, flag_id: str) -> Optional[FeatureFlag]: ...

    def list_flags(
        self, status: Optional[FlagStatus] = None, limit: int = 50, offset: int = 0
    ) -> List[FeatureFlag]: ...

    def update_flag(self, flag: FeatureFlag) -> FeatureFlag: ...

    def update_flag_status(self, flag_id: str, status: FlagStatus, updated_at: datetime) -> None: ...

    def list_active_flags(self) -> List[FeatureFlag]: ...

    # Overrides

    def upsert_override(self, override: FlagOverride) -> FlagOverride: ...

    def get_override(self, flag_id: str, subject_id: str) -> Optional[FlagOverride]:
        """Return the unexpired override for (flag, subject), if any."""
        ...

    def list_overrides(self, flag_id: str) -> List[FlagOverride]: ...

    def delete_override(self, flag_id: str, subject_id: str) -> bool: ...

    # Experiments

    def create_experiment(self, experiment: Experiment, variants: List[Variant]) -> Experiment: ...

    def get_experiment_by_key(self, key: str) -> Optional[Experiment]: ...

    def get_experiment_by_id(self, experiment_id: str) -> Optional[Experiment]: ...

    def list_experiments(
        self, status: Optional[ExperimentStatus] = None, limit: int = 20, offset: int = 0
    ) -> List[Experiment]: ...

    def update_experiment(self, experiment: Experiment) -> Experiment: ...

    def get_variants(self, experiment_id: str) -> List[Variant]:
        """Return variants ordered control first, then by key."""
        ...

    def list_running_experiments(self) -> List[Experiment]: ...

    # Assignments and events

    def get_assignment(self, experiment_id: str, subject_id: str) -> Optional[ExperimentAssignment]: ...

    def create_assignment_if_absent(self, assignment: ExperimentAssignment) -> bool:
        """Insert the assignment unless one exists for (experiment, subject).

        Returns True when this call inserted the row.
        """
        ...

    def get_assignment_counts(self, experiment_id: str) -> Dict[str, int]: ...

    def record_event(self, event: ExperimentEvent) -> None: ...

    def get_variant_metrics(self, experiment_id: str) -> List[VariantMetrics]: ...


def variant_sort_key(variant: Variant):
    """Stable variant order: control first, then lexicographic by key."""
    return (not variant.is_control, variant.key)


def fold_variant_metrics(
    variants: Iterable[Variant],
    assignments: Iterable[ExperimentAssignment],
    events: Iterable[ExperimentEvent],
) -> List[VariantMetrics]:
    """Aggregate assignments and events into per-variant metrics.

    Sample size counts assignments. Conversion rate is conversions over
    impressions, 0 when there were no impressions. Value statistics cover
    events that carry a value.
    """
    metrics: Dict[str, VariantMetrics] = {}
    values: Dict[str, List[float]] = {}
    for variant in sorted(variants, key=variant_sort_key):
        metrics[variant.id] = VariantMetrics(
            variant_id=variant.id,
            variant_key=variant.key,
            is_control=variant.is_control,
        )
        values[variant.id] = []

    for assignment in assignments:
        if assignment.variant_id in metrics:
            metrics[assignment.variant_id].sample_size += 1

    for event in events:
        m = metrics.get(event.variant_id)
        if m is None:
            continue
        if event.event_type == EVENT_IMPRESSION:
            m.impressions += 1
        elif event.event_type == EVENT_CONVERSION:
            m.conversions += 1
        if event.event_value is not None:
            values[event.variant_id].append(event.event_value)

    for variant_id, m in metrics.items():
        if m.impressions > 0:
            m.conversion_rate = m.conversions / m.impressions
        vals = values[variant_id]
        if vals:
            m.total_event_value = sum(vals)
            m.avg_event_value = m.total_event_value / len(vals)

    return list(metrics.values())
