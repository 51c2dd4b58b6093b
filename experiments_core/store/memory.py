"""In-process store.

Keeps every entity in dictionaries guarded by one lock. Used by tests and by
embedders that have no database; it honours the same insert-if-absent and
expiry semantics as the SQL store.
"""

from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from experiments_core.core.clock import utc_now
from experiments_core.models.experiment import (
    Experiment,
    ExperimentAssignment,
    ExperimentEvent,
    ExperimentStatus,
    Variant,
    VariantMetrics,
)
from experiments_core.models.flag import FeatureFlag, FlagOverride, FlagStatus
from experiments_core.store.base import fold_variant_metrics, variant_sort_key


class InMemoryExperimentsStore:
    """Dictionary-backed ``ExperimentsStore``.

    Returned entities are copies, so callers cannot mutate stored state
    without going through an update method.
    """

    def __init__(self, clock: Callable[[], datetime] = utc_now):
        self._clock = clock
        self._lock = threading.RLock()
        self._flags: Dict[str, FeatureFlag] = {}
        self._overrides: Dict[Tuple[str, str], FlagOverride] = {}
        self._experiments: Dict[str, Experiment] = {}
        self._variants: Dict[str, List[Variant]] = {}
        self._assignments: Dict[Tuple[str, str], ExperimentAssignment] = {}
        self._events: List[ExperimentEvent] = []

    # ------------------------------------------------------------------
    # Flags
    # ------------------------------------------------------------------

    def create_flag(self, flag: FeatureFlag) -> FeatureFlag:
        with self._lock:
            self._flags[flag.id] = replace(flag)
            return replace(flag)

    def get_flag_by_key(self, key: str) -> Optional[FeatureFlag]:
        with self._lock:
            for flag in self._flags.values():
                if flag.key == key:
                    return replace(flag)
            return None

    def get_flag_by_id(self, flag_id: str) -> Optional[FeatureFlag]:
        with self._lock:
            flag = self._flags.get(flag_id)
            return replace(flag) if flag else None

    def list_flags(self, status: Optional[FlagStatus] = None, limit: int = 50, offset: int = 0) -> List[FeatureFlag]:
        with self._lock:
            flags = [f for f in self._flags.values() if status is None or f.status == status]
            flags.sort(key=lambda f: f.created_at, reverse=True)
            return [replace(f) for f in flags[offset : offset + limit]]

    def update_flag(self, flag: FeatureFlag) -> FeatureFlag:
        with self._lock:
            self._flags[flag.id] = replace(flag)
            return replace(flag)

    def update_flag_status(self, flag_id: str, status: FlagStatus, updated_at: datetime) -> None:
        with self._lock:
            flag = self._flags.get(flag_id)
            if flag is not None:
                self._flags[flag_id] = replace(flag, status=status, updated_at=updated_at)

    def list_active_flags(self) -> List[FeatureFlag]:
        with self._lock:
            return [replace(f) for f in self._flags.values() if f.status == FlagStatus.ACTIVE]

    # ------------------------------------------------------------------
    # Overrides
    # ------------------------------------------------------------------

    def upsert_override(self, override: FlagOverride) -> FlagOverride:
        with self._lock:
            key = (override.flag_id, override.subject_id)
            existing = self._overrides.get(key)
            if existing is not None:
                # Keep the original row identity, replace the payload
                override = replace(override, id=existing.id)
            self._overrides[key] = replace(override)
            return replace(override)

    def get_override(self, flag_id: str, subject_id: str) -> Optional[FlagOverride]:
        with self._lock:
            override = self._overrides.get((flag_id, subject_id))
            if override is None or override.is_expired(self._clock()):
                return None
            return replace(override)

    def list_overrides(self, flag_id: str) -> List[FlagOverride]:
        with self._lock:
            overrides = [o for (fid, _), o in self._overrides.items() if fid == flag_id]
            overrides.sort(key=lambda o: o.created_at, reverse=True)
            return [replace(o) for o in overrides]

    def delete_override(self, flag_id: str, subject_id: str) -> bool:
        with self._lock:
            return self._overrides.pop((flag_id, subject_id), None) is not None

    # ------------------------------------------------------------------
    # Experiments
    # ------------------------------------------------------------------

    def create_experiment(self, experiment: Experiment, variants: List[Variant]) -> Experiment:
        with self._lock:
            self._experiments[experiment.id] = replace(experiment)
            self._variants[experiment.id] = [replace(v) for v in variants]
            return replace(experiment)

    def get_experiment_by_key(self, key: str) -> Optional[Experiment]:
        with self._lock:
            for experiment in self._experiments.values():
                if experiment.key == key:
                    return replace(experiment)
            return None

    def get_experiment_by_id(self, experiment_id: str) -> Optional[Experiment]:
        with self._lock:
            experiment = self._experiments.get(experiment_id)
            return replace(experiment) if experiment else None

    def list_experiments(
        self, status: Optional[ExperimentStatus] = None, limit: int = 20, offset: int = 0
    ) -> List[Experiment]:
        with self._lock:
            experiments = [e for e in self._experiments.values() if status is None or e.status == status]
            experiments.sort(key=lambda e: e.created_at, reverse=True)
            return [replace(e) for e in experiments[offset : offset + limit]]

    def update_experiment(self, experiment: Experiment) -> Experiment:
        with self._lock:
            self._experiments[experiment.id] = replace(experiment)
            return replace(experiment)

    def get_variants(self, experiment_id: str) -> List[Variant]:
        with self._lock:
            variants = sorted(self._variants.get(experiment_id, []), key=variant_sort_key)
            return [replace(v) for v in variants]

    def list_running_experiments(self) -> List[Experiment]:
        with self._lock:
            return [replace(e) for e in self._experiments.values() if e.status == ExperimentStatus.RUNNING]

    # ------------------------------------------------------------------
    # Assignments and events
    # ------------------------------------------------------------------

    def get_assignment(self, experiment_id: str, subject_id: str) -> Optional[ExperimentAssignment]:
        with self._lock:
            assignment = self._assignments.get((experiment_id, subject_id))
            return replace(assignment) if assignment else None

    def create_assignment_if_absent(self, assignment: ExperimentAssignment) -> bool:
        with self._lock:
            key = (assignment.experiment_id, assignment.subject_id)
            if key in self._assignments:
                return False
            self._assignments[key] = replace(assignment)
            return True

    def get_assignment_counts(self, experiment_id: str) -> Dict[str, int]:
        with self._lock:
            counts: Dict[str, int] = {}
            for (exp_id, _), assignment in self._assignments.items():
                if exp_id == experiment_id:
                    counts[assignment.variant_id] = counts.get(assignment.variant_id, 0) + 1
            return counts

    def record_event(self, event: ExperimentEvent) -> None:
        with self._lock:
            self._events.append(replace(event))

    def get_variant_metrics(self, experiment_id: str) -> List[VariantMetrics]:
        with self._lock:
            return fold_variant_metrics(
                self._variants.get(experiment_id, []),
                [a for (exp_id, _), a in self._assignments.items() if exp_id == experiment_id],
                [e for e in self._events if e.experiment_id == experiment_id],
            )

    def list_events(self, experiment_id: str) -> List[ExperimentEvent]:
        """All events recorded for an experiment, oldest first."""
        with self._lock:
            return [replace(e) for e in self._events if e.experiment_id == experiment_id]
