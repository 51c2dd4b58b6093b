"""Experiment lifecycle state machine.

    draft ──start──▶ running ──pause──▶ paused
                       ▲                  │
                       └──────start───────┘
    any ──conclude──▶ completed
    draft | paused | completed ──archive──▶ archived

Experiments are created in ``draft``. Only ``conclude`` leaves ``archived``.
"""

from __future__ import annotations

import uuid
from dataclasses import replace
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from experiments_core.core.clock import utc_now
from experiments_core.core.config import settings
from experiments_core.core.errors import ErrorCodes, NotFoundError, RequestValidationError
from experiments_core.core.logging import get_logger
from experiments_core.models.experiment import Experiment, ExperimentStatus, Variant
from experiments_core.models.schemas import CreateExperimentRequest
from experiments_core.store.base import ExperimentsStore, variant_sort_key

logger = get_logger(__name__)

TOTAL_WEIGHT = 100

# Allowed source states per transition
_START_FROM = frozenset({ExperimentStatus.DRAFT, ExperimentStatus.PAUSED})
_PAUSE_FROM = frozenset({ExperimentStatus.RUNNING})
_ARCHIVE_FROM = frozenset({ExperimentStatus.DRAFT, ExperimentStatus.PAUSED, ExperimentStatus.COMPLETED})


def _new_id() -> str:
    return str(uuid.uuid4())


class ExperimentLifecycle:
    """Creates experiments and moves them between lifecycle states.

    Store errors propagate; callers on administrative paths translate them.
    """

    def __init__(
        self,
        store: ExperimentsStore,
        clock: Callable[[], datetime] = utc_now,
        default_min_sample_size: Optional[int] = None,
        default_confidence_level: Optional[float] = None,
    ):
        self.store = store
        self._clock = clock
        self.default_min_sample_size = (
            settings.EXPERIMENT_DEFAULT_MIN_SAMPLE_SIZE if default_min_sample_size is None else default_min_sample_size
        )
        self.default_confidence_level = (
            settings.EXPERIMENT_DEFAULT_CONFIDENCE_LEVEL
            if default_confidence_level is None
            else default_confidence_level
        )

    def create(self, admin_id: Optional[str], req: CreateExperimentRequest) -> Tuple[Experiment, List[Variant]]:
        """Validate and persist a new draft experiment with its variants.

        Raises:
            RequestValidationError: Duplicate key, weights not summing to 100,
                no control variant, or duplicate variant keys
        """
        self.validate_variants(req)

        if self.store.get_experiment_by_key(req.key) is not None:
            raise RequestValidationError(
                f"Experiment with key '{req.key}' already exists",
                details={"key": req.key},
            )

        now = self._clock()
        experiment = Experiment(
            id=_new_id(),
            key=req.key,
            name=req.name,
            description=req.description,
            hypothesis=req.hypothesis,
            status=ExperimentStatus.DRAFT,
            traffic_percentage=req.traffic_percentage,
            segment_rules=req.segment_rules,
            primary_metric=req.primary_metric,
            secondary_metrics=list(req.secondary_metrics),
            min_sample_size=req.min_sample_size or self.default_min_sample_size,
            confidence_level=req.confidence_level or self.default_confidence_level,
            created_by=admin_id,
            created_at=now,
            updated_at=now,
        )
        variants = [
            Variant(
                id=_new_id(),
                experiment_id=experiment.id,
                key=v.key,
                name=v.name,
                description=v.description,
                is_control=v.is_control,
                weight=v.weight,
                config=dict(v.config),
                created_at=now,
            )
            for v in req.variants
        ]

        experiment = self.store.create_experiment(experiment, variants)
        logger.info(
            "experiment_created",
            key=experiment.key,
            variant_count=len(variants),
            created_by=admin_id,
        )
        return experiment, sorted(variants, key=variant_sort_key)

    @staticmethod
    def validate_variants(req: CreateExperimentRequest) -> None:
        total_weight = sum(v.weight for v in req.variants)
        if total_weight != TOTAL_WEIGHT:
            raise RequestValidationError(
                f"Variant weights must sum to {TOTAL_WEIGHT}, got {total_weight}",
                details={"total_weight": total_weight},
            )

        if not any(v.is_control for v in req.variants):
            raise RequestValidationError("Experiment must have a control variant")

        keys = [v.key for v in req.variants]
        duplicates = sorted({k for k in keys if keys.count(k) > 1})
        if duplicates:
            raise RequestValidationError(
                "Variant keys must be unique within an experiment",
                details={"duplicate_keys": duplicates},
            )

    def start(self, experiment_id: str) -> Experiment:
        """draft | paused -> running. ``started_at`` is set on the first start only."""
        experiment = self._get(experiment_id)
        self._check_transition(experiment, _START_FROM, ExperimentStatus.RUNNING)

        now = self._clock()
        updated = replace(
            experiment,
            status=ExperimentStatus.RUNNING,
            started_at=experiment.started_at or now,
            updated_at=now,
        )
        return self._save(updated, experiment.status)

    def pause(self, experiment_id: str) -> Experiment:
        """running -> paused."""
        experiment = self._get(experiment_id)
        self._check_transition(experiment, _PAUSE_FROM, ExperimentStatus.PAUSED)

        updated = replace(experiment, status=ExperimentStatus.PAUSED, updated_at=self._clock())
        return self._save(updated, experiment.status)

    def conclude(self, experiment_id: str) -> Experiment:
        """any -> completed, stamping ``ended_at``."""
        experiment = self._get(experiment_id)

        now = self._clock()
        updated = replace(experiment, status=ExperimentStatus.COMPLETED, ended_at=now, updated_at=now)
        return self._save(updated, experiment.status)

    def archive(self, experiment_id: str) -> Experiment:
        """draft | paused | completed -> archived."""
        experiment = self._get(experiment_id)
        self._check_transition(experiment, _ARCHIVE_FROM, ExperimentStatus.ARCHIVED)

        updated = replace(experiment, status=ExperimentStatus.ARCHIVED, updated_at=self._clock())
        return self._save(updated, experiment.status)

    def _get(self, experiment_id: str) -> Experiment:
        experiment = self.store.get_experiment_by_id(experiment_id)
        if experiment is None:
            raise NotFoundError(
                f"Experiment '{experiment_id}' not found",
                details={"experiment_id": experiment_id},
            )
        return experiment

    @staticmethod
    def _check_transition(experiment: Experiment, allowed_from, target: ExperimentStatus) -> None:
        if experiment.status not in allowed_from:
            raise RequestValidationError(
                f"Cannot move experiment from {experiment.status.value} to {target.value}",
                code=ErrorCodes.INVALID_TRANSITION,
                details={"from": experiment.status.value, "to": target.value},
            )

    def _save(self, experiment: Experiment, previous: ExperimentStatus) -> Experiment:
        experiment = self.store.update_experiment(experiment)
        logger.info(
            "experiment_status_changed",
            key=experiment.key,
            from_status=previous.value,
            to_status=experiment.status.value,
        )
        return experiment
