"""A/B experiment domain model.

An ``Experiment`` splits a share of eligible subjects across weighted
``Variant`` arms. Each subject is assigned at most once per experiment
(``ExperimentAssignment``) and events are appended against that assignment
(``ExperimentEvent``). ``VariantMetrics`` and ``ExperimentResults`` are
derived on demand and never stored.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from experiments_core.core.clock import utc_now
from experiments_core.models.flag import SegmentRules


class ExperimentStatus(str, Enum):
    """Lifecycle status of an experiment."""

    DRAFT = "draft"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    ARCHIVED = "archived"


class RecommendedAction(str, Enum):
    """Verdict produced by the statistical analysis."""

    CONTINUE = "continue"
    CONCLUDE_WINNER = "conclude_winner"
    CONCLUDE_NO_IMPROVEMENT = "conclude_no_improvement"
    INSUFFICIENT_VARIANTS = "insufficient_variants"


# Event types with a meaning in variant metrics; any other type is stored as-is
EVENT_IMPRESSION = "impression"
EVENT_CONVERSION = "conversion"


@dataclass
class Experiment:
    """An A/B test."""

    id: str
    key: str
    name: str
    status: ExperimentStatus = ExperimentStatus.DRAFT
    description: str = ""
    hypothesis: str = ""
    traffic_percentage: int = 100
    segment_rules: Optional[SegmentRules] = None
    primary_metric: str = ""
    secondary_metrics: List[str] = field(default_factory=list)
    min_sample_size: int = 100
    confidence_level: float = 0.95
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    created_by: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "key": self.key,
            "name": self.name,
            "description": self.description,
            "hypothesis": self.hypothesis,
            "status": self.status.value,
            "traffic_percentage": self.traffic_percentage,
            "segment_rules": self.segment_rules.to_dict() if self.segment_rules else None,
            "primary_metric": self.primary_metric,
            "secondary_metrics": list(self.secondary_metrics),
            "min_sample_size": self.min_sample_size,
            "confidence_level": self.confidence_level,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass
class Variant:
    """One treatment arm of an experiment."""

    id: str
    experiment_id: str
    key: str
    name: str = ""
    description: str = ""
    is_control: bool = False
    weight: int = 0
    config: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "experiment_id": self.experiment_id,
            "key": self.key,
            "name": self.name,
            "description": self.description,
            "is_control": self.is_control,
            "weight": self.weight,
            "config": dict(self.config),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass
class ExperimentAssignment:
    """Durable record of the variant a subject was placed into."""

    id: str
    experiment_id: str
    subject_id: str
    variant_id: str
    assigned_at: datetime = field(default_factory=utc_now)


@dataclass
class ExperimentEvent:
    """Append-only event recorded against an assignment."""

    id: str
    experiment_id: str
    subject_id: str
    variant_id: str
    event_type: str
    event_value: Optional[float] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)


@dataclass
class VariantMetrics:
    """Aggregate of assignments and events for one variant."""

    variant_id: str
    variant_key: str
    is_control: bool = False
    sample_size: int = 0
    impressions: int = 0
    conversions: int = 0
    conversion_rate: float = 0.0
    avg_event_value: float = 0.0
    total_event_value: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "variant_id": self.variant_id,
            "variant_key": self.variant_key,
            "is_control": self.is_control,
            "sample_size": self.sample_size,
            "impressions": self.impressions,
            "conversions": self.conversions,
            "conversion_rate": self.conversion_rate,
            "avg_event_value": self.avg_event_value,
            "total_event_value": self.total_event_value,
        }


@dataclass
class ExperimentResults:
    """Significance verdict for an experiment."""

    variants: List[VariantMetrics] = field(default_factory=list)
    experiment: Optional[Experiment] = None
    winner: Optional[str] = None  # Variant key when a non-control variant wins
    is_significant: bool = False
    p_value: Optional[float] = None
    uplift: Optional[float] = None  # % improvement of the best variant over control
    can_conclude: bool = False  # Every variant reached the minimum sample size
    recommended_action: Optional[RecommendedAction] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "experiment": self.experiment.to_dict() if self.experiment else None,
            "variants": [v.to_dict() for v in self.variants],
            "winner": self.winner,
            "is_significant": self.is_significant,
            "p_value": self.p_value,
            "uplift": self.uplift,
            "can_conclude": self.can_conclude,
            "recommended_action": self.recommended_action.value if self.recommended_action else None,
        }
