"""Domain models and request schemas."""

from experiments_core.models.context import UserContext
from experiments_core.models.experiment import (
    EVENT_CONVERSION,
    EVENT_IMPRESSION,
    Experiment,
    ExperimentAssignment,
    ExperimentEvent,
    ExperimentResults,
    ExperimentStatus,
    RecommendedAction,
    Variant,
    VariantMetrics,
)
from experiments_core.models.flag import FeatureFlag, FlagOverride, FlagStatus, FlagType, SegmentRules

__all__ = [
    "EVENT_CONVERSION",
    "EVENT_IMPRESSION",
    "Experiment",
    "ExperimentAssignment",
    "ExperimentEvent",
    "ExperimentResults",
    "ExperimentStatus",
    "FeatureFlag",
    "FlagOverride",
    "FlagStatus",
    "FlagType",
    "RecommendedAction",
    "SegmentRules",
    "UserContext",
    "Variant",
    "VariantMetrics",
]
