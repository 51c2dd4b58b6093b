"""
Flag evaluation and experiment services

This module provides:
- Consistent hash bucketing for rollouts and variants
- Segment rule matching
- The active flag snapshot cache
- Flag evaluation
- Experiment lifecycle, assignment and event tracking
- Statistical analysis of experiment results
"""

from experiments_core.services.assignment_tracker import AssignmentTracker
from experiments_core.services.bucketing import ConsistentBucketer
from experiments_core.services.experiment_lifecycle import ExperimentLifecycle
from experiments_core.services.experiments_service import ExperimentsService
from experiments_core.services.flag_cache import FlagCache
from experiments_core.services.flag_evaluation import EvaluationResult, EvaluationSource, FlagEvaluationEngine
from experiments_core.services.segment_matcher import SegmentMatcher
from experiments_core.services.statistics import StatisticalAnalyzer

__all__ = [
    "AssignmentTracker",
    "ConsistentBucketer",
    "EvaluationResult",
    "EvaluationSource",
    "ExperimentLifecycle",
    "ExperimentsService",
    "FlagCache",
    "FlagEvaluationEngine",
    "SegmentMatcher",
    "StatisticalAnalyzer",
]
