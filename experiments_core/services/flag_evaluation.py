"""Feature flag evaluation.

Resolution order, first match wins:

1. Unknown flag -> disabled (not_found)
2. Flag not active -> disabled (inactive)
3. Subject override, unexpired -> override value (override)
4. Subject in block list -> disabled (blocked); in allow list -> enabled (user_list)
5. Type-specific strategy (boolean, percentage, user_list, segment)

Store failures never escape evaluation: a failed flag lookup reads as
not_found and a failed override lookup is skipped.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Iterable, Optional

from experiments_core.core.errors import StoreError
from experiments_core.core.logging import get_logger
from experiments_core.core.metrics import flag_evaluations_total
from experiments_core.models.context import UserContext
from experiments_core.models.flag import FeatureFlag, FlagType
from experiments_core.services.bucketing import ConsistentBucketer
from experiments_core.services.flag_cache import FlagCache
from experiments_core.services.segment_matcher import SegmentMatcher
from experiments_core.store.base import ExperimentsStore

logger = get_logger(__name__)


class EvaluationSource(str, Enum):
    """Why an evaluation produced its result."""

    NOT_FOUND = "not_found"
    INACTIVE = "inactive"
    OVERRIDE = "override"
    BLOCKED = "blocked"
    USER_LIST = "user_list"
    DEFAULT = "default"
    NO_CONTEXT = "no_context"
    PERCENTAGE = "percentage"
    SEGMENT = "segment"


@dataclass(frozen=True)
class EvaluationResult:
    """Outcome of evaluating one flag for one subject."""

    enabled: bool
    source: EvaluationSource

    def to_dict(self):
        return {"enabled": self.enabled, "source": self.source.value}


class FlagEvaluationEngine:
    """Evaluates flags for subjects using the cache, overrides and strategies."""

    def __init__(
        self,
        store: ExperimentsStore,
        cache: FlagCache,
        bucketer: Optional[ConsistentBucketer] = None,
        matcher: Optional[SegmentMatcher] = None,
    ):
        self.store = store
        self.cache = cache
        self.bucketer = bucketer or ConsistentBucketer()
        self.matcher = matcher or SegmentMatcher()
        self._strategies: Dict[FlagType, Callable[[FeatureFlag, Optional[UserContext]], EvaluationResult]] = {
            FlagType.BOOLEAN: self._evaluate_boolean,
            FlagType.PERCENTAGE: self._evaluate_percentage,
            FlagType.USER_LIST: self._evaluate_user_list,
            FlagType.SEGMENT: self._evaluate_segment,
        }

    def evaluate(self, flag_key: str, ctx: Optional[UserContext] = None) -> EvaluationResult:
        """Evaluate a flag for an optional subject context."""
        result = self._resolve(flag_key, ctx)
        flag_evaluations_total.labels(source=result.source.value).inc()
        return result

    def evaluate_many(self, flag_keys: Iterable[str], ctx: Optional[UserContext] = None) -> Dict[str, EvaluationResult]:
        """Evaluate several flags independently.

        A key whose evaluation raises is left out of the result instead of
        failing the batch.
        """
        results: Dict[str, EvaluationResult] = {}
        for key in flag_keys:
            try:
                results[key] = self.evaluate(key, ctx)
            except Exception as e:
                logger.warning(
                    "flag_evaluation_skipped",
                    key=key,
                    error=str(e),
                    error_type=type(e).__name__,
                )
        return results

    def _resolve(self, flag_key: str, ctx: Optional[UserContext]) -> EvaluationResult:
        try:
            flag = self.cache.get(flag_key)
        except StoreError as e:
            logger.warning("flag_lookup_failed", key=flag_key, error=str(e))
            flag = None

        if flag is None:
            return EvaluationResult(False, EvaluationSource.NOT_FOUND)

        if not flag.is_active:
            return EvaluationResult(False, EvaluationSource.INACTIVE)

        if ctx is not None:
            override = self._get_override(flag, ctx.subject_id)
            if override is not None:
                return EvaluationResult(override.enabled, EvaluationSource.OVERRIDE)

            if ctx.subject_id in flag.blocked_subject_ids:
                return EvaluationResult(False, EvaluationSource.BLOCKED)
            if ctx.subject_id in flag.allowed_subject_ids:
                return EvaluationResult(True, EvaluationSource.USER_LIST)

        strategy = self._strategies.get(flag.flag_type)
        if strategy is None:
            logger.debug("unknown_flag_type", key=flag.key, flag_type=str(flag.flag_type))
            return self._evaluate_boolean(flag, ctx)
        return strategy(flag, ctx)

    def _get_override(self, flag: FeatureFlag, subject_id: str):
        # Read through to the store so admin changes apply immediately
        try:
            return self.store.get_override(flag.id, subject_id)
        except StoreError as e:
            logger.warning("flag_override_lookup_failed", key=flag.key, error=str(e))
            return None

    def _evaluate_boolean(self, flag: FeatureFlag, ctx: Optional[UserContext]) -> EvaluationResult:
        return EvaluationResult(flag.enabled, EvaluationSource.DEFAULT)

    def _evaluate_percentage(self, flag: FeatureFlag, ctx: Optional[UserContext]) -> EvaluationResult:
        if ctx is None:
            return EvaluationResult(False, EvaluationSource.NO_CONTEXT)
        in_rollout = self.bucketer.is_in_percentage(flag.key, ctx.subject_id, flag.rollout_percentage)
        return EvaluationResult(in_rollout, EvaluationSource.PERCENTAGE)

    def _evaluate_user_list(self, flag: FeatureFlag, ctx: Optional[UserContext]) -> EvaluationResult:
        # Allow-listed subjects were already resolved above
        return EvaluationResult(False, EvaluationSource.USER_LIST)

    def _evaluate_segment(self, flag: FeatureFlag, ctx: Optional[UserContext]) -> EvaluationResult:
        if ctx is None or flag.segment_rules is None:
            return EvaluationResult(flag.enabled, EvaluationSource.DEFAULT)
        return EvaluationResult(self.matcher.matches(ctx, flag.segment_rules), EvaluationSource.SEGMENT)
