"""Prometheus metrics for flag evaluation and experiment assignment."""

from prometheus_client import Counter

from experiments_core.core.logging import get_logger

logger = get_logger(__name__)


def _safe_counter(*args, **kwargs):
    try:
        return Counter(*args, **kwargs)
    except ValueError:
        # Already registered (module re-imported under a test runner)
        logger.debug("metric_already_registered", metric=args[0] if args else None)

        class DummyMetric:
            def labels(self, *args, **kwargs):
                return self

            def inc(self, *args, **kwargs):
                pass

        return DummyMetric()


# ====================================================================
# Feature Flags
# ====================================================================

flag_evaluations_total = _safe_counter(
    "experiments_flag_evaluations_total",
    "Total feature flag evaluations",
    ["source"],  # "override", "blocked", "user_list", "percentage", "segment", "default", ...
)

flag_cache_reloads_total = _safe_counter(
    "experiments_flag_cache_reloads_total",
    "Full reloads of the active flag snapshot",
    ["result"],  # "success", "error"
)

flag_cache_invalidations_total = _safe_counter(
    "experiments_flag_cache_invalidations_total",
    "Flag cache invalidation events",
)

# ====================================================================
# Experiments
# ====================================================================

experiment_assignments_total = _safe_counter(
    "experiments_assignments_total",
    "Variant lookups for experiment subjects",
    ["result"],  # "existing", "created", "race_lost", "not_enrolled"
)

experiment_events_total = _safe_counter(
    "experiments_events_total",
    "Experiment events tracked",
    ["result"],  # "recorded", "dropped"
)
