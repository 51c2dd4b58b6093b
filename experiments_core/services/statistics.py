"""Significance analysis for experiment results.

Uses a two-proportion z-test on conversion rates, comparing the control
against the best-performing variant. The math is simple enough to reproduce
by hand:

    p  = (p1*n1 + p2*n2) / (n1 + n2)
    se = sqrt(p * (1 - p) * (1/n1 + 1/n2))
    z  = |p2 - p1| / se
    p-value = 2 * (1 - Phi(z))
"""

from __future__ import annotations

import math
from typing import Sequence

from experiments_core.models.experiment import ExperimentResults, RecommendedAction, VariantMetrics

# Two-tailed critical values, checked in descending confidence order
Z_CRITICAL_99 = 2.576
Z_CRITICAL_95 = 1.96
Z_CRITICAL_90 = 1.645


def z_critical(confidence_level: float) -> float:
    if confidence_level >= 0.99:
        return Z_CRITICAL_99
    if confidence_level >= 0.95:
        return Z_CRITICAL_95
    return Z_CRITICAL_90


def normal_cdf(x: float) -> float:
    """Standard normal cumulative distribution function."""
    return 0.5 * (1.0 + math.erf(x / math.sqrt(2.0)))


class StatisticalAnalyzer:
    """Derives a verdict from per-variant metrics."""

    def analyze(
        self,
        metrics: Sequence[VariantMetrics],
        min_sample_size: int,
        confidence_level: float,
    ) -> ExperimentResults:
        results = ExperimentResults(variants=list(metrics))

        if len(metrics) < 2:
            results.recommended_action = RecommendedAction.INSUFFICIENT_VARIANTS
            return results

        results.can_conclude = all(m.sample_size >= min_sample_size for m in metrics)

        control = self._find_control(metrics)
        best = metrics[0]
        for m in metrics[1:]:
            if m.conversion_rate > best.conversion_rate:
                best = m

        if control.conversion_rate > 0:
            results.uplift = (best.conversion_rate - control.conversion_rate) / control.conversion_rate * 100

        self._significance(results, control, best, confidence_level)

        if not results.can_conclude:
            results.recommended_action = RecommendedAction.CONTINUE
        elif results.is_significant and best.variant_id != control.variant_id:
            results.recommended_action = RecommendedAction.CONCLUDE_WINNER
            results.winner = best.variant_key
        elif results.is_significant:
            results.recommended_action = RecommendedAction.CONCLUDE_NO_IMPROVEMENT
        else:
            results.recommended_action = RecommendedAction.CONTINUE

        return results

    @staticmethod
    def _find_control(metrics: Sequence[VariantMetrics]) -> VariantMetrics:
        for m in metrics:
            if m.is_control:
                return m
        return metrics[0]

    @staticmethod
    def _significance(
        results: ExperimentResults,
        control: VariantMetrics,
        best: VariantMetrics,
        confidence_level: float,
    ) -> None:
        n1, n2 = control.sample_size, best.sample_size
        if n1 == 0 or n2 == 0:
            return

        p1, p2 = control.conversion_rate, best.conversion_rate
        pooled = (p1 * n1 + p2 * n2) / (n1 + n2)
        if pooled <= 0 or pooled >= 1:
            # Standard error undefined
            return

        se = math.sqrt(pooled * (1 - pooled) * (1 / n1 + 1 / n2))
        z = abs(p2 - p1) / se

        results.is_significant = z > z_critical(confidence_level)
        results.p_value = 2 * (1 - normal_cdf(z))

