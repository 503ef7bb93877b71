"""
Percentile and latency summaries over latency samples.
"""

import math
from collections.abc import Sequence

from kvqueue.types.monitor import LatencyPercentiles


def calculate_percentile(sorted_samples: Sequence[float], percentile: float) -> float:
    """
    Linear-interpolated percentile of an ascending sequence.

    ``index = p * (n - 1)``; the result blends the floor and ceiling
    neighbours by the fractional part of the index.

    Args:
        sorted_samples: Samples sorted ascending.
        percentile: Fraction between 0 and 1.

    Returns:
        The percentile value, or 0.0 for an empty sequence.
    """
    if not sorted_samples:
        return 0.0

    index = percentile * (len(sorted_samples) - 1)
    lower = math.floor(index)
    upper = math.ceil(index)
    weight = index - lower

    if upper >= len(sorted_samples):
        return float(sorted_samples[-1])
    return float(sorted_samples[lower] * (1 - weight) + sorted_samples[upper] * weight)


def summarize_latency(samples: Sequence[float]) -> LatencyPercentiles:
    """Summarize raw latency samples (ms) into count, average and percentiles."""
    if not samples:
        return LatencyPercentiles()

    ordered = sorted(samples)
    return LatencyPercentiles(
        count=len(ordered),
        average=sum(ordered) / len(ordered),
        p50=calculate_percentile(ordered, 0.5),
        p95=calculate_percentile(ordered, 0.95),
        p99=calculate_percentile(ordered, 0.99),
    )
