"""
Job monitor module.
"""

from kvqueue.monitor.job_monitor import AlertThresholds, JobMonitor
from kvqueue.monitor.stats import calculate_percentile, summarize_latency

__all__ = ["JobMonitor", "AlertThresholds", "calculate_percentile", "summarize_latency"]
