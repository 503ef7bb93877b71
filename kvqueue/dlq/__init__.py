"""
Dead-letter queue module.
"""

from kvqueue.dlq.dead_letter import DeadLetterQueue, compute_retry_delay, default_retry_config

__all__ = ["DeadLetterQueue", "compute_retry_delay", "default_retry_config"]
