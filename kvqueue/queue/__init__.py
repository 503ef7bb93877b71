"""
Queue module.
Contains the queue engine and job lifecycle tables.
"""

from kvqueue.queue.engine import Processor, QueueEngine, run_processor, validate_queue_name
from kvqueue.queue.lifecycle import (
    InvalidTransitionError,
    advance_failure,
    advance_job,
    can_advance_failure,
    can_advance_job,
)

__all__ = [
    "QueueEngine",
    "Processor",
    "run_processor",
    "validate_queue_name",
    "InvalidTransitionError",
    "advance_job",
    "advance_failure",
    "can_advance_job",
    "can_advance_failure",
]
