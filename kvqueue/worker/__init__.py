"""
Job processors and the one-shot drain entry point.
"""

from kvqueue.worker.handlers import (
    get_processor,
    list_processors,
    register_processor,
)

__all__ = ["register_processor", "get_processor", "list_processors"]
