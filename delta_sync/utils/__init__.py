"""Shared utilities for configuration, logging, and error handling"""

from delta_sync.utils.retry import RetryCancelled, compute_backoff_delay, retry_call

__all__ = ["RetryCancelled", "compute_backoff_delay", "retry_call"]
