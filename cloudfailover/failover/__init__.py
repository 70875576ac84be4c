"""Failover task state machine, retry helper and address classification."""
from .models import FailoverState, TaskState
from .retrier import RetryPolicy, retry

__all__ = ["FailoverState", "RetryPolicy", "TaskState", "retry"]
