"""Cascade execution: state machine, active-operation registry, retry helper."""

from cascade_engine.executor.cascade_executor import CascadeExecutor
from cascade_engine.executor.registry import ActiveOperationRegistry
from cascade_engine.executor.retry import RetryConfig, async_retry_with_backoff

__all__ = ["ActiveOperationRegistry", "CascadeExecutor", "RetryConfig", "async_retry_with_backoff"]
