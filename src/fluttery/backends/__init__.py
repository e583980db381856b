from fluttery.backends.base import (
    BackendExecutionError,
    BackendProcessError,
    BackendTimeoutError,
    GenerativeBackend,
)
from fluttery.backends.claude import ClaudeCodeBackend
from fluttery.backends.openai_sdk import OpenAIBackend
from fluttery.backends.resilient import ResilientBackend, RetryPolicy

__all__ = [
    "BackendExecutionError",
    "BackendProcessError",
    "BackendTimeoutError",
    "ClaudeCodeBackend",
    "GenerativeBackend",
    "OpenAIBackend",
    "ResilientBackend",
    "RetryPolicy",
]
