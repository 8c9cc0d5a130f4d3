# Utilities for running host commands and disk operations
from .command import CommandError, Executor, new_executor

__all__ = ["CommandError", "Executor", "new_executor"]
