"""Shared utility functions for the decision engine."""

from .atomic_io import atomic_write_model, atomic_write_text
from .locks import FileLock, LockTimeoutError
from .rich_logging import ContextLogger, EngineLogFormatter, setup_rich_logging
from .stream_parser import parse_jsonl_to_models
from .validators import validate_identifier

__all__ = [
    # Atomic I/O
    "atomic_write_model",
    "atomic_write_text",
    # Locking
    "FileLock",
    "LockTimeoutError",
    # Logging
    "ContextLogger",
    "EngineLogFormatter",
    "setup_rich_logging",
    # Stream parsing
    "parse_jsonl_to_models",
    # Validators
    "validate_identifier",
]
