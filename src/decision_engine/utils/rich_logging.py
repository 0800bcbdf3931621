"""Rich logging with run context and better formatting."""

import logging
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional


class EngineLogFormatter(logging.Formatter):
    """Custom formatter with run context."""

    def __init__(self, component: str, use_colors: bool = True):
        super().__init__()
        self.component = component
        self.use_colors = use_colors

    def format(self, record: logging.LogRecord) -> str:
        """Format log record with context."""
        timestamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")

        run_context = ""
        if hasattr(record, "run_id"):
            run_context = f"[{record.run_id[:8]}] "

        phase_context = ""
        if hasattr(record, "phase"):
            phase_context = f"[{record.phase}] "

        if self.use_colors:
            level_colors = {
                "DEBUG": "\033[36m",      # Cyan
                "INFO": "\033[32m",       # Green
                "WARNING": "\033[33m",    # Yellow
                "ERROR": "\033[31m",      # Red
                "CRITICAL": "\033[35m",   # Magenta
            }
            reset = "\033[0m"
            level_color = level_colors.get(record.levelname, "")
        else:
            level_color = ""
            reset = ""

        return (
            f"{timestamp} {level_color}{record.levelname:8s}{reset} "
            f"[{self.component}] {phase_context}{run_context}{record.getMessage()}"
        )


class ContextLogger(logging.LoggerAdapter):
    """Logger adapter that adds run context to all log messages."""

    def __init__(self, logger: logging.Logger, component: str):
        super().__init__(logger, {})
        self.component = component
        self.current_run_id: Optional[str] = None
        self.current_phase: Optional[str] = None
        self.current_operation_id: Optional[str] = None

    def set_run_context(
        self,
        run_id: Optional[str] = None,
        phase: Optional[str] = None,
        operation_id: Optional[str] = None,
    ):
        """Set current run context for logging."""
        if run_id:
            self.current_run_id = run_id
        if phase is not None:
            self.current_phase = phase
        if operation_id is not None:
            self.current_operation_id = operation_id

    def clear_context(self):
        """Clear run context."""
        self.current_run_id = None
        self.current_phase = None
        self.current_operation_id = None

    def process(self, msg, kwargs):
        """Add context to log record. Per-call ``extra`` wins over stored context."""
        extra = dict(kwargs.get("extra") or {})

        if self.current_run_id:
            extra.setdefault("run_id", self.current_run_id)
        if self.current_phase:
            extra.setdefault("phase", self.current_phase)
        if self.current_operation_id:
            extra.setdefault("operation_id", self.current_operation_id)

        kwargs["extra"] = extra
        return msg, kwargs

    @staticmethod
    def _call_context(**fields) -> dict:
        return {key: value for key, value in fields.items() if value}

    # One adapter serves every run, so helpers never touch the stored context

    def run_started(self, run_id: str, tree_id: str, version: int):
        """Log run start with context."""
        self.info(
            f"Starting run against tree {tree_id} (v{version})",
            extra=self._call_context(run_id=run_id),
        )

    def decision_recorded(
        self,
        operation_id: str,
        phase: str,
        status: str,
        chosen_path: Optional[str] = None,
        run_id: Optional[str] = None,
    ):
        """Log a recorded decision."""
        msg = f"Recorded {status} for {operation_id}"
        if chosen_path:
            msg += f" (path: {chosen_path})"
        self.info(
            msg,
            extra=self._call_context(run_id=run_id, phase=phase, operation_id=operation_id),
        )

    def branch_unresolved(
        self,
        operation_id: str,
        run_id: Optional[str] = None,
        phase: Optional[str] = None,
    ):
        """Log a dead-end branch."""
        self.warning(
            f"No condition matched for {operation_id} and no fallback exists; "
            "dependents stay blocked",
            extra=self._call_context(run_id=run_id, phase=phase, operation_id=operation_id),
        )


def setup_rich_logging(
    name: str,
    log_dir: Optional[Path] = None,
    log_level: str = "INFO",
    use_file: bool = False,
    use_json: bool = False,
) -> ContextLogger:
    """
    Setup rich logging with better formatting.

    Args:
        name: Component name shown in each line
        log_dir: Directory for the log file
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        use_file: Write to log file
        use_json: Use JSON structured logging

    Returns:
        ContextLogger instance
    """
    # PID keeps loggers of concurrent processes apart
    unique_logger_name = f"{name}-{os.getpid()}"
    logger = logging.getLogger(unique_logger_name)
    logger.setLevel(getattr(logging, log_level.upper()))

    # Close existing handlers before clearing
    for handler in logger.handlers[:]:
        handler.close()
        logger.removeHandler(handler)

    if use_json:
        formatter = logging.Formatter(
            '{"timestamp":"%(asctime)s","component":"%(component)s","level":"%(levelname)s",'
            '"message":"%(message)s","module":"%(module)s","function":"%(funcName)s"}',
            defaults={"component": name},
        )
    else:
        formatter = EngineLogFormatter(name, use_colors=True)

    # Redirected stdout means we run under a supervisor that already captures output
    stdout_is_redirected = not sys.stdout.isatty() if hasattr(sys.stdout, "isatty") else False

    if not stdout_is_redirected:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    if use_file:
        log_dir = Path(log_dir) if log_dir else Path("logs")
        log_dir.mkdir(parents=True, exist_ok=True)

        # Plain formatter for files (no ANSI codes)
        plain_formatter = EngineLogFormatter(name, use_colors=False)

        file_handler = logging.FileHandler(log_dir / f"{name}.log")
        file_handler.setFormatter(plain_formatter)
        logger.addHandler(file_handler)

    return ContextLogger(logger, name)
