"""Console output formatting for podline runs."""

from __future__ import annotations

import sys
from datetime import datetime
from typing import BinaryIO, Optional, TextIO

LEVELS = {"DEBUG": 10, "INFO": 20, "NOTICE": 30}


class _TeeSink:
    """Binary sink writing container output to the console and the log file."""

    def __init__(self, primary: BinaryIO, log: Optional[TextIO]):
        self._primary = primary
        self._log = log

    def write(self, data: bytes) -> int:
        self._primary.write(data)
        if self._log is not None:
            self._log.write(data.decode("utf-8", errors="replace"))
        return len(data)

    def flush(self) -> None:
        self._primary.flush()
        if self._log is not None:
            self._log.flush()


class Console:
    """
    Logging context for a single run.

    Messages below `level` are not printed but still reach the log file.
    Container output goes through `output`, a binary sink.
    """

    def __init__(
        self,
        level: str = "NOTICE",
        debug: bool = False,
        stream: Optional[TextIO] = None,
        err_stream: Optional[TextIO] = None,
        output: Optional[BinaryIO] = None,
        log_file: Optional[str] = None,
    ):
        """
        Initialize console formatter.

        Args:
            level: Console threshold, one of DEBUG, INFO, NOTICE
            debug: If True, show stack traces for failures
            stream: Text stream for messages (default stdout)
            err_stream: Text stream for errors (default stderr)
            output: Binary sink for container output (default stdout's buffer)
            log_file: Optional path; every message is appended with a timestamp
        """
        if level not in LEVELS:
            raise ValueError(f"Console log level must be DEBUG, INFO or NOTICE (got: {level})")
        self.level = level
        self.debug = debug or level == "DEBUG"
        self.stream = stream or sys.stdout
        self.err_stream = err_stream or sys.stderr
        self._log: Optional[TextIO] = open(log_file, "a", encoding="utf-8") if log_file else None
        sink = output or getattr(self.stream, "buffer", None) or sys.stdout.buffer
        self.output = _TeeSink(sink, self._log)

    def close(self) -> None:
        if self._log is not None:
            self._log.close()
            self._log = None

    def __enter__(self) -> "Console":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def _emit(self, level: str, message: str, err: bool = False) -> None:
        if self._log is not None:
            stamp = datetime.now().isoformat(timespec="seconds")
            self._log.write(f"{stamp} {level:<7} {message}\n")
            self._log.flush()
        if LEVELS.get(level, 30) >= LEVELS[self.level] or err:
            stream = self.err_stream if err else self.stream
            print(message, file=stream)
            stream.flush()

    def print_stage(self, title: str) -> None:
        """Print a pipeline stage banner."""
        self._emit("NOTICE", f"\n########## {title}")

    def print_item(self, title: str) -> None:
        """Print a per-entity header inside a stage."""
        self._emit("NOTICE", f"=== {title}")

    def print_done(self) -> None:
        self._emit("NOTICE", "=== Done")

    def print_run_started(self, pipeline: str, steps: int, services: int, repos: int) -> None:
        """Print run start information."""
        self._emit("NOTICE", "\nRUN STARTED")
        self._emit("NOTICE", f"Pipeline: {pipeline}")
        self._emit("NOTICE", f"Repositories: {repos}")
        self._emit("NOTICE", f"Services: {services}")
        self._emit("NOTICE", f"Steps: {steps}")

    def print_failure(self, name: str, reason: str, exit_code: Optional[int] = None) -> None:
        """
        Print failure message.

        Args:
            name: What failed (stage, step, service)
            reason: Failure reason/error message
            exit_code: Optional container exit code
        """
        self._emit("NOTICE", f"FAILED: {name}", err=True)
        if exit_code is not None:
            self._emit("NOTICE", f"Exit code: {exit_code}", err=True)
        if self.debug:
            self._emit("NOTICE", f"Error details: {reason}", err=True)
        else:
            # first line only outside debug mode
            error_line = reason.split("\n")[0] if reason else "Unknown error"
            self._emit("NOTICE", f"Error: {error_line}", err=True)

    def print_results(self, results: dict[str, str]) -> None:
        """Print final step summary."""
        if not results:
            return
        self._emit("NOTICE", "\n" + "=" * 40)
        self._emit("NOTICE", "RESULTS")
        self._emit("NOTICE", "=" * 40)
        for step, status in results.items():
            status_display = status.upper() if status != "ok" else "SUCCESS"
            self._emit("NOTICE", f"  {step}: {status_display}")

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """Print structured error message."""
        self._emit("NOTICE", f"\nERROR: {title}", err=True)
        self._emit("NOTICE", message, err=True)
        if details:
            for detail in details:
                self._emit("NOTICE", f"  {detail}", err=True)
        if suggestion:
            self._emit("NOTICE", f"\n{suggestion}", err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exception(type(exc), exc, exc.__traceback__, file=self.err_stream)
        else:
            self._emit("NOTICE", f"Error: {exc}", err=True)

    def print_warning(self, message: str) -> None:
        self._emit("NOTICE", f"Warning: {message}")

    def print_notice(self, message: str) -> None:
        self._emit("NOTICE", message)

    def print_info(self, message: str) -> None:
        self._emit("INFO", message)

    def print_debug(self, message: str) -> None:
        self._emit("DEBUG", f"[DEBUG] {message}")
