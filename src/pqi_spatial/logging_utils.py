"""
Run logs for the PQI / SDI pipeline.

A script run writes to the console and to logs/<script>_<run_id>.jsonl.
Library stages never configure logging: they log through the logger the
caller hands them (or their module logger), so merge, fill, weights and
model events of one run all land in the same JSONL file.

Every JSONL entry has timestamp, run_id, level, logger and message.
Structured events add event_type and context. The event families are:

- stage_start / stage_end / stage_failed: timed pipeline stages
- provenance: one entry per imputed cell or repaired polygon
- units_excluded: units dropped from a statistic or model
- qa_check, output_written, run_summary: script-level bookkeeping

RunLogHandler counts events as they pass, and log_run_summary() closes the
run with those counts.
"""

import json
import logging
import sys
import time
import uuid
from collections import Counter
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Sequence

from pqi_spatial.paths import paths, ensure_dir


CONSOLE_FORMAT = "%(asctime)s | %(levelname)-8s | %(message)s"
CONSOLE_DATEFMT = "%Y-%m-%d %H:%M:%S"

# cap on keys embedded in one event; the full lists live in the result objects
MAX_LOGGED_KEYS = 50


def new_run_id() -> str:
    """Run ID of the form YYYYMMDD_HHMMSS_<8 hex chars>, in UTC."""
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
    return f"{stamp}_{uuid.uuid4().hex[:8]}"


class RunLogHandler(logging.Handler):
    """Writes records as JSON lines and tallies structured events."""

    def __init__(self, log_path: Path, run_id: str):
        super().__init__()
        self.log_path = log_path
        self.run_id = run_id
        self.event_counts: Counter = Counter()
        self.provenance_counts: Counter = Counter()
        self.failed_checks: list[str] = []
        self._stream = None

    def emit(self, record: logging.LogRecord):
        try:
            event_type = getattr(record, "event_type", None)
            context = getattr(record, "context", None) or {}
            self._tally(event_type, context)

            entry = {
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "run_id": self.run_id,
                "level": record.levelname,
                "logger": record.name,
                "message": record.getMessage(),
            }
            if event_type is not None:
                entry["event_type"] = event_type
                entry["context"] = context
            if record.exc_info:
                entry["exception"] = self.format(record)

            if self._stream is None:
                ensure_dir(self.log_path.parent)
                self._stream = open(self.log_path, "a", encoding="utf-8")
            self._stream.write(json.dumps(entry, default=str) + "\n")
            self._stream.flush()
        except Exception:
            self.handleError(record)

    def _tally(self, event_type: str | None, context: dict) -> None:
        if event_type is None:
            return
        self.event_counts[event_type] += 1
        if event_type == "provenance":
            self.provenance_counts[f"{context.get('action')}:{context.get('method')}"] += 1
        elif event_type == "qa_check" and not context.get("passed", True):
            self.failed_checks.append(str(context.get("check_name")))

    def close(self):
        if self._stream is not None:
            self._stream.close()
            self._stream = None
        super().close()


_LOGGERS: dict[tuple[str, str], logging.Logger] = {}


def get_logger(
    script_name: str,
    run_id: str | None = None,
    console_level: int = logging.INFO,
    file_level: int = logging.DEBUG,
    log_dir: Path | None = None,
) -> logging.Logger:
    """
    Logger for one script run, writing to the console and a JSONL file.

    Asking again for the same script and run ID returns the same logger.
    Without a run ID a fresh one is generated; read it back with run_id_of().

    Args:
        script_name: e.g. "01_build_analysis_frame"; names the log file.
        run_id: Optional run ID.
        console_level: Level for console output.
        file_level: Level for the JSONL file (DEBUG keeps provenance events).
        log_dir: Directory for the JSONL file (defaults to paths.logs).
    """
    run_id = run_id or new_run_id()
    cache_key = (script_name, run_id)
    if cache_key in _LOGGERS:
        return _LOGGERS[cache_key]

    logger = logging.getLogger(f"pqi_spatial.run.{script_name}.{run_id}")
    logger.setLevel(min(console_level, file_level))
    logger.handlers = []
    logger.propagate = False

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(console_level)
    console.setFormatter(logging.Formatter(CONSOLE_FORMAT, datefmt=CONSOLE_DATEFMT))
    logger.addHandler(console)

    run_log = RunLogHandler(Path(log_dir or paths.logs) / f"{script_name}_{run_id}.jsonl", run_id)
    run_log.setLevel(file_level)
    logger.addHandler(run_log)

    _LOGGERS[cache_key] = logger
    log_event(logger, logging.INFO, f"Run {run_id} of {script_name}", "run_start",
              script_name=script_name)
    return logger


def run_log_handler(logger: logging.Logger) -> RunLogHandler | None:
    for handler in logger.handlers:
        if isinstance(handler, RunLogHandler):
            return handler
    return None


def run_id_of(logger: logging.Logger) -> str:
    """Run ID of a logger created by get_logger()."""
    handler = run_log_handler(logger)
    if handler is None:
        raise ValueError(f"Logger '{logger.name}' has no run log")
    return handler.run_id


def resolve_logger(logger: logging.Logger | None, name: str) -> logging.Logger:
    """Return the caller's logger, or the module logger for library use."""
    return logger if logger is not None else logging.getLogger(name)


def log_event(
    logger: logging.Logger,
    level: int,
    message: str,
    event_type: str,
    **context: Any
) -> None:
    """Log a message with an event type and a context dict for the JSONL file."""
    logger.log(level, message, extra={"event_type": event_type, "context": context})


# =============================================================================
# Stages
# =============================================================================

def log_stage_start(logger: logging.Logger, stage: str, **context: Any) -> float:
    """Log the start of a stage; returns the start time for log_stage_end()."""
    log_event(logger, logging.INFO, f"Starting: {stage}", "stage_start",
              stage=stage, **context)
    return time.perf_counter()


def log_stage_end(logger: logging.Logger, stage: str, started: float, **context: Any) -> None:
    elapsed = round(time.perf_counter() - started, 3)
    log_event(logger, logging.INFO, f"Completed: {stage} ({elapsed:.2f}s)", "stage_end",
              stage=stage, elapsed_s=elapsed, **context)


@contextmanager
def log_stage(logger: logging.Logger, stage: str, **context: Any) -> Iterator[dict]:
    """
    Time a stage. The yielded dict is logged with the stage_end event.

        with log_stage(logger, "build_analysis_frame") as outcome:
            frame = ...
            outcome["rows"] = len(frame)

    An exception is logged as stage_failed and re-raised.
    """
    started = log_stage_start(logger, stage, **context)
    outcome: dict[str, Any] = {}
    try:
        yield outcome
    except Exception as e:
        log_event(logger, logging.ERROR, f"Failed: {stage}: {e}", "stage_failed",
                  stage=stage, error=type(e).__name__,
                  elapsed_s=round(time.perf_counter() - started, 3))
        raise
    log_stage_end(logger, stage, started, **outcome)


# =============================================================================
# Provenance and exclusions
# =============================================================================

def log_imputation(
    logger: logging.Logger,
    column: str,
    key: Any,
    period: Any,
    method: str,
    value: float,
) -> None:
    """One imputed cell. DEBUG, so it reaches the JSONL file but not the console."""
    log_event(logger, logging.DEBUG, f"impute {column} [{key}, {period}] via {method}",
              "provenance", action="impute", key=key, method=method,
              column=column, period=period, value=value)


def log_geometry_repair(
    logger: logging.Logger,
    key: str,
    reason: str,
    original_type: str,
    repaired_type: str,
    area_change: float,
) -> None:
    """One polygon replaced by its make_valid() repair."""
    log_event(logger, logging.DEBUG, f"repair geometry [{key}]: {reason}",
              "provenance", action="repair_geometry", key=key, method="make_valid",
              reason=reason, original_type=original_type, repaired_type=repaired_type,
              area_change=area_change)


def log_exclusion(
    logger: logging.Logger,
    target: str,
    keys: Sequence[str],
    reason: str,
    level: int = logging.INFO,
    **context: Any
) -> None:
    """Units left out of a statistic or model, with the reason."""
    if not keys:
        return
    log_event(logger, level, f"{target}: {len(keys)} units excluded ({reason})",
              "units_excluded", target=target, reason=reason, n_excluded=len(keys),
              keys=list(keys)[:MAX_LOGGED_KEYS], **context)


# =============================================================================
# Script bookkeeping
# =============================================================================

def log_qa_check(
    logger: logging.Logger,
    check_name: str,
    passed: bool,
    details: str | None = None,
    **context: Any
) -> None:
    """QA result; failures are logged at ERROR."""
    message = f"QA Check [{check_name}]: {'PASSED' if passed else 'FAILED'}"
    if details:
        message += f" - {details}"
    log_event(logger, logging.INFO if passed else logging.ERROR, message, "qa_check",
              check_name=check_name, passed=passed, details=details, **context)


def log_output_written(
    logger: logging.Logger,
    output_path: str | Path,
    row_count: int | None = None,
    sidecar: str | Path | None = None,
) -> None:
    message = f"Output written: {output_path}"
    if row_count is not None:
        message += f" ({row_count:,} rows)"
    log_event(logger, logging.INFO, message, "output_written",
              output_path=str(output_path), row_count=row_count,
              sidecar=str(sidecar) if sidecar is not None else None)


def log_run_summary(logger: logging.Logger) -> dict[str, Any]:
    """
    Close a run with the tallies of its run log.

    Returns the summary (stages completed, imputations and repairs by method,
    failed QA checks, outputs written) so scripts can print it.
    """
    handler = run_log_handler(logger)
    if handler is None:
        raise ValueError(f"Logger '{logger.name}' has no run log")

    summary = {
        "stages_completed": handler.event_counts["stage_end"],
        "stages_failed": handler.event_counts["stage_failed"],
        "provenance": dict(sorted(handler.provenance_counts.items())),
        "exclusion_events": handler.event_counts["units_excluded"],
        "failed_checks": list(handler.failed_checks),
        "outputs_written": handler.event_counts["output_written"],
    }
    log_event(logger, logging.INFO, f"Run {handler.run_id} summary", "run_summary", **summary)
    return summary
