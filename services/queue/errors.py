"""
Error chain serialization for queued jobs.

Python already links errors through `raise ... from ...` (`__cause__`) and
implicit context (`__context__`). These helpers flatten that chain into a
list of plain dicts so it can be:
- logged once, in full
- published on the event bus
- stored on the job record for the queue dashboard
"""

from __future__ import annotations

import logging
import traceback
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from services.errors import NamedError


logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def error_name(error: BaseException) -> str:
    name = getattr(error, "name", None)
    return name if isinstance(name, str) else type(error).__name__


def serialize_error(error: BaseException, level: int = 0, source: Optional[str] = None) -> Dict[str, Any]:
    stack = "".join(traceback.format_exception(type(error), error, error.__traceback__, chain=False))
    return {
        "level": level,
        "name": error_name(error),
        "message": str(error),
        "stack": stack,
        "data": error.to_object()["data"] if isinstance(error, NamedError) else None,
        "timestamp": _now_iso(),
        "source": source,
    }


def _next_in_chain(error: BaseException) -> Optional[BaseException]:
    if error.__cause__ is not None:
        return error.__cause__
    if error.__suppress_context__:
        return None
    return error.__context__


def build_error_chain(error: BaseException, source: Optional[str] = None) -> List[Dict[str, Any]]:
    """Walks the cause chain, outermost error first."""
    chain: List[Dict[str, Any]] = []
    seen = set()
    current: Optional[BaseException] = error
    level = 0

    while current is not None and id(current) not in seen:
        seen.add(id(current))
        chain.append(serialize_error(current, level=level, source=source if level == 0 else "cause"))
        current = _next_in_chain(current)
        level += 1

    return chain


def generate_error_summary(chain: List[Dict[str, Any]]) -> str:
    if not chain:
        return "Unknown error"

    top = chain[0]
    summary = f"{top['name']}: {top['message']}"
    if len(chain) > 1:
        root = chain[-1]
        summary += f" (caused by {root['name']}: {root['message']})"
    return summary


def format_error_for_console(chain: List[Dict[str, Any]], context: Optional[Dict[str, Any]] = None) -> str:
    width = 80
    border = "=" * width
    lines = [border, " JOB ERROR", border]

    for key, value in (context or {}).items():
        lines.append(f" {key}: {value}")
    if context:
        lines.append("-" * width)

    for item in chain:
        indent = "  " * item["level"]
        prefix = "" if item["level"] == 0 else "caused by "
        lines.append(f"{indent}{prefix}{item['name']}: {item['message']}")
        if item.get("data"):
            lines.append(f"{indent}  data: {item['data']}")

    lines.append(border)
    return "\n".join(lines)


@dataclass
class WorkerErrorResult:
    error_chain: List[Dict[str, Any]]
    summary: str
    context: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=_now_iso)

    @property
    def root_cause(self) -> Optional[Dict[str, Any]]:
        return self.error_chain[-1] if self.error_chain else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "errorChain": self.error_chain,
            "summary": self.summary,
            "context": self.context,
            "timestamp": self.timestamp,
        }


def process_worker_error(
    error: BaseException,
    context: Optional[Dict[str, Any]] = None,
    source: Optional[str] = None,
) -> WorkerErrorResult:
    """Serialize, summarize and log an error once, at the top of a worker."""
    chain = build_error_chain(error, source=source)
    result = WorkerErrorResult(
        error_chain=chain,
        summary=generate_error_summary(chain),
        context=dict(context or {}),
    )
    logger.error(format_error_for_console(chain, result.context))
    return result


class PreparedJobError(Exception):
    """
    Raised by a processor after it has already serialized its own failure.
    The queue wrapper reuses `worker_error_result` instead of rebuilding it.
    """

    def __init__(self, result: WorkerErrorResult, original_error: BaseException):
        super().__init__(result.summary)
        self.worker_error_result = result
        self.original_error = original_error


def prepare_error_for_throw(result: WorkerErrorResult, error: BaseException) -> PreparedJobError:
    """Use as `raise prepare_error_for_throw(result, err) from err`."""
    return PreparedJobError(result, error)


class QueueJobError(Exception):
    """Failure shape stored on a job record and shown by the queue dashboard."""

    def __init__(
        self,
        name: str,
        message: str,
        error_chain: List[Dict[str, Any]],
        context: Dict[str, Any],
        duration_ms: int,
        job_id: str,
    ):
        super().__init__(message)
        self.name = name
        self.message = message
        self.error_chain = error_chain
        self.context = context
        self.duration_ms = duration_ms
        self.job_id = job_id
        self.timestamp = _now_iso()

    def to_json(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "message": self.message,
            "errorChain": self.error_chain,
            "context": self.context,
            "timestamp": self.timestamp,
            "duration": self.duration_ms,
            "jobId": self.job_id,
        }
