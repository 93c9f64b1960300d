"""Write actionable billing errors onto the CRM record they concern."""

from collections.abc import Callable
from datetime import UTC, datetime
from typing import Literal

import structlog

from billing_sync.crm.client import CRMClient, CRMError
from billing_sync.crm.properties import LineProps, ObjectType, TicketProps
from billing_sync.crm.retry import is_transient
from billing_sync.keys import KeyBuildError

logger = structlog.get_logger(__name__)

RecordKind = Literal["line_item", "ticket"]

MAX_LINES = 30
MAX_CHARS = 6500

_TARGETS: dict[str, tuple[str, str]] = {
    "line_item": (ObjectType.LINE_ITEMS, LineProps.ERROR),
    "ticket": (ObjectType.TICKETS, TicketProps.ERROR),
}


def compact_lines(lines: list[str], max_lines: int = MAX_LINES, max_chars: int = MAX_CHARS) -> str:
    """Keep the newest lines within both the line and character limits."""
    joined = "\n".join(lines[-max_lines:])
    if len(joined) > max_chars:
        joined = joined[len(joined) - max_chars :]
        newline = joined.find("\n")
        if newline > 0:
            joined = joined[newline + 1 :]
    return joined


def is_actionable(error: BaseException) -> bool:
    """Errors a human can fix on the record: key problems and non-transient 4xx."""
    if isinstance(error, KeyBuildError):
        return True
    if isinstance(error, CRMError):
        if is_transient(error):
            return False
        return error.status_code is not None and 400 <= error.status_code < 500
    return False


class ErrorReporter:
    """Queues messages per record and appends them to its error property on flush."""

    def __init__(
        self,
        client: CRMClient,
        *,
        dry_run: bool = False,
        max_lines: int = MAX_LINES,
        max_chars: int = MAX_CHARS,
        clock: Callable[[], datetime] | None = None,
    ):
        self._client = client
        self._dry_run = dry_run
        self._max_lines = max_lines
        self._max_chars = max_chars
        self._clock = clock or (lambda: datetime.now(UTC))
        self._queue: dict[tuple[str, str], list[str]] = {}
        self._logger = logger.bind(component="error_reporter")

    @property
    def pending(self) -> dict[tuple[str, str], list[str]]:
        return {key: list(lines) for key, lines in self._queue.items()}

    def report(
        self,
        kind: RecordKind,
        object_id: str,
        message: str,
        level: str = "error",
    ) -> None:
        """Queue a message for a record; consecutive duplicates are dropped."""
        if kind not in _TARGETS or not object_id:
            return
        stamp = self._clock().isoformat(timespec="seconds")
        line = f"{stamp} {level.upper()}: {message}"
        lines = self._queue.setdefault((kind, str(object_id)), [])
        if lines and lines[-1] == line:
            return
        lines.append(line)

    def report_exception(
        self, kind: RecordKind, object_id: str, error: BaseException, context: str
    ) -> bool:
        """Queue an exception if actionable; transient failures are only logged."""
        if not is_actionable(error):
            self._logger.info(
                "error_not_reported",
                kind=kind,
                object_id=object_id,
                context=context,
                error=str(error),
            )
            return False
        self.report(kind, object_id, f"{context}: {error}")
        return True

    async def flush(self) -> int:
        """Append queued messages to each record. Returns the number of records written."""
        written = 0
        queue, self._queue = self._queue, {}
        for (kind, object_id), lines in queue.items():
            if not lines:
                continue
            object_type, prop = _TARGETS[kind]
            if self._dry_run:
                self._logger.info("dry_run_error_report", kind=kind, object_id=object_id, lines=lines)
                continue
            try:
                record = await self._client.get_object(object_type, object_id, [prop])
                current = str((record.get("properties") or {}).get(prop) or "")
                existing = current.split("\n") if current else []
                merged = compact_lines(existing + lines, self._max_lines, self._max_chars)
                await self._client.update_object(object_type, object_id, {prop: merged})
                written += 1
            except CRMError as e:
                # Logged only, never re-queued
                self._logger.error(
                    "error_report_failed",
                    kind=kind,
                    object_id=object_id,
                    status_code=e.status_code,
                    error=str(e),
                )
        return written
