"""Idempotency keys naming one billing event: ``<contractId>::LIK:<lineKey>::<YYYY-MM-DD>``."""

from dataclasses import dataclass
from typing import Any

from billing_sync.dates import is_ymd

SEPARATOR = "::"
LEGACY_SEPARATOR = "|"
LINE_KEY_PREFIX = "LIK:"


class KeyBuildError(ValueError):
    """Raised when a key cannot be built from the given context."""

    pass


@dataclass(frozen=True)
class ParsedKey:
    """Result of parsing a stored key. ``ok`` is False with a ``reason`` on failure."""

    ok: bool
    contract_id: str = ""
    line_key: str = ""
    ymd: str = ""
    canonical: str = ""
    reason: str = ""


@dataclass(frozen=True)
class KeyMatch:
    """Result of checking a stored key against the expected contract and line."""

    ok: bool
    reason: str = ""
    parsed: ParsedKey | None = None


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def build_key(contract_id: Any, line_key: Any, ymd: Any) -> str:
    """Build the canonical key for a billing event.

    Raises:
        KeyBuildError: If any part is empty or ``ymd`` is not ``YYYY-MM-DD``.
    """
    contract = _text(contract_id)
    line = _text(line_key)
    day = _text(ymd)

    if not contract:
        raise KeyBuildError("contract id is required")
    if not line:
        raise KeyBuildError("line key is required")
    if not day:
        raise KeyBuildError("billing date is required")
    if not is_ymd(day):
        raise KeyBuildError(f"invalid billing date {day!r} (expected YYYY-MM-DD)")

    return f"{contract}{SEPARATOR}{LINE_KEY_PREFIX}{line}{SEPARATOR}{day}"


def parse_key(raw: Any) -> ParsedKey:
    """Parse a stored key, accepting the legacy ``|`` separator. Never raises."""
    text = _text(raw)
    if not text:
        return ParsedKey(ok=False, reason="empty")

    if SEPARATOR in text:
        parts = text.split(SEPARATOR)
    elif LEGACY_SEPARATOR in text:
        parts = text.split(LEGACY_SEPARATOR)
    else:
        return ParsedKey(ok=False, reason="bad_format")
    if len(parts) != 3:
        return ParsedKey(ok=False, reason="bad_format")

    contract_id, middle, ymd = (part.strip() for part in parts)
    if not contract_id:
        return ParsedKey(ok=False, reason="missing_contract_id")
    if not middle.startswith(LINE_KEY_PREFIX):
        return ParsedKey(ok=False, reason="missing_lik_prefix")
    line_key = middle[len(LINE_KEY_PREFIX):].strip()
    if not line_key:
        return ParsedKey(ok=False, reason="missing_line_key")
    if not is_ymd(ymd):
        return ParsedKey(ok=False, reason="bad_ymd")

    return ParsedKey(
        ok=True,
        contract_id=contract_id,
        line_key=line_key,
        ymd=ymd,
        canonical=build_key(contract_id, line_key, ymd),
    )


def match_key_context(raw: Any, *, contract_id: Any, line_key: Any) -> KeyMatch:
    """Check a stored key against a contract and line, returning the rejection reason."""
    parsed = parse_key(raw)
    if not parsed.ok:
        return KeyMatch(ok=False, reason=parsed.reason)

    expected_contract = _text(contract_id)
    if not expected_contract or parsed.contract_id != expected_contract:
        return KeyMatch(ok=False, reason="mismatch_contract_id", parsed=parsed)

    expected_line = _text(line_key)
    if not expected_line or parsed.line_key != expected_line:
        return KeyMatch(ok=False, reason="mismatch_line_key", parsed=parsed)

    return KeyMatch(ok=True, parsed=parsed)


def key_matches_context(raw: Any, *, contract_id: Any, line_key: Any) -> bool:
    return match_key_context(raw, contract_id=contract_id, line_key=line_key).ok
