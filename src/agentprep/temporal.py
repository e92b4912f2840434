"""Point-in-time filtering of forge content against the trigger time.

Anything created or edited at or after the moment the bot was triggered may
have been written after an authorized user asked for help, so it is dropped
before the snapshot reaches the assistant.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime, timezone
import logging
from typing import Protocol, TypeVar

from agentprep.observability import log_warning


LOGGER = logging.getLogger("agentprep.temporal")


class TriggerTimeError(ValueError):
    """The trigger timestamp cannot be parsed, so no filtering decision is possible."""


class TimestampedContent(Protocol):
    @property
    def created_at(self) -> str: ...

    @property
    def updated_at(self) -> str | None: ...

    @property
    def last_edited_at(self) -> str | None: ...


T = TypeVar("T", bound=TimestampedContent)


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp into an aware UTC datetime truncated to milliseconds.

    Naive values are taken to be UTC. Raises ``ValueError`` for anything else.
    """
    text = value.strip()
    if not text:
        raise ValueError("empty timestamp")
    if text.endswith(("Z", "z")):
        text = f"{text[:-1]}+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    parsed = parsed.astimezone(timezone.utc)
    return parsed.replace(microsecond=(parsed.microsecond // 1000) * 1000)


def effective_edit_time(item: TimestampedContent) -> str | None:
    # Edit time tracks content changes; update time is only a proxy for it.
    if item.last_edited_at:
        return item.last_edited_at
    if item.updated_at:
        return item.updated_at
    return None


def filter_to_trigger_time(
    items: Sequence[T], trigger_time: str | None, *, category: str = "content"
) -> Sequence[T]:
    """Keep only items created and last edited strictly before ``trigger_time``.

    Without a trigger time nothing can be checked and ``items`` is returned as
    is. Relative order of the kept items is preserved.
    """
    if not trigger_time:
        return items

    cutoff = parse_trigger_time(trigger_time)
    kept = [item for item in items if _is_before_cutoff(item, cutoff, category=category)]
    excluded = len(items) - len(kept)
    if excluded:
        log_warning(
            LOGGER,
            "temporal_filter_excluded",
            category=category,
            excluded_count=excluded,
            kept_count=len(kept),
            trigger_time=trigger_time,
        )
    return kept


def is_body_safe_to_use(item: TimestampedContent, trigger_time: str | None) -> bool:
    """Apply the same two-part rule to a single issue or pull request body."""
    if not trigger_time:
        return True
    return _is_before_cutoff(item, parse_trigger_time(trigger_time), category="body")


def parse_trigger_time(trigger_time: str) -> datetime:
    """Like ``parse_timestamp`` but raises ``TriggerTimeError``."""
    try:
        return parse_timestamp(trigger_time)
    except ValueError as exc:
        raise TriggerTimeError(f"Invalid trigger time {trigger_time!r}: {exc}") from exc


def _is_before_cutoff(item: TimestampedContent, cutoff: datetime, *, category: str) -> bool:
    try:
        if parse_timestamp(item.created_at) >= cutoff:
            return False
        edited = effective_edit_time(item)
        if edited is not None and parse_timestamp(edited) >= cutoff:
            return False
    except ValueError as exc:
        # Unverifiable timestamps cannot be proven safe.
        log_warning(
            LOGGER,
            "temporal_filter_unparseable_timestamp",
            category=category,
            created_at=item.created_at,
            error=str(exc),
        )
        return False
    return True
