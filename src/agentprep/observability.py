from __future__ import annotations

import json
import logging
from pathlib import Path
import sys
from typing import Final


LOGGER_NAME: Final[str] = "agentprep"
LOG_FILE_NAME: Final[str] = "agentprep.log"
_FORMAT: Final[str] = "%(asctime)s %(levelname)s %(name)s %(message)s"
_MAX_VALUE_LEN: Final[int] = 120

# Info events kept at low verbosity; warnings always pass.
_SUMMARY_EVENTS: Final[frozenset[str]] = frozenset(
    {
        "mode_selected",
        "permission_decided",
        "trigger_evaluated",
        "tracking_comment_created",
        "snapshot_assembled",
        "prepare_finished",
    }
)


def configure_logging(verbose: bool | str | None, *, log_dir: Path | None = None) -> None:
    """Route ``agentprep`` logs to stderr and, with ``log_dir``, to ``agentprep.log``.

    ``None`` or ``False`` silences the package. ``"low"`` keeps warnings and the
    summary events of a run; ``"high"`` or ``True`` keeps every event.
    """
    summary_only = _summary_only(verbose)
    logger = logging.getLogger(LOGGER_NAME)
    logger.propagate = False
    logger.handlers.clear()

    if summary_only is None:
        logger.addHandler(logging.NullHandler())
        logger.setLevel(logging.CRITICAL + 1)
        return

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_dir / LOG_FILE_NAME, encoding="utf-8"))
    for handler in handlers:
        handler.setFormatter(logging.Formatter(_FORMAT))
        if summary_only:
            handler.addFilter(_is_summary_record)
        logger.addHandler(handler)
    logger.setLevel(logging.INFO)


def log_event(logger: logging.Logger, event: str, **fields: object) -> None:
    logger.info(format_event(event, fields))


def log_warning(logger: logging.Logger, event: str, **fields: object) -> None:
    logger.warning(format_event(event, fields))


def format_event(event: str, fields: dict[str, object]) -> str:
    """Render ``event=<name>`` followed by the fields as sorted ``key=value`` pairs."""
    pairs = [("event", event), *sorted(fields.items())]
    return " ".join(f"{key}={_render(value)}" for key, value in pairs)


def _render(value: object) -> str:
    match value:
        case None:
            text = "null"
        case bool():
            text = str(value).lower()
        case int() | float():
            text = str(value)
        case str():
            text = " ".join(value.split())
            if len(text) > _MAX_VALUE_LEN:
                text = text[:_MAX_VALUE_LEN] + "..."
            text = text or "<empty>"
        case tuple() | list() | frozenset():
            text = ",".join(_render(item) for item in value) or "<empty>"
        case _:
            text = f"<{type(value).__name__}>"
    if "=" in text or any(ch.isspace() for ch in text):
        return json.dumps(text)
    return text


def _summary_only(verbose: bool | str | None) -> bool | None:
    if verbose is None or verbose is False:
        return None
    if verbose is True:
        return False
    mode = verbose.strip().lower()
    if mode not in ("low", "high"):
        raise ValueError(f"Unsupported verbose mode: {verbose!r}")
    return mode == "low"


def _is_summary_record(record: logging.LogRecord) -> bool:
    if record.levelno >= logging.WARNING:
        return True
    head = record.getMessage().split(" ", 1)[0]
    return head.startswith("event=") and head[len("event=") :] in _SUMMARY_EVENTS
