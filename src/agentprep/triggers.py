from __future__ import annotations

from collections.abc import Collection
import re

from agentprep.models import EventContext


_TRAILING_PUNCTUATION = ".,!?;:"
_BODY_ACTIONS = frozenset({"opened", "edited", "reopened"})


def contains_trigger_phrase(text: str | None, phrase: str, *, case_sensitive: bool = True) -> bool:
    """Return True when ``phrase`` appears in ``text`` as a whole token.

    The phrase has to start the text or follow whitespace, and be followed by
    whitespace, trailing punctuation or the end of the text. ``@claude`` does
    not match inside ``foo@claude`` or ``@claudebot``.
    """
    if not text or not phrase:
        return False
    pattern = rf"(?<!\S){re.escape(phrase)}(?=[\s{re.escape(_TRAILING_PUNCTUATION)}]|$)"
    flags = 0 if case_sensitive else re.IGNORECASE
    return re.search(pattern, text, flags) is not None


def should_trigger(context: EventContext, *, accepted_events: Collection[str]) -> bool:
    """Decide from the event context alone whether the assistant should engage."""
    if context.event_name not in accepted_events:
        return False

    inputs = context.inputs
    for text in _trigger_texts(context):
        if contains_trigger_phrase(
            text, inputs.trigger_phrase, case_sensitive=inputs.phrase_case_sensitive
        ):
            return True

    if context.event_action == "labeled" and _carries_trigger_label(context):
        return True

    if (
        context.event_action == "assigned"
        and inputs.assignee_trigger is not None
        and context.assignee_login is not None
        and _normalize_login(context.assignee_login) == _normalize_login(inputs.assignee_trigger)
    ):
        return True

    return False


def _carries_trigger_label(context: EventContext) -> bool:
    # Payloads without the applied label fall back to the entity's current labels.
    trigger_labels = set(context.inputs.label_triggers)
    if context.applied_label is not None:
        return context.applied_label in trigger_labels
    return any(label in trigger_labels for label in context.labels)


def _trigger_texts(context: EventContext) -> tuple[str | None, ...]:
    if context.event_name in {"issue_comment", "pull_request_review_comment"}:
        return (context.comment_body,)
    if context.event_name == "pull_request_review":
        return (context.review_body,)
    if context.event_name in {"issues", "pull_request"} and context.event_action in _BODY_ACTIONS:
        return (context.entity_body, context.entity_title)
    return ()


def _normalize_login(login: str) -> str:
    return login.strip().removeprefix("@").strip().lower()
