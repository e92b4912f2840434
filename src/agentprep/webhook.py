from __future__ import annotations

from typing import cast

from agentprep.config import AppConfig
from agentprep.models import EventContext, Repository, TriggerInputs


class WebhookPayloadError(ValueError):
    pass


def extract_trigger_timestamp(event_name: str, payload: dict[str, object]) -> str | None:
    """Return when the sub-event that invoked the bot happened, if the event carries one.

    Direct label and assignment events have no trustworthy anchor and return None.
    """
    if event_name in {"issue_comment", "pull_request_review_comment"}:
        comment = _as_object_dict(payload.get("comment"))
        return _as_optional_str(comment.get("created_at")) if comment else None
    if event_name == "pull_request_review":
        review = _as_object_dict(payload.get("review"))
        return _as_optional_str(review.get("submitted_at")) if review else None
    return None


def parse_event_context(
    event_name: str,
    payload: dict[str, object],
    *,
    config: AppConfig,
    prompt_override: str | None = None,
) -> EventContext:
    repository = _parse_repository(payload)
    sender = _as_object_dict(payload.get("sender")) or {}

    issue = _as_object_dict(payload.get("issue"))
    pull_request = _as_object_dict(payload.get("pull_request"))
    comment = _as_object_dict(payload.get("comment"))
    review = _as_object_dict(payload.get("review"))
    label = _as_object_dict(payload.get("label"))
    assignee = _as_object_dict(payload.get("assignee"))

    entity: dict[str, object] | None
    is_pr: bool
    if event_name in {"issues", "issue_comment"}:
        entity = issue
        # Comments on pull requests arrive as issue comments with a pull_request marker.
        is_pr = issue is not None and issue.get("pull_request") is not None
    elif event_name in {"pull_request", "pull_request_review", "pull_request_review_comment"}:
        entity = pull_request
        is_pr = True
    else:
        entity = None
        is_pr = False

    entity_number = _as_optional_int(entity.get("number")) if entity else None
    prompt = prompt_override if prompt_override is not None else config.agent.prompt

    return EventContext(
        event_name=event_name,
        event_action=_as_optional_str(payload.get("action")),
        actor=_as_login(sender.get("login")),
        actor_id=_as_optional_int(sender.get("id")),
        repository=repository,
        entity_number=entity_number,
        is_pr=is_pr,
        inputs=TriggerInputs(
            trigger_phrase=config.trigger.phrase,
            phrase_case_sensitive=config.trigger.phrase_case_sensitive,
            assignee_trigger=config.trigger.assignee,
            label_triggers=tuple(sorted(config.trigger.labels)),
            prompt=prompt,
        ),
        use_commit_signing=config.agent.use_commit_signing,
        comment_body=_as_optional_str(comment.get("body")) if comment else None,
        entity_title=_as_optional_str(entity.get("title")) if entity else None,
        entity_body=_as_optional_str(entity.get("body")) if entity else None,
        review_body=_as_optional_str(review.get("body")) if review else None,
        labels=_label_names(entity.get("labels")) if entity else (),
        applied_label=_as_optional_str(label.get("name")) if label else None,
        assignee_login=_as_optional_str(assignee.get("login")) if assignee else None,
        trigger_time=extract_trigger_timestamp(event_name, payload),
    )


def _parse_repository(payload: dict[str, object]) -> Repository:
    repo_obj = _as_object_dict(payload.get("repository"))
    if repo_obj is None:
        raise WebhookPayloadError("Event payload is missing the repository object")
    owner_obj = _as_object_dict(repo_obj.get("owner")) or {}
    owner = _as_optional_str(owner_obj.get("login")) or _as_optional_str(owner_obj.get("username"))
    name = _as_optional_str(repo_obj.get("name"))
    if not owner or not name:
        full_name = _as_optional_str(repo_obj.get("full_name")) or ""
        owner, _, name = full_name.partition("/")
    if not owner or not name:
        raise WebhookPayloadError("Event payload repository must include owner and name")
    return Repository(owner=owner, name=name)


def _label_names(value: object) -> tuple[str, ...]:
    if not isinstance(value, list):
        return ()
    names: list[str] = []
    for entry in value:
        entry_obj = _as_object_dict(entry)
        if entry_obj is None:
            continue
        name = entry_obj.get("name")
        if isinstance(name, str) and name:
            names.append(name)
    return tuple(names)


def _as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)


def _as_optional_str(value: object) -> str | None:
    if isinstance(value, str) and value:
        return value
    return None


def _as_optional_int(value: object) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            return None
    return None


def _as_login(value: object) -> str:
    if not isinstance(value, str):
        return ""
    return value.strip()
