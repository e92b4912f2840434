from __future__ import annotations

from dataclasses import asdict, dataclass
import logging
from typing import Protocol

from agentprep.config import AppConfig
from agentprep.gateway import ForgeAPIError, ForgeResponseShapeError
from agentprep.models import EntityRef, EventContext, ModeName, Snapshot, TrackingComment
from agentprep.modes import select_mode
from agentprep.observability import log_event, log_warning
from agentprep.permissions import AuthorizationError, PermissionReader, authorize
from agentprep.snapshot import (
    FileHasher,
    SnapshotFetchError,
    SnapshotSource,
    assemble_snapshot,
)
from agentprep.temporal import parse_trigger_time


LOGGER = logging.getLogger("agentprep.prepare")


class ForgeClient(SnapshotSource, PermissionReader, Protocol):
    async def create_issue_comment(self, number: int, body: str) -> TrackingComment: ...

    async def update_issue_comment(self, comment_id: int, body: str) -> TrackingComment: ...


@dataclass(frozen=True)
class PrepareResult:
    mode: ModeName
    contains_trigger: bool
    tracking_comment: TrackingComment | None = None
    snapshot: Snapshot | None = None
    allowed_tools: tuple[str, ...] = ()
    disallowed_tools: tuple[str, ...] = ()
    system_prompt: str | None = None

    def to_json_dict(self) -> dict[str, object]:
        return {
            "mode": self.mode,
            "contains_trigger": self.contains_trigger,
            "tracking_comment_id": (
                self.tracking_comment.comment_id if self.tracking_comment else None
            ),
            "allowed_tools": list(self.allowed_tools),
            "disallowed_tools": list(self.disallowed_tools),
            "system_prompt": self.system_prompt,
            "snapshot": asdict(self.snapshot) if self.snapshot else None,
        }


def build_tracking_comment_body(run_url: str | None) -> str:
    lines = ["Working on this request…"]
    if run_url:
        lines.extend(["", f"[View job run]({run_url})"])
    return "\n".join(lines)


def build_tracking_failure_body(run_url: str | None, error: Exception) -> str:
    lines = ["Could not gather the context for this request.", "", f"Error: {error}"]
    if run_url:
        lines.extend(["", f"[View job run]({run_url})"])
    return "\n".join(lines)


async def _mark_tracking_comment_failed(
    client: ForgeClient,
    tracking_comment: TrackingComment,
    error: Exception,
    *,
    run_url: str | None,
) -> None:
    try:
        await client.update_issue_comment(
            tracking_comment.comment_id, build_tracking_failure_body(run_url, error)
        )
    except (ForgeAPIError, ForgeResponseShapeError) as exc:
        log_warning(
            LOGGER,
            "tracking_comment_update_failed",
            comment_id=tracking_comment.comment_id,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return
    log_event(LOGGER, "tracking_comment_marked_failed", comment_id=tracking_comment.comment_id)


async def prepare(
    context: EventContext,
    *,
    config: AppConfig,
    client: ForgeClient,
    token_provided: bool,
    hasher: FileHasher,
) -> PrepareResult:
    """Run one invocation: pick a mode, gate the actor, evaluate triggers, snapshot.

    A missing trigger is a normal outcome and returns ``contains_trigger=False``.
    Configuration problems, authorization denial and primary fetch failures
    raise.
    """
    mode = select_mode(context, config=config)
    if context.trigger_time:
        parse_trigger_time(context.trigger_time)

    if context.is_entity_event:
        allowed = await authorize(
            context,
            auth=config.auth,
            permissions=client,
            token_provided=token_provided,
        )
        if not allowed:
            raise AuthorizationError(
                f"Actor {context.actor!r} does not have write permissions to "
                f"{context.repository.full_name}"
            )

    contains_trigger = mode.should_trigger(context)
    log_event(
        LOGGER,
        "trigger_evaluated",
        mode=mode.name,
        event_name=context.event_name,
        event_action=context.event_action,
        contains_trigger=contains_trigger,
    )
    if not contains_trigger:
        log_event(LOGGER, "trigger_not_found", mode=mode.name, event_name=context.event_name)
        return PrepareResult(mode=mode.name, contains_trigger=False)

    tracking_comment: TrackingComment | None = None
    snapshot: Snapshot | None = None
    if context.is_entity_event and context.entity_number is not None:
        if mode.creates_tracking_comment:
            tracking_comment = await client.create_issue_comment(
                context.entity_number, build_tracking_comment_body(config.api.run_url)
            )
            log_event(
                LOGGER,
                "tracking_comment_created",
                number=context.entity_number,
                comment_id=tracking_comment.comment_id,
            )
        try:
            snapshot = await assemble_snapshot(
                client,
                EntityRef(
                    repository=context.repository,
                    number=context.entity_number,
                    is_pr=context.is_pr,
                ),
                context.trigger_time,
                hasher=hasher,
                trigger_username=context.actor or None,
            )
        except SnapshotFetchError as exc:
            if tracking_comment is not None:
                await _mark_tracking_comment_failed(
                    client, tracking_comment, exc, run_url=config.api.run_url
                )
            raise

    result = PrepareResult(
        mode=mode.name,
        contains_trigger=True,
        tracking_comment=tracking_comment,
        snapshot=snapshot,
        allowed_tools=mode.allowed_tools(config.agent, context),
        disallowed_tools=mode.disallowed_tools(config.agent),
        system_prompt=mode.system_prompt(config.agent),
    )
    log_event(
        LOGGER,
        "prepare_finished",
        mode=result.mode,
        tracking_comment_id=tracking_comment.comment_id if tracking_comment else None,
        body_count=len(snapshot.bodies) if snapshot else 0,
        allowed_tool_count=len(result.allowed_tools),
    )
    return result
