from __future__ import annotations

from abc import ABC, abstractmethod
import logging
from typing import Literal

from agentprep import triggers
from agentprep.config import AgentConfig, AppConfig, ConfigError
from agentprep.models import AUTOMATION_EVENTS, ENTITY_EVENTS, EventContext, ModeName
from agentprep.observability import log_event


LOGGER = logging.getLogger("agentprep.modes")
EventShape = Literal["entity", "automation", "unsupported"]

TRACKING_COMMENT_TOOL = "mcp__github_comment__update_claude_comment"
_TAG_BASE_TOOLS: tuple[str, ...] = (
    "Edit",
    "MultiEdit",
    "Glob",
    "Grep",
    "LS",
    "Read",
    "Write",
    TRACKING_COMMENT_TOOL,
    "mcp__gitea__get_file_content",
)
_GIT_TOOLS: tuple[str, ...] = (
    "Bash(git add:*)",
    "Bash(git commit:*)",
    "Bash(git push:*)",
    "Bash(git status:*)",
    "Bash(git diff:*)",
    "Bash(git log:*)",
    "Bash(git rm:*)",
)
_SIGNED_COMMIT_TOOLS: tuple[str, ...] = (
    "mcp__gitea__create_file",
    "mcp__gitea__update_file",
    "mcp__gitea__delete_file",
)


class ModeSelectionError(ConfigError):
    pass


class Mode(ABC):
    name: ModeName
    description: str
    accepted_events: frozenset[str]
    creates_tracking_comment: bool

    @abstractmethod
    def applies_to(self, context: EventContext) -> bool:
        """Whether this mode can handle the event at all."""

    @abstractmethod
    def should_trigger(self, context: EventContext) -> bool:
        """Whether the event should engage the assistant."""

    @abstractmethod
    def allowed_tools(self, agent: AgentConfig, context: EventContext) -> tuple[str, ...]:
        """Tools the downstream assistant invocation may use."""

    def disallowed_tools(self, agent: AgentConfig) -> tuple[str, ...]:
        return agent.disallowed_tools

    def system_prompt(self, agent: AgentConfig) -> str | None:
        return agent.append_system_prompt.strip() or None


class TagMode(Mode):
    """Responds to trigger phrase mentions, trigger labels and assignments on issues and PRs."""

    name: ModeName = "tag"
    description = "Implementation mode triggered by mentions, labels or assignment"
    accepted_events = ENTITY_EVENTS
    creates_tracking_comment = True

    def applies_to(self, context: EventContext) -> bool:
        return context.is_entity_event and context.entity_number is not None

    def should_trigger(self, context: EventContext) -> bool:
        return triggers.should_trigger(context, accepted_events=self.accepted_events)

    def allowed_tools(self, agent: AgentConfig, context: EventContext) -> tuple[str, ...]:
        extra_mcp_tools = [tool for tool in agent.allowed_tools if tool.startswith("mcp__github_")]
        tools = [*_TAG_BASE_TOOLS, *extra_mcp_tools]
        if context.use_commit_signing:
            tools.extend(_SIGNED_COMMIT_TOOLS)
        else:
            tools.extend(_GIT_TOOLS)
        return _dedupe(tools)


class AgentMode(Mode):
    """Runs an operator-supplied prompt for automation events or explicit entity requests."""

    name: ModeName = "agent"
    description = "Automation mode driven by an explicit prompt"
    accepted_events = ENTITY_EVENTS | AUTOMATION_EVENTS
    creates_tracking_comment = False

    def applies_to(self, context: EventContext) -> bool:
        if not context.has_prompt:
            return False
        if context.event_name in AUTOMATION_EVENTS:
            return True
        return context.is_entity_event and context.entity_number is not None

    def should_trigger(self, context: EventContext) -> bool:
        return context.event_name in self.accepted_events and context.has_prompt

    def allowed_tools(self, agent: AgentConfig, context: EventContext) -> tuple[str, ...]:
        _ = context
        return _dedupe(agent.allowed_tools)


MODES: dict[ModeName, Mode] = {"tag": TagMode(), "agent": AgentMode()}


def event_shape(context: EventContext) -> EventShape:
    if context.event_name in ENTITY_EVENTS:
        return "entity"
    if context.event_name in AUTOMATION_EVENTS:
        return "automation"
    return "unsupported"


def select_mode(context: EventContext, *, config: AppConfig) -> Mode:
    name = _mode_name_for(context, config)
    mode = MODES[name]
    if not mode.applies_to(context):
        raise ModeSelectionError(
            f"Mode {name!r} cannot handle {context.event_name!r} events"
            + ("" if context.has_prompt else " without a prompt")
        )
    log_event(
        LOGGER,
        "mode_selected",
        mode=mode.name,
        event_name=context.event_name,
        event_action=context.event_action,
        entity_number=context.entity_number,
    )
    return mode


def _mode_name_for(context: EventContext, config: AppConfig) -> ModeName:
    match event_shape(context):
        case "entity":
            if context.entity_number is None:
                raise ModeSelectionError(
                    f"{context.event_name!r} event payload has no issue or pull request number"
                )
            override = config.mode_for_event(context.event_name)
            if override is not None:
                return override
            return "agent" if context.has_prompt else "tag"
        case "automation":
            if context.has_prompt:
                return "agent"
            raise ModeSelectionError(
                f"{context.event_name!r} events require a prompt; no mode matches"
            )
        case "unsupported":
            raise ModeSelectionError(f"No mode handles {context.event_name!r} events")


def _dedupe(tools: list[str] | tuple[str, ...]) -> tuple[str, ...]:
    out: list[str] = []
    for tool in tools:
        if tool not in out:
            out.append(tool)
    return tuple(out)
