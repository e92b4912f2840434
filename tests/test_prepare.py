from __future__ import annotations

from dataclasses import replace
import logging

import pytest

from agentprep.config import AgentConfig, ApiConfig, AppConfig, AuthConfig
from agentprep.models import (
    ChangedFile,
    Comment,
    EntityRecord,
    EventContext,
    Repository,
    Review,
    ReviewComment,
    TrackingComment,
    TriggerInputs,
)
from agentprep.gateway import ForgeAPIError
from agentprep.modes import ModeSelectionError
from agentprep.permissions import AuthorizationError
from agentprep.prepare import build_tracking_comment_body, build_tracking_failure_body, prepare
from agentprep.snapshot import SnapshotFetchError
from agentprep.temporal import TriggerTimeError


CONFIG = AppConfig(
    api=ApiConfig(base_url="https://forge.example", run_url="https://ci.example/run/3"),
    agent=AgentConfig(allowed_tools=("Read",), disallowed_tools=("WebFetch",)),
)


class FakeForge:
    def __init__(
        self,
        *,
        permission: str = "write",
        comments_error: Exception | None = None,
        update_error: Exception | None = None,
    ) -> None:
        self.permission = permission
        self.comments_error = comments_error
        self.update_error = update_error
        self.posted: list[tuple[int, str]] = []
        self.updated: list[tuple[int, str]] = []
        self.reads: list[str] = []

    async def get_collaborator_permission(self, login: str) -> str:
        self.reads.append(f"permission:{login}")
        return self.permission

    async def create_issue_comment(self, number: int, body: str) -> TrackingComment:
        self.posted.append((number, body))
        return TrackingComment(comment_id=900, html_url="https://forge.example/c/900")

    async def update_issue_comment(self, comment_id: int, body: str) -> TrackingComment:
        if self.update_error is not None:
            raise self.update_error
        self.updated.append((comment_id, body))
        return TrackingComment(comment_id=comment_id, html_url="https://forge.example/c/900")

    async def get_issue(self, number: int) -> EntityRecord:
        self.reads.append("issue")
        return EntityRecord(
            number=number,
            title="Crash",
            body="It crashes",
            state="open",
            author_login="alice",
            created_at="2024-01-01T08:00:00Z",
            updated_at="2024-01-01T08:00:00Z",
            last_edited_at=None,
            labels=(),
            is_pr=False,
        )

    async def get_pull_request(self, number: int) -> EntityRecord:
        return replace(await self.get_issue(number), is_pr=True)

    async def list_issue_comments(self, number: int) -> list[Comment]:
        if self.comments_error is not None:
            raise self.comments_error
        return [
            Comment(
                comment_id=1,
                body="@claude fix it",
                author_login="alice",
                html_url="u1",
                created_at="2024-01-01T10:00:00Z",
                updated_at="2024-01-01T10:00:00Z",
            )
        ]

    async def list_pull_request_files(self, number: int) -> list[ChangedFile]:
        return []

    async def list_pull_request_reviews(self, number: int) -> list[Review]:
        return []

    async def list_review_comments(self, number: int, review_id: int) -> list[ReviewComment]:
        return []

    async def get_user_display_name(self, login: str) -> str | None:
        return "Alice"


def _context(**overrides: object) -> EventContext:
    base = EventContext(
        event_name="issue_comment",
        event_action="created",
        actor="alice",
        actor_id=1,
        repository=Repository(owner="acme", name="widgets"),
        entity_number=5,
        is_pr=False,
        inputs=TriggerInputs(),
        comment_body="@claude fix it",
        trigger_time="2024-01-01T10:00:00Z",
    )
    return replace(base, **overrides)  # type: ignore[arg-type]


def _hasher(path: str) -> str:
    return "sha"


def test_build_tracking_comment_body() -> None:
    assert build_tracking_comment_body(None) == "Working on this request…"
    assert build_tracking_comment_body("https://ci/run").endswith("[View job run](https://ci/run)")


@pytest.mark.asyncio
async def test_tag_mode_posts_tracking_comment_and_snapshots() -> None:
    forge = FakeForge()
    result = await prepare(
        _context(), config=CONFIG, client=forge, token_provided=False, hasher=_hasher
    )

    assert result.mode == "tag"
    assert result.contains_trigger is True
    assert result.tracking_comment is not None
    assert result.tracking_comment.comment_id == 900
    assert forge.posted[0][0] == 5
    assert "https://ci.example/run/3" in forge.posted[0][1]
    assert result.snapshot is not None
    # The triggering comment was created at the trigger instant and is excluded.
    assert result.snapshot.comments == ()
    assert [item.kind for item in result.snapshot.bodies] == ["issue_body"]
    assert result.snapshot.trigger_display_name == "Alice"
    assert "Read" in result.allowed_tools
    assert result.disallowed_tools == ("WebFetch",)

    payload = result.to_json_dict()
    assert payload["tracking_comment_id"] == 900
    assert isinstance(payload["snapshot"], dict)


@pytest.mark.asyncio
async def test_missing_trigger_returns_quietly() -> None:
    forge = FakeForge()
    result = await prepare(
        _context(comment_body="just chatting"),
        config=CONFIG,
        client=forge,
        token_provided=False,
        hasher=_hasher,
    )
    assert result.contains_trigger is False
    assert result.snapshot is None
    assert forge.posted == []
    assert result.to_json_dict()["tracking_comment_id"] is None


@pytest.mark.asyncio
async def test_unauthorized_actor_is_rejected_before_any_side_effect() -> None:
    forge = FakeForge(permission="read")
    with pytest.raises(AuthorizationError, match="acme/widgets"):
        await prepare(
            _context(), config=CONFIG, client=forge, token_provided=False, hasher=_hasher
        )
    assert forge.posted == []
    assert "issue" not in forge.reads


@pytest.mark.asyncio
async def test_agent_mode_on_entity_skips_tracking_comment() -> None:
    forge = FakeForge()
    result = await prepare(
        _context(inputs=TriggerInputs(prompt="label this issue")),
        config=CONFIG,
        client=forge,
        token_provided=False,
        hasher=_hasher,
    )
    assert result.mode == "agent"
    assert result.tracking_comment is None
    assert result.snapshot is not None
    assert result.allowed_tools == ("Read",)
    assert forge.posted == []


@pytest.mark.asyncio
async def test_automation_event_skips_permission_check_and_snapshot() -> None:
    forge = FakeForge(permission="none")
    result = await prepare(
        _context(
            event_name="schedule",
            event_action=None,
            actor="",
            entity_number=None,
            comment_body=None,
            trigger_time=None,
            inputs=TriggerInputs(prompt="weekly report"),
        ),
        config=CONFIG,
        client=forge,
        token_provided=False,
        hasher=_hasher,
    )
    assert result.mode == "agent"
    assert result.contains_trigger is True
    assert result.snapshot is None
    assert forge.reads == []


@pytest.mark.asyncio
async def test_unsupported_event_raises_mode_selection_error() -> None:
    with pytest.raises(ModeSelectionError):
        await prepare(
            _context(event_name="push", entity_number=None),
            config=replace(CONFIG, auth=AuthConfig(policy="trusted")),
            client=FakeForge(),
            token_provided=False,
            hasher=_hasher,
        )


@pytest.mark.asyncio
async def test_invalid_trigger_time_fails_before_posting() -> None:
    forge = FakeForge()
    with pytest.raises(TriggerTimeError):
        await prepare(
            _context(trigger_time="last tuesday"),
            config=CONFIG,
            client=forge,
            token_provided=False,
            hasher=_hasher,
        )
    assert forge.posted == []
    assert forge.reads == []


def test_build_tracking_failure_body() -> None:
    body = build_tracking_failure_body(None, RuntimeError("boom"))
    assert body.startswith("Could not gather the context")
    assert body.endswith("Error: boom")
    linked = build_tracking_failure_body("https://ci/run", RuntimeError("boom"))
    assert linked.endswith("[View job run](https://ci/run)")


@pytest.mark.asyncio
async def test_fetch_failure_marks_tracking_comment_failed() -> None:
    forge = FakeForge(comments_error=ForgeAPIError("server exploded", status_code=500))
    with pytest.raises(SnapshotFetchError, match="comments"):
        await prepare(
            _context(), config=CONFIG, client=forge, token_provided=False, hasher=_hasher
        )

    assert [number for number, _ in forge.posted] == [5]
    assert len(forge.updated) == 1
    comment_id, body = forge.updated[0]
    assert comment_id == 900
    assert "server exploded" in body
    assert "https://ci.example/run/3" in body


@pytest.mark.asyncio
async def test_failed_tracking_update_keeps_original_fetch_error(
    caplog: pytest.LogCaptureFixture,
) -> None:
    forge = FakeForge(
        comments_error=ForgeAPIError("server exploded", status_code=500),
        update_error=ForgeAPIError("comment locked", status_code=423),
    )
    with caplog.at_level(logging.WARNING, logger="agentprep"):
        with pytest.raises(SnapshotFetchError, match="server exploded"):
            await prepare(
                _context(), config=CONFIG, client=forge, token_provided=False, hasher=_hasher
            )

    assert forge.updated == []
    messages = [record.getMessage() for record in caplog.records]
    assert any("event=tracking_comment_update_failed" in message for message in messages)


@pytest.mark.asyncio
async def test_fetch_failure_without_tracking_comment_updates_nothing() -> None:
    forge = FakeForge(comments_error=ForgeAPIError("server exploded", status_code=500))
    with pytest.raises(SnapshotFetchError):
        await prepare(
            _context(inputs=TriggerInputs(prompt="label this issue")),
            config=CONFIG,
            client=forge,
            token_provided=False,
            hasher=_hasher,
        )
    assert forge.posted == []
    assert forge.updated == []
