from __future__ import annotations

from dataclasses import dataclass
from typing import Literal


ChangeType = Literal["added", "deleted", "modified", "renamed"]
BodyKind = Literal["issue_body", "pr_body", "issue_comment", "review_body", "review_comment"]
PermissionPolicy = Literal["trusted", "write_access"]
ModeName = Literal["tag", "agent"]

ENTITY_EVENTS: frozenset[str] = frozenset(
    {
        "issues",
        "issue_comment",
        "pull_request",
        "pull_request_review",
        "pull_request_review_comment",
    }
)
AUTOMATION_EVENTS: frozenset[str] = frozenset(
    {"workflow_dispatch", "schedule", "repository_dispatch", "workflow_run"}
)


@dataclass(frozen=True)
class Repository:
    owner: str
    name: str

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"


@dataclass(frozen=True)
class TriggerInputs:
    trigger_phrase: str = "@claude"
    phrase_case_sensitive: bool = True
    assignee_trigger: str | None = None
    label_triggers: tuple[str, ...] = ()
    prompt: str = ""


@dataclass(frozen=True)
class EventContext:
    event_name: str
    event_action: str | None
    actor: str
    actor_id: int | None
    repository: Repository
    entity_number: int | None
    is_pr: bool
    inputs: TriggerInputs
    use_commit_signing: bool = False
    comment_body: str | None = None
    entity_title: str | None = None
    entity_body: str | None = None
    review_body: str | None = None
    labels: tuple[str, ...] = ()
    applied_label: str | None = None
    assignee_login: str | None = None
    trigger_time: str | None = None

    @property
    def is_entity_event(self) -> bool:
        return self.event_name in ENTITY_EVENTS

    @property
    def has_prompt(self) -> bool:
        return bool(self.inputs.prompt.strip())


@dataclass(frozen=True)
class EntityRef:
    repository: Repository
    number: int
    is_pr: bool


@dataclass(frozen=True)
class EntityRecord:
    number: int
    title: str
    body: str | None
    state: str
    author_login: str
    created_at: str
    updated_at: str | None
    last_edited_at: str | None
    labels: tuple[str, ...]
    is_pr: bool


@dataclass(frozen=True)
class Comment:
    comment_id: int
    body: str
    author_login: str
    html_url: str
    created_at: str
    updated_at: str | None
    last_edited_at: str | None = None


@dataclass(frozen=True)
class ReviewComment:
    comment_id: int
    review_id: int
    body: str
    path: str
    author_login: str
    created_at: str
    updated_at: str | None
    last_edited_at: str | None = None


@dataclass(frozen=True)
class Review:
    review_id: int
    body: str
    state: str
    author_login: str
    # Submission time; reviews have no separate creation timestamp.
    created_at: str
    updated_at: str | None
    last_edited_at: str | None = None
    comments: tuple[ReviewComment, ...] = ()


@dataclass(frozen=True)
class ChangedFile:
    path: str
    additions: int
    deletions: int
    change_type: ChangeType


@dataclass(frozen=True)
class ChangedFileWithSha:
    path: str
    additions: int
    deletions: int
    change_type: ChangeType
    sha: str


@dataclass(frozen=True)
class BodyItem:
    kind: BodyKind
    source_id: int
    body: str


@dataclass(frozen=True)
class Snapshot:
    entity: EntityRecord
    body_excluded: bool
    comments: tuple[Comment, ...]
    changed_files: tuple[ChangedFile, ...]
    changed_files_with_sha: tuple[ChangedFileWithSha, ...]
    reviews: tuple[Review, ...]
    bodies: tuple[BodyItem, ...]
    trigger_time: str | None
    trigger_display_name: str | None


@dataclass(frozen=True)
class TrackingComment:
    comment_id: int
    html_url: str
