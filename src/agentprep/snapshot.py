from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import replace
import logging
from pathlib import Path
from typing import Protocol, TypeVar

from agentprep.gateway import ForgeAPIError, ForgeResponseShapeError
from agentprep.models import (
    BodyItem,
    ChangedFile,
    ChangedFileWithSha,
    Comment,
    EntityRecord,
    EntityRef,
    Review,
    ReviewComment,
    Snapshot,
)
from agentprep.observability import log_event, log_warning
from agentprep.shell import CommandError, run
from agentprep.temporal import filter_to_trigger_time, is_body_safe_to_use


LOGGER = logging.getLogger("agentprep.snapshot")
SHA_DELETED = "deleted"
SHA_UNKNOWN = "unknown"

T = TypeVar("T")
FileHasher = Callable[[str], str]


class SnapshotFetchError(RuntimeError):
    def __init__(self, category: str, number: int, cause: Exception) -> None:
        self.category = category
        self.number = number
        super().__init__(f"Failed to fetch {category} for #{number}: {cause}")


class SnapshotSource(Protocol):
    async def get_issue(self, number: int) -> EntityRecord: ...

    async def get_pull_request(self, number: int) -> EntityRecord: ...

    async def list_issue_comments(self, number: int) -> list[Comment]: ...

    async def list_pull_request_files(self, number: int) -> list[ChangedFile]: ...

    async def list_pull_request_reviews(self, number: int) -> list[Review]: ...

    async def list_review_comments(self, number: int, review_id: int) -> list[ReviewComment]: ...

    async def get_user_display_name(self, login: str) -> str | None: ...


def git_blob_hasher(workdir: Path, *, timeout_seconds: float = 10.0) -> FileHasher:
    def hash_file(path: str) -> str:
        return run(
            ["git", "hash-object", "--", path], cwd=workdir, timeout_seconds=timeout_seconds
        ).strip()

    return hash_file


async def assemble_snapshot(
    source: SnapshotSource,
    entity_ref: EntityRef,
    trigger_time: str | None,
    *,
    hasher: FileHasher,
    trigger_username: str | None = None,
) -> Snapshot:
    """Fetch an issue or pull request and keep only content that predates the trigger.

    Entity, comment, file and review fetches are primary: any failure aborts
    with ``SnapshotFetchError``. File fingerprints and the trigger user's
    display name are enrichment and fall back to ``"unknown"`` and ``None``.
    """
    number = entity_ref.number
    files_task: asyncio.Task[list[ChangedFile]] | None = None
    reviews_task: asyncio.Task[list[Review]] | None = None
    try:
        async with asyncio.TaskGroup() as group:
            entity_task = group.create_task(
                _fetch("entity", number, lambda: _get_entity(source, entity_ref))
            )
            comments_task = group.create_task(
                _fetch("comments", number, lambda: source.list_issue_comments(number))
            )
            display_task = group.create_task(_display_name(source, trigger_username))
            if entity_ref.is_pr:
                files_task = group.create_task(
                    _fetch(
                        "changed_files", number, lambda: source.list_pull_request_files(number)
                    )
                )
                reviews_task = group.create_task(
                    _fetch("reviews", number, lambda: _fetch_reviews_with_comments(source, number))
                )
    except ExceptionGroup as exc:
        raise _first_error(exc) from exc

    entity = entity_task.result()
    comments = comments_task.result()
    display_name = display_task.result()
    changed_files = files_task.result() if files_task is not None else []
    reviews = reviews_task.result() if reviews_task is not None else []

    # Fingerprinting shells out, so it runs once every fetch has resolved.
    changed_files_with_sha = await asyncio.to_thread(_fingerprint_all, changed_files, hasher)

    safe_comments = filter_to_trigger_time(comments, trigger_time, category="issue_comments")
    safe_reviews = filter_to_trigger_time(reviews, trigger_time, category="reviews")
    all_review_comments = [comment for review in reviews for comment in review.comments]
    safe_review_comments = filter_to_trigger_time(
        all_review_comments, trigger_time, category="review_comments"
    )
    safe_review_comment_ids = {comment.comment_id for comment in safe_review_comments}

    body_excluded = not is_body_safe_to_use(entity, trigger_time)
    if body_excluded:
        log_warning(
            LOGGER,
            "entity_body_excluded",
            repo_full_name=entity_ref.repository.full_name,
            number=number,
            is_pr=entity_ref.is_pr,
            trigger_time=trigger_time,
            last_edited_at=entity.last_edited_at,
            updated_at=entity.updated_at,
        )
        entity = replace(entity, body=None)

    bodies: list[BodyItem] = []
    if entity.body:
        bodies.append(
            BodyItem(
                kind="pr_body" if entity_ref.is_pr else "issue_body",
                source_id=number,
                body=entity.body,
            )
        )
    bodies.extend(
        BodyItem(kind="issue_comment", source_id=comment.comment_id, body=comment.body)
        for comment in safe_comments
        if comment.body
    )
    bodies.extend(
        BodyItem(kind="review_body", source_id=review.review_id, body=review.body)
        for review in safe_reviews
        if review.body
    )
    bodies.extend(
        BodyItem(kind="review_comment", source_id=comment.comment_id, body=comment.body)
        for comment in safe_review_comments
        if comment.body
    )

    snapshot = Snapshot(
        entity=entity,
        body_excluded=body_excluded,
        comments=tuple(safe_comments),
        changed_files=tuple(changed_files),
        changed_files_with_sha=tuple(changed_files_with_sha),
        reviews=tuple(
            replace(
                review,
                comments=tuple(
                    comment
                    for comment in review.comments
                    if comment.comment_id in safe_review_comment_ids
                ),
            )
            for review in safe_reviews
        ),
        bodies=tuple(bodies),
        trigger_time=trigger_time,
        trigger_display_name=display_name,
    )
    log_event(
        LOGGER,
        "snapshot_assembled",
        repo_full_name=entity_ref.repository.full_name,
        number=number,
        is_pr=entity_ref.is_pr,
        trigger_time=trigger_time,
        comment_count=len(snapshot.comments),
        review_count=len(snapshot.reviews),
        changed_file_count=len(snapshot.changed_files),
        body_count=len(snapshot.bodies),
        body_excluded=body_excluded,
    )
    return snapshot


async def _fetch(category: str, number: int, request: Callable[[], Awaitable[T]]) -> T:
    try:
        return await request()
    except (ForgeAPIError, ForgeResponseShapeError) as exc:
        log_warning(
            LOGGER,
            "snapshot_fetch_failed",
            category=category,
            number=number,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        raise SnapshotFetchError(category, number, exc) from exc


async def _get_entity(source: SnapshotSource, entity_ref: EntityRef) -> EntityRecord:
    if entity_ref.is_pr:
        return await source.get_pull_request(entity_ref.number)
    return await source.get_issue(entity_ref.number)


async def _fetch_reviews_with_comments(source: SnapshotSource, number: int) -> list[Review]:
    reviews = await source.list_pull_request_reviews(number)
    try:
        async with asyncio.TaskGroup() as group:
            tasks = [
                group.create_task(source.list_review_comments(number, review.review_id))
                for review in reviews
            ]
    except ExceptionGroup as exc:
        raise _first_error(exc) from exc
    return [
        replace(review, comments=tuple(task.result()))
        for review, task in zip(reviews, tasks, strict=True)
    ]


def _first_error(group: ExceptionGroup[Exception]) -> Exception:
    # TaskGroup has already cancelled and awaited the sibling tasks.
    error: Exception = group
    while isinstance(error, ExceptionGroup):
        error = error.exceptions[0]
    return error


async def _display_name(source: SnapshotSource, login: str | None) -> str | None:
    if not login:
        return None
    return await source.get_user_display_name(login)


def _fingerprint_all(
    changed_files: list[ChangedFile], hasher: FileHasher
) -> list[ChangedFileWithSha]:
    return [_fingerprint(changed, hasher) for changed in changed_files]


def _fingerprint(changed: ChangedFile, hasher: FileHasher) -> ChangedFileWithSha:
    if changed.change_type == "deleted":
        sha = SHA_DELETED
    else:
        try:
            sha = hasher(changed.path) or SHA_UNKNOWN
        except (CommandError, OSError) as exc:
            log_warning(
                LOGGER,
                "file_fingerprint_failed",
                path=changed.path,
                error_type=type(exc).__name__,
            )
            sha = SHA_UNKNOWN
    return ChangedFileWithSha(
        path=changed.path,
        additions=changed.additions,
        deletions=changed.deletions,
        change_type=changed.change_type,
        sha=sha,
    )
