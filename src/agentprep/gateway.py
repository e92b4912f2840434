from __future__ import annotations

import logging
from types import TracebackType
from typing import cast
from urllib.parse import quote

import httpx

from agentprep.config import ApiConfig
from agentprep.models import (
    ChangedFile,
    ChangeType,
    Comment,
    EntityRecord,
    Repository,
    Review,
    ReviewComment,
    TrackingComment,
)
from agentprep.observability import log_event, log_warning


LOGGER = logging.getLogger("agentprep.gateway")
_CHANGE_TYPES: dict[str, ChangeType] = {
    "added": "added",
    "removed": "deleted",
    "deleted": "deleted",
    "renamed": "renamed",
    "copied": "added",
    "modified": "modified",
    "changed": "modified",
}


class ForgeAPIError(RuntimeError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class ForgeResponseShapeError(RuntimeError):
    pass


class ForgeGateway:
    """REST access to one repository on a Gitea or GitHub-compatible forge."""

    def __init__(
        self,
        config: ApiConfig,
        repository: Repository,
        *,
        token: str,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        if not token.strip():
            raise ValueError("API token must be non-empty")
        self._config = config
        self.repository = repository
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            base_url=config.base_url,
            timeout=config.timeout_seconds,
            headers={
                "Authorization": f"token {token}",
                "User-Agent": config.user_agent,
                "Accept": "application/json",
            },
        )

    async def __aenter__(self) -> ForgeGateway:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    @property
    def _repo_path(self) -> str:
        return f"/repos/{quote(self.repository.owner)}/{quote(self.repository.name)}"

    async def get_issue(self, number: int) -> EntityRecord:
        payload = _require_object(
            await self._request_json("GET", f"{self._repo_path}/issues/{number}"), what="issue"
        )
        record = _entity_from_payload(payload, is_pr=False)
        log_event(LOGGER, "forge_read", endpoint="issue", issue_number=record.number)
        return record

    async def get_pull_request(self, number: int) -> EntityRecord:
        payload = _require_object(
            await self._request_json("GET", f"{self._repo_path}/pulls/{number}"),
            what="pull request",
        )
        record = _entity_from_payload(payload, is_pr=True)
        log_event(LOGGER, "forge_read", endpoint="pull_request", pr_number=record.number)
        return record

    async def list_issue_comments(self, number: int) -> list[Comment]:
        comments: list[Comment] = []
        for item in await self._paginate(f"{self._repo_path}/issues/{number}/comments"):
            user_obj = _as_object_dict(item.get("user"))
            comments.append(
                Comment(
                    comment_id=_as_int(item.get("id"), field="id"),
                    body=_as_string(item.get("body")),
                    author_login=_as_string(user_obj.get("login") if user_obj else None),
                    html_url=_as_string(item.get("html_url")),
                    created_at=_as_string(item.get("created_at")),
                    updated_at=_as_optional_str(item.get("updated_at")),
                    last_edited_at=_as_optional_str(item.get("last_edited_at")),
                )
            )
        log_event(
            LOGGER, "forge_read", endpoint="issue_comments", number=number, count=len(comments)
        )
        return comments

    async def list_pull_request_files(self, number: int) -> list[ChangedFile]:
        files: list[ChangedFile] = []
        for item in await self._paginate(f"{self._repo_path}/pulls/{number}/files"):
            filename = item.get("filename")
            if not isinstance(filename, str) or not filename:
                continue
            status = _as_string(item.get("status")).strip().lower()
            files.append(
                ChangedFile(
                    path=filename,
                    additions=_as_optional_int(item.get("additions")) or 0,
                    deletions=_as_optional_int(item.get("deletions")) or 0,
                    change_type=_CHANGE_TYPES.get(status, "modified"),
                )
            )
        log_event(
            LOGGER, "forge_read", endpoint="pull_request_files", pr_number=number, count=len(files)
        )
        return files

    async def list_pull_request_reviews(self, number: int) -> list[Review]:
        reviews: list[Review] = []
        for item in await self._paginate(f"{self._repo_path}/pulls/{number}/reviews"):
            user_obj = _as_object_dict(item.get("user"))
            reviews.append(
                Review(
                    review_id=_as_int(item.get("id"), field="id"),
                    body=_as_string(item.get("body")),
                    state=_as_string(item.get("state")).strip().upper(),
                    author_login=_as_string(user_obj.get("login") if user_obj else None),
                    created_at=_as_string(item.get("submitted_at")),
                    updated_at=_as_optional_str(item.get("updated_at")),
                    last_edited_at=_as_optional_str(item.get("last_edited_at")),
                )
            )
        log_event(
            LOGGER,
            "forge_read",
            endpoint="pull_request_reviews",
            pr_number=number,
            count=len(reviews),
        )
        return reviews

    async def list_review_comments(self, number: int, review_id: int) -> list[ReviewComment]:
        payload = await self._request_json(
            "GET", f"{self._repo_path}/pulls/{number}/reviews/{review_id}/comments"
        )
        if not isinstance(payload, list):
            raise ForgeResponseShapeError(
                "Unexpected forge response: expected list of review comments"
            )
        comments: list[ReviewComment] = []
        for raw in payload:
            item = _as_object_dict(raw)
            if item is None:
                continue
            user_obj = _as_object_dict(item.get("user"))
            comments.append(
                ReviewComment(
                    comment_id=_as_int(item.get("id"), field="id"),
                    review_id=review_id,
                    body=_as_string(item.get("body")),
                    path=_as_string(item.get("path")),
                    author_login=_as_string(user_obj.get("login") if user_obj else None),
                    created_at=_as_string(item.get("created_at")),
                    updated_at=_as_optional_str(item.get("updated_at")),
                    last_edited_at=_as_optional_str(item.get("last_edited_at")),
                )
            )
        log_event(
            LOGGER,
            "forge_read",
            endpoint="review_comments",
            pr_number=number,
            review_id=review_id,
            count=len(comments),
        )
        return comments

    async def get_user_display_name(self, login: str) -> str | None:
        try:
            payload = _require_object(
                await self._request_json("GET", f"/users/{quote(login)}"), what="user"
            )
        except (ForgeAPIError, ForgeResponseShapeError) as exc:
            log_warning(
                LOGGER,
                "user_display_name_unavailable",
                login=login,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None
        full_name = _as_optional_str(payload.get("full_name")) or _as_optional_str(
            payload.get("name")
        )
        if full_name is None or not full_name.strip():
            return None
        return full_name.strip()

    async def get_collaborator_permission(self, login: str) -> str:
        payload = _require_object(
            await self._request_json(
                "GET", f"{self._repo_path}/collaborators/{quote(login)}/permission"
            ),
            what="collaborator permission",
        )
        permission = _as_string(payload.get("permission")).strip().lower()
        log_event(
            LOGGER,
            "forge_read",
            endpoint="collaborator_permission",
            login=login,
            permission=permission or "<none>",
        )
        return permission

    async def create_issue_comment(self, number: int, body: str) -> TrackingComment:
        try:
            payload = _require_object(
                await self._request_json(
                    "POST", f"{self._repo_path}/issues/{number}/comments", payload={"body": body}
                ),
                what="comment",
            )
        except (ForgeAPIError, ForgeResponseShapeError) as exc:
            log_warning(
                LOGGER,
                "forge_issue_comment_failed",
                repo_full_name=self.repository.full_name,
                number=number,
                error_type=type(exc).__name__,
            )
            raise
        comment = TrackingComment(
            comment_id=_as_int(payload.get("id"), field="id"),
            html_url=_as_string(payload.get("html_url")),
        )
        log_event(
            LOGGER, "forge_issue_comment_posted", number=number, comment_id=comment.comment_id
        )
        return comment

    async def update_issue_comment(self, comment_id: int, body: str) -> TrackingComment:
        payload = _require_object(
            await self._request_json(
                "PATCH", f"{self._repo_path}/issues/comments/{comment_id}", payload={"body": body}
            ),
            what="comment",
        )
        log_event(LOGGER, "forge_issue_comment_updated", comment_id=comment_id)
        return TrackingComment(
            comment_id=_as_int(payload.get("id"), field="id"),
            html_url=_as_string(payload.get("html_url")),
        )

    async def _paginate(self, path: str) -> list[dict[str, object]]:
        """Collect every page of a list endpoint.

        Servers may cap the page size below the requested one, so a short page
        does not end the listing. A ``Link`` header without ``rel="next"`` or an
        empty page does.
        """
        items: list[dict[str, object]] = []
        page = 1
        while True:
            response = await self._request(
                "GET",
                path,
                params={
                    "page": page,
                    "limit": self._config.page_size,
                    "per_page": self._config.page_size,
                },
            )
            payload = _decode_json(response, path)
            if not isinstance(payload, list):
                raise ForgeResponseShapeError(
                    f"Unexpected forge response: expected list for {path}"
                )
            for raw in payload:
                item = _as_object_dict(raw)
                if item is not None:
                    items.append(item)
            if not payload:
                break
            if "link" in response.headers and "next" not in response.links:
                break
            page += 1
        return items

    async def _request_json(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, object] | None = None,
        payload: dict[str, object] | None = None,
    ) -> object:
        response = await self._request(method, path, params=params, payload=payload)
        return _decode_json(response, path)

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, object] | None = None,
        payload: dict[str, object] | None = None,
    ) -> httpx.Response:
        try:
            response = await self._client.request(
                method.upper(),
                path,
                params=cast(dict[str, str | int], params) if params else None,
                json=payload,
            )
        except httpx.HTTPError as exc:
            log_warning(
                LOGGER,
                "forge_request_failed",
                method=method.upper(),
                path=path,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise ForgeAPIError(f"Forge API {method.upper()} {path} failed: {exc}") from exc

        if response.status_code < 200 or response.status_code >= 300:
            message = response.text.strip() or "<empty>"
            log_warning(
                LOGGER,
                "forge_request_failed",
                method=method.upper(),
                path=path,
                status_code=response.status_code,
                error=_preview_for_log(message),
            )
            raise ForgeAPIError(
                f"Forge API {method.upper()} {path} failed with status "
                f"{response.status_code}: {_preview_for_log(message)}",
                status_code=response.status_code,
            )
        return response


def _decode_json(response: httpx.Response, path: str) -> object:
    try:
        return response.json()
    except ValueError as exc:
        raise ForgeResponseShapeError(
            f"Unexpected forge response: invalid JSON for {path}"
        ) from exc


def _entity_from_payload(payload: dict[str, object], *, is_pr: bool) -> EntityRecord:
    user_obj = _as_object_dict(payload.get("user"))
    return EntityRecord(
        number=_as_int(payload.get("number"), field="number"),
        title=_as_string(payload.get("title")),
        body=_as_string(payload.get("body")),
        state=_as_string(payload.get("state")).strip().lower(),
        author_login=_as_string(user_obj.get("login") if user_obj else None),
        created_at=_as_string(payload.get("created_at")),
        updated_at=_as_optional_str(payload.get("updated_at")),
        last_edited_at=_as_optional_str(payload.get("last_edited_at")),
        labels=_label_names(payload.get("labels")),
        is_pr=is_pr,
    )


def _label_names(value: object) -> tuple[str, ...]:
    if not isinstance(value, list):
        return ()
    names: list[str] = []
    for entry in value:
        entry_obj = _as_object_dict(entry)
        if entry_obj is None:
            continue
        name = entry_obj.get("name")
        if isinstance(name, str):
            names.append(name)
    return tuple(names)


def _require_object(payload: object, *, what: str) -> dict[str, object]:
    payload_obj = _as_object_dict(payload)
    if payload_obj is None:
        raise ForgeResponseShapeError(f"Unexpected forge response: expected object for {what}")
    return payload_obj


def _preview_for_log(text: str, *, limit: int = 240) -> str:
    compact = text.replace("\n", "\\n").strip()
    if not compact:
        return "<empty>"
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


def _as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)


def _as_string(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


def _as_optional_str(value: object) -> str | None:
    # Forges report "never" for some timestamps as null or the empty string.
    if value is None or value == "":
        return None
    if isinstance(value, str):
        return value
    return str(value)


def _as_int(value: object, *, field: str) -> int:
    if isinstance(value, bool):
        raise ForgeResponseShapeError(f"Unexpected forge response type for {field}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError as exc:
            raise ForgeResponseShapeError(
                f"Unexpected forge response value for {field}: {value}"
            ) from exc
    raise ForgeResponseShapeError(f"Unexpected forge response type for {field}")


def _as_optional_int(value: object) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            return None
    return None
