from __future__ import annotations

import logging
from typing import Protocol

from agentprep.config import AuthConfig, ConfigError
from agentprep.gateway import ForgeAPIError, ForgeResponseShapeError
from agentprep.models import EventContext
from agentprep.observability import log_event, log_warning


LOGGER = logging.getLogger("agentprep.permissions")
_WRITE_PERMISSIONS = frozenset({"admin", "owner", "maintain", "write"})


class MissingIdentityError(ConfigError):
    pass


class AuthorizationError(RuntimeError):
    pass


class PermissionReader(Protocol):
    async def get_collaborator_permission(self, login: str) -> str: ...


def is_bot_login(login: str) -> bool:
    return login.strip().lower().endswith("[bot]")


async def authorize(
    context: EventContext,
    *,
    auth: AuthConfig,
    permissions: PermissionReader,
    token_provided: bool,
) -> bool:
    """Decide whether the acting identity may invoke the bot on this repository.

    The ``trusted`` policy is for single-tenant deployments where every actor
    is the operator. Under ``write_access`` the actor needs write access,
    unless listed in ``allowed_non_write_users`` and the operator supplied the
    API token themselves. A failed permission lookup denies instead of raising.
    """
    actor = context.actor.strip()
    if auth.policy == "trusted":
        log_event(
            LOGGER,
            "permission_decided",
            actor=actor or "<unknown>",
            policy=auth.policy,
            allowed=True,
            reason="trusted_deployment",
        )
        return True

    if not actor:
        raise MissingIdentityError(
            "Event has no actor login; cannot check repository permissions"
        )

    if is_bot_login(actor):
        _log_decision(actor, allowed=True, reason="bot_actor")
        return True

    if auth.allowed_non_write_users:
        if not token_provided:
            log_warning(
                LOGGER,
                "allowed_non_write_users_ignored",
                actor=actor,
                reason="api_token_not_operator_provided",
            )
        elif auth.allows_without_write(actor):
            _log_decision(actor, allowed=True, reason="allowed_non_write_user")
            return True

    try:
        permission = await permissions.get_collaborator_permission(actor)
    except (ForgeAPIError, ForgeResponseShapeError) as exc:
        log_warning(
            LOGGER,
            "permission_lookup_failed",
            actor=actor,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return False

    allowed = permission in _WRITE_PERMISSIONS
    _log_decision(actor, allowed=allowed, reason=f"permission_{permission or 'none'}")
    return allowed


def _log_decision(actor: str, *, allowed: bool, reason: str) -> None:
    log_event(
        LOGGER,
        "permission_decided",
        actor=actor,
        policy="write_access",
        allowed=allowed,
        reason=reason,
    )
