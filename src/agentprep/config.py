from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
import tomllib
from typing import cast

from agentprep.models import ENTITY_EVENTS, ModeName, PermissionPolicy


_MODE_NAMES: frozenset[str] = frozenset({"tag", "agent"})
_POLICIES: frozenset[str] = frozenset({"trusted", "write_access"})


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class ApiConfig:
    base_url: str
    token_env: str = "API_TOKEN"
    override_token_env: str = "OVERRIDE_API_TOKEN"
    timeout_seconds: float = 20.0
    page_size: int = 50
    user_agent: str = "agentprep"
    run_url: str | None = None


@dataclass(frozen=True)
class TriggerConfig:
    phrase: str = "@claude"
    phrase_case_sensitive: bool = True
    labels: frozenset[str] = frozenset()
    assignee: str | None = None


@dataclass(frozen=True)
class AuthConfig:
    policy: PermissionPolicy = "write_access"
    allowed_non_write_users: frozenset[str] = frozenset()

    def allows_without_write(self, login: str) -> bool:
        normalized = login.strip().lower()
        if not normalized:
            return False
        return "*" in self.allowed_non_write_users or normalized in self.allowed_non_write_users


@dataclass(frozen=True)
class AgentConfig:
    use_commit_signing: bool = False
    allowed_tools: tuple[str, ...] = ()
    disallowed_tools: tuple[str, ...] = ()
    prompt: str = ""
    append_system_prompt: str = ""
    fingerprint_timeout_seconds: float = 10.0


@dataclass(frozen=True)
class AppConfig:
    api: ApiConfig
    trigger: TriggerConfig = field(default_factory=TriggerConfig)
    auth: AuthConfig = field(default_factory=AuthConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    mode_overrides: tuple[tuple[str, ModeName], ...] = ()

    def mode_for_event(self, event_name: str) -> ModeName | None:
        for configured_event, mode in self.mode_overrides:
            if configured_event == event_name:
                return mode
        return None


def load_config(path: Path) -> AppConfig:
    try:
        with path.open("rb") as fh:
            data = tomllib.load(fh)
    except FileNotFoundError as exc:
        raise ConfigError(f"Config file not found: {path}") from exc
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Config file {path} is not valid TOML: {exc}") from exc
    return parse_config(data)


def parse_config(data: dict[str, object]) -> AppConfig:
    api_data = _require_table(data, "api")
    trigger_data = _optional_table(data, "trigger") or {}
    auth_data = _optional_table(data, "auth") or {}
    agent_data = _optional_table(data, "agent") or {}
    modes_data = _optional_table(data, "modes") or {}

    api = ApiConfig(
        base_url=_require_str(api_data, "base_url").rstrip("/"),
        token_env=_str_with_default(api_data, "token_env", "API_TOKEN"),
        override_token_env=_str_with_default(
            api_data, "override_token_env", "OVERRIDE_API_TOKEN"
        ),
        timeout_seconds=_positive_float_with_default(api_data, "timeout_seconds", 20.0),
        page_size=_int_with_default(api_data, "page_size", 50),
        user_agent=_str_with_default(api_data, "user_agent", "agentprep"),
        run_url=_optional_str(api_data, "run_url"),
    )
    if api.page_size < 1 or api.page_size > 100:
        raise ConfigError("api.page_size must be between 1 and 100")

    trigger = TriggerConfig(
        phrase=_str_with_default(trigger_data, "phrase", "@claude").strip(),
        phrase_case_sensitive=_bool_with_default(trigger_data, "phrase_case_sensitive", True),
        labels=frozenset(_tuple_of_str(trigger_data, "labels")),
        assignee=_optional_login(trigger_data, "assignee"),
    )
    if not trigger.phrase:
        raise ConfigError("trigger.phrase must be a non-empty string")

    auth = AuthConfig(
        policy=_policy_with_default(auth_data, "policy", "write_access"),
        allowed_non_write_users=_logins(auth_data, "allowed_non_write_users"),
    )

    agent = AgentConfig(
        use_commit_signing=_bool_with_default(agent_data, "use_commit_signing", False),
        allowed_tools=_tuple_of_str(agent_data, "allowed_tools"),
        disallowed_tools=_tuple_of_str(agent_data, "disallowed_tools"),
        prompt=_str_or_empty(agent_data, "prompt"),
        append_system_prompt=_str_or_empty(agent_data, "append_system_prompt"),
        fingerprint_timeout_seconds=_positive_float_with_default(
            agent_data, "fingerprint_timeout_seconds", 10.0
        ),
    )

    return AppConfig(
        api=api,
        trigger=trigger,
        auth=auth,
        agent=agent,
        mode_overrides=_mode_overrides(modes_data),
    )


def resolve_api_token(config: AppConfig, environ: Mapping[str, str]) -> tuple[str, bool]:
    """Return the API token and whether an operator supplied it explicitly.

    The override variable takes precedence; only a token coming from it counts
    as operator-provided, which is what lets ``allowed_non_write_users`` bypass
    the write-access check.
    """
    override = environ.get(config.api.override_token_env, "").strip()
    if override:
        return override, True
    token = environ.get(config.api.token_env, "").strip()
    if token:
        return token, False
    raise ConfigError(
        f"{config.api.token_env} environment variable is required "
        f"(or {config.api.override_token_env})"
    )


def _mode_overrides(modes_data: dict[str, object]) -> tuple[tuple[str, ModeName], ...]:
    overrides: list[tuple[str, ModeName]] = []
    for event_name, raw_mode in sorted(modes_data.items()):
        if event_name not in ENTITY_EVENTS:
            available = ", ".join(sorted(ENTITY_EVENTS))
            raise ConfigError(
                f"Unknown event {event_name!r} in [modes]; expected one of: {available}"
            )
        if not isinstance(raw_mode, str) or raw_mode.strip().lower() not in _MODE_NAMES:
            raise ConfigError(f"modes.{event_name} must be one of: agent, tag")
        overrides.append((event_name, cast(ModeName, raw_mode.strip().lower())))
    return tuple(overrides)


def _require_table(data: dict[str, object], key: str) -> dict[str, object]:
    value = data.get(key)
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] is required and must be a TOML table")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"[{key}] must have string keys")
    return cast(dict[str, object], value)


def _optional_table(data: dict[str, object], key: str) -> dict[str, object] | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] must be a TOML table when provided")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"[{key}] must have string keys")
    return cast(dict[str, object], value)


def _require_str(data: dict[str, object], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} is required and must be a non-empty string")
    return value


def _optional_str(data: dict[str, object], key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string if provided")
    return value


def _str_or_empty(data: dict[str, object], key: str) -> str:
    value = data.get(key, "")
    if not isinstance(value, str):
        raise ConfigError(f"{key} must be a string")
    return value


def _str_with_default(data: dict[str, object], key: str, default: str) -> str:
    value = data.get(key, default)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string")
    return value


def _int_with_default(data: dict[str, object], key: str, default: int) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{key} must be an integer")
    return value


def _positive_float_with_default(data: dict[str, object], key: str, default: float) -> float:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int | float):
        raise ConfigError(f"{key} must be a number")
    if value <= 0:
        raise ConfigError(f"{key} must be > 0")
    return float(value)


def _bool_with_default(data: dict[str, object], key: str, default: bool) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"{key} must be a boolean")
    return value


def _tuple_of_str(data: dict[str, object], key: str) -> tuple[str, ...]:
    value = data.get(key, [])
    if not isinstance(value, list):
        raise ConfigError(f"{key} must be a list of strings")
    out: list[str] = []
    for item in value:
        if not isinstance(item, str) or not item.strip():
            raise ConfigError(f"{key} must be a list of non-empty strings")
        if item.strip() not in out:
            out.append(item.strip())
    return tuple(out)


def _logins(data: dict[str, object], key: str) -> frozenset[str]:
    return frozenset(item.lower() for item in _tuple_of_str(data, key))


def _optional_login(data: dict[str, object], key: str) -> str | None:
    value = _optional_str(data, key)
    if value is None:
        return None
    normalized = value.strip().removeprefix("@").strip()
    if not normalized:
        raise ConfigError(f"{key} must be a non-empty login if provided")
    return normalized


def _policy_with_default(
    data: dict[str, object], key: str, default: PermissionPolicy
) -> PermissionPolicy:
    value = data.get(key, default)
    if not isinstance(value, str) or value.strip().lower() not in _POLICIES:
        raise ConfigError(f"{key} must be one of: trusted, write_access")
    return cast(PermissionPolicy, value.strip().lower())
