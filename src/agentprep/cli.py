from __future__ import annotations

import argparse
import asyncio
from collections.abc import Mapping
import json
import os
from pathlib import Path
import sys
from typing import NoReturn, cast

from agentprep.config import AppConfig, ConfigError, load_config, resolve_api_token
from agentprep.gateway import ForgeAPIError, ForgeGateway, ForgeResponseShapeError
from agentprep.models import EventContext
from agentprep.observability import configure_logging
from agentprep.permissions import AuthorizationError
from agentprep.prepare import PrepareResult, prepare
from agentprep.snapshot import SnapshotFetchError, git_blob_hasher
from agentprep.temporal import TriggerTimeError
from agentprep.webhook import WebhookPayloadError, parse_event_context


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="agentprep")
    subparsers = parser.add_subparsers(dest="command", required=True)

    prepare_parser = subparsers.add_parser(
        "prepare",
        help="Evaluate a webhook event and emit the vetted discussion snapshot as JSON",
    )
    prepare_parser.add_argument("--config", type=Path, default=Path("agentprep.toml"))
    prepare_parser.add_argument(
        "--event-name",
        help="Webhook event name (defaults to $GITHUB_EVENT_NAME)",
    )
    prepare_parser.add_argument(
        "--event-path",
        type=Path,
        help="Path to the webhook payload JSON (defaults to $GITHUB_EVENT_PATH)",
    )
    prepare_parser.add_argument(
        "--prompt",
        help="Explicit prompt; overrides agent.prompt from the config",
    )
    prepare_parser.add_argument(
        "--workdir",
        type=Path,
        default=Path("."),
        help="Checkout used to fingerprint changed files",
    )
    prepare_parser.add_argument(
        "--output",
        type=Path,
        help="Write the result JSON here instead of stdout",
    )
    prepare_parser.add_argument(
        "-v",
        "--verbose",
        nargs="?",
        const="high",
        choices=("low", "high"),
        help="Enable runtime logging to stderr",
    )
    prepare_parser.add_argument("--log-dir", type=Path, help="Also write logs to this directory")

    return parser


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose, log_dir=args.log_dir)

    if args.command == "prepare":
        try:
            result = _cmd_prepare(args, os.environ)
        except AuthorizationError as exc:
            _fail("not authorized", exc)
        except TriggerTimeError as exc:
            _fail("invalid trigger time", exc)
        except WebhookPayloadError as exc:
            _fail("invalid event payload", exc)
        except ConfigError as exc:
            _fail("configuration error", exc)
        except (SnapshotFetchError, ForgeAPIError, ForgeResponseShapeError) as exc:
            _fail("fetch failed", exc)
        _write_result(result, args.output)
        return

    raise RuntimeError(f"Unknown command: {args.command}")


def _cmd_prepare(args: argparse.Namespace, environ: Mapping[str, str]) -> PrepareResult:
    config = load_config(args.config)
    event_name = args.event_name or environ.get("GITHUB_EVENT_NAME", "")
    if not event_name:
        raise ConfigError("--event-name or GITHUB_EVENT_NAME is required")
    event_path = args.event_path or _optional_path(environ.get("GITHUB_EVENT_PATH"))
    if event_path is None:
        raise ConfigError("--event-path or GITHUB_EVENT_PATH is required")

    payload = _load_payload(event_path)
    context = parse_event_context(event_name, payload, config=config, prompt_override=args.prompt)
    token, token_provided = resolve_api_token(config, environ)
    return asyncio.run(
        _run_prepare(
            config=config,
            token=token,
            token_provided=token_provided,
            workdir=args.workdir,
            context=context,
        )
    )


async def _run_prepare(
    *,
    config: AppConfig,
    token: str,
    token_provided: bool,
    workdir: Path,
    context: EventContext,
) -> PrepareResult:
    async with ForgeGateway(config.api, context.repository, token=token) as gateway:
        return await prepare(
            context,
            config=config,
            client=gateway,
            token_provided=token_provided,
            hasher=git_blob_hasher(
                workdir, timeout_seconds=config.agent.fingerprint_timeout_seconds
            ),
        )


def _load_payload(path: Path) -> dict[str, object]:
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise WebhookPayloadError(f"Event payload file not found: {path}") from exc
    except json.JSONDecodeError as exc:
        raise WebhookPayloadError(f"Event payload {path} is not valid JSON: {exc}") from exc
    if not isinstance(raw, dict):
        raise WebhookPayloadError(f"Event payload {path} must be a JSON object")
    return cast(dict[str, object], raw)


def _optional_path(value: str | None) -> Path | None:
    if not value:
        return None
    return Path(value)


def _write_result(result: PrepareResult, output: Path | None) -> None:
    rendered = json.dumps(result.to_json_dict(), indent=2, sort_keys=True)
    if output is None:
        print(rendered)
        return
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(f"{rendered}\n", encoding="utf-8")


def _fail(check: str, exc: Exception) -> NoReturn:
    print(f"agentprep: {check}: {exc}", file=sys.stderr)
    raise SystemExit(1)
