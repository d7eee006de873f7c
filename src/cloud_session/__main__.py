"""CLI entry point for cloud-session."""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys
from datetime import datetime
from typing import Awaitable, Callable

from cloud_session.app import CloudSessionApp
from cloud_session.config import AppConfig, load_config
from cloud_session.core.errors import CloudSessionError
from cloud_session.core.session import SessionController
from cloud_session.core.types import Role
from cloud_session.log import setup_logging

HELP_TEXT = """Commands:
  /new            start a new conversation
  /retry          resend the last prompt
  /repos a/b c/d  scope the conversation to repositories
  /history        list recent conversations
  /restore <id>   reopen a conversation from history
  /sync           replay queued messages now
  /quit           exit
Ctrl-C cancels a running request."""


def _add_common(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("-c", "--config", default="config.yaml", help="Path to config file")
    parser.add_argument("-e", "--env", default=".env", help="Path to .env file")


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="cloud-session",
        description="Interactive client for prompt-to-pull-request sessions",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    _add_common(subparsers.add_parser("chat", help="Start an interactive conversation"))
    _add_common(subparsers.add_parser("history", help="List recent conversations"))
    _add_common(subparsers.add_parser("queue", help="Show messages waiting to be sent"))
    _add_common(subparsers.add_parser("sync", help="Replay queued messages now"))
    _add_common(subparsers.add_parser("config-check", help="Validate configuration"))

    args = parser.parse_args()

    if args.command is None:
        args.command = "chat"
        args.config = "config.yaml"
        args.env = ".env"

    if args.command == "config-check":
        _check_config(args.config, args.env)
        return

    config = _load_or_exit(args.config, args.env)
    setup_logging(config.log_level)

    commands = {
        "chat": _chat,
        "history": _history,
        "queue": _queue,
        "sync": _sync,
    }
    # Only `chat` replays the queue on start; `queue` and `sync` show it as stored.
    asyncio.run(_with_app(config, commands[args.command], sync_queued=args.command == "chat"))


def _load_or_exit(config_path: str, env_path: str) -> AppConfig:
    try:
        return load_config(config_path, env_path)
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        print("Copy config.example.yaml to config.yaml and set api.base_url", file=sys.stderr)
        sys.exit(1)
    except Exception as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)


def _check_config(config_path: str, env_path: str) -> None:
    """Validate configuration and print summary."""
    config = _load_or_exit(config_path, env_path)
    print(f"Configuration valid: {config_path}")
    print(f"  Backend     : {config.api.base_url}")
    print(f"  Auth token  : {'set' if config.api.auth_token else '(none)'}")
    print(f"  Deadline    : {config.session.request_timeout:g}s per request")
    print(f"  Storage     : {config.storage.db_path}")
    print(f"  Retention   : {config.storage.retention_hours:g}h, {config.storage.history_limit} sessions")
    print(f"  Polling     : connectivity {config.sync.connectivity_poll_seconds:g}s, "
          f"queue {config.sync.queue_poll_seconds:g}s")


async def _with_app(
    config: AppConfig, command: Callable[[CloudSessionApp], Awaitable[None]], sync_queued: bool = True
) -> None:
    app = CloudSessionApp(config)
    await app.start(sync_queued=sync_queued)
    try:
        await command(app)
    finally:
        await app.stop()


def _format_ms(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000).strftime("%Y-%m-%d %H:%M")


async def _history(app: CloudSessionApp) -> None:
    try:
        summaries = await app.controller.list_history()
    except CloudSessionError as e:
        print(f"History unavailable: {e.message}", file=sys.stderr)
        return
    if not summaries:
        print("No conversations in the last 24 hours.")
        return
    for s in summaries:
        print(f"{s.id}  {_format_ms(s.updated_at)}  {s.message_count:3d} msgs  ~{s.estimated_tokens} tokens  {s.title}")


async def _queue(app: CloudSessionApp) -> None:
    items = await app.queue.list()
    status = app.sync.status()
    print(f"{'Online' if status.is_online else 'Offline'}, {len(items)} queued")
    for item in items:
        text = item.payload.get("text", "") if isinstance(item.payload, dict) else ""
        print(f"  {item.id}  {_format_ms(item.enqueued_at)}  retries={item.retry_count}  {item.action_kind}  {text[:60]}")


async def _sync(app: CloudSessionApp) -> None:
    result = await app.controller.sync()
    if not result.success and result.processed == 0 and result.failed == 0:
        print("Nothing synced (offline or a sync is already running).")
        return
    print(f"Processed {result.processed}, failed {result.failed}")
    for item_id, error in result.errors:
        print(f"  {item_id}: {error}")


class _ConsoleRenderer:
    """Prints message list changes as they arrive."""

    def __init__(self) -> None:
        self._printed: dict[str, str] = {}

    def __call__(self, controller: SessionController) -> None:
        for message in controller.messages:
            previous = self._printed.get(message.id)
            if previous == message.content:
                continue
            if message.role == Role.ASSISTANT and previous is not None and message.content.startswith(previous):
                sys.stdout.write(message.content[len(previous):])
            elif message.role == Role.ASSISTANT:
                sys.stdout.write(f"\nassistant> {message.content}")
            elif message.role == Role.SYSTEM:
                sys.stdout.write(f"\n  [{message.content}]")
            else:
                self._printed[message.id] = message.content
                continue
            if message.role == Role.ASSISTANT and not message.streaming:
                sys.stdout.write("\n")
            sys.stdout.flush()
            self._printed[message.id] = message.content

    def reset(self, controller: SessionController) -> None:
        self._printed = {m.id: m.content for m in controller.messages}


async def _chat(app: CloudSessionApp) -> None:
    controller = app.controller
    renderer = _ConsoleRenderer()
    renderer.reset(controller)
    controller.subscribe(renderer)

    loop = asyncio.get_running_loop()

    def _on_interrupt() -> None:
        if not controller.cancel():
            print("\n(type /quit to exit)")

    try:
        loop.add_signal_handler(signal.SIGINT, _on_interrupt)
    except NotImplementedError:
        # Windows doesn't support add_signal_handler
        pass

    print(HELP_TEXT)
    if controller.messages:
        print(f"\nResumed conversation with {len(controller.messages)} messages.")

    while True:
        try:
            line = await loop.run_in_executor(None, input, "\nyou> ")
        except (EOFError, KeyboardInterrupt):
            break
        line = line.strip()
        if not line:
            continue

        command, _, argument = line.partition(" ")
        try:
            if command == "/quit":
                break
            elif command == "/help":
                print(HELP_TEXT)
            elif command == "/new":
                await controller.new_conversation()
                renderer.reset(controller)
                print("Started a new conversation.")
            elif command == "/retry":
                await controller.retry_last()
            elif command == "/repos":
                controller.set_targets(argument.split())
                print(f"Repositories: {', '.join(sorted(controller.selected_targets)) or '(none)'}")
            elif command == "/history":
                await _history(app)
            elif command == "/restore":
                await controller.restore(argument.strip())
                renderer.reset(controller)
                for message in controller.messages:
                    print(f"{message.role}> {message.content}")
            elif command == "/sync":
                await _sync(app)
            else:
                await controller.send(line)
        except CloudSessionError as e:
            print(f"Error: {e.message}", file=sys.stderr)


if __name__ == "__main__":
    main()
