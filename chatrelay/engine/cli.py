"""CLI entry point for chatrelay.

Usage:
    chatrelay run "Fix the failing test"
    chatrelay run --chat 42 --topic 7 --agent claude "Explain this module"
    chatrelay reset --chat 42
    chatrelay sessions --cwd ~/src/project --limit 20
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from chatrelay.adapters.events import (
    ErrorEvent,
    OutputTextEvent,
    ProgressEvent,
    event_to_dict,
)
from chatrelay.shared.services.codex_sessions import CodexSessionStore, normalize_cwd
from chatrelay.shared.services.conversation_state import (
    ConversationState,
    build_thread_key,
)

from .config import EngineConfig
from .errors import TurnError
from .models import TurnRequest
from .providers.registry import build_provider_registry

DEFAULT_CHAT_ID = "cli"


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="chatrelay",
        description="Relay chat messages to local coding-agent CLIs",
    )
    parser.add_argument(
        "--config", "-c",
        default=None,
        help="YAML config file (default: RELAY_* environment variables)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging and print progress events to stderr",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run_p = sub.add_parser("run", help="Run one turn and print the reply")
    run_p.add_argument("prompt", help="Message to send to the agent")
    run_p.add_argument("--chat", default=DEFAULT_CHAT_ID, help="Conversation id")
    run_p.add_argument("--topic", default=None, help="Topic within the conversation")
    run_p.add_argument("--agent", default=None, help="Agent name (default: from config)")
    run_p.add_argument("--cwd", default=None, help="Project directory for a new session")

    reset_p = sub.add_parser("reset", help="Forget a conversation's session")
    reset_p.add_argument("--chat", default=DEFAULT_CHAT_ID)
    reset_p.add_argument("--topic", default=None)
    reset_p.add_argument("--agent", default=None)

    sessions_p = sub.add_parser("sessions", help="List local codex sessions")
    sessions_p.add_argument("--cwd", default="", help="Only sessions in this directory")
    sessions_p.add_argument("--limit", type=int, default=10)
    sessions_p.add_argument(
        "--since-index",
        action="store_true",
        help="Read the sqlite thread index instead of the session logs",
    )

    args = parser.parse_args(argv)

    config, agents = _load_config(args.config)
    level = logging.DEBUG if args.verbose else getattr(
        logging, config.log_level.upper(), logging.INFO
    )
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
    )

    if args.command == "sessions":
        _list_sessions(config, args.cwd, args.limit, args.since_index)
        return

    state = ConversationState(config.state_dir)
    state.load()
    registry = build_provider_registry(config, agents)

    # Imported here so `chatrelay sessions` stays light.
    from .orchestrator import TurnOrchestrator

    orchestrator = TurnOrchestrator(config, registry, state)

    if args.command == "reset":
        cleared = asyncio.run(_reset(orchestrator, args))
        print("Conversation reset." if cleared else "Nothing to reset.")
        return

    if args.cwd:
        state.set_project_override(
            build_thread_key(args.chat, args.topic, args.agent or config.default_agent),
            normalize_cwd(args.cwd),
        )

    on_event = _print_event if args.verbose else None
    try:
        result = asyncio.run(_run(orchestrator, args, on_event))
    except TurnError as exc:
        print(f"Error ({exc.kind.value}): {exc}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        sys.exit(130)

    print(result.text)
    if result.thread_id:
        print(f"\n[session {result.thread_id} in {result.cwd}]", file=sys.stderr)


def _load_config(path: str | None):
    if not path:
        return EngineConfig.from_env(), {}
    from .yaml_config import load_yaml_config

    relay_config = load_yaml_config(path)
    return relay_config.engine, relay_config.agents


async def _run(orchestrator, args, on_event):
    try:
        return await orchestrator.submit(
            TurnRequest(
                chat_id=args.chat,
                prompt=args.prompt,
                topic_id=args.topic,
                agent_id=args.agent,
            ),
            on_event=on_event,
        )
    finally:
        if args.cwd:
            orchestrator.state.schedule_persist_project_overrides()
        await orchestrator.state.flush()


async def _reset(orchestrator, args) -> bool:
    cleared = orchestrator.reset_conversation(args.chat, args.topic, args.agent)
    await orchestrator.state.flush()
    return cleared


async def _print_event(event: ProgressEvent) -> None:
    if isinstance(event, OutputTextEvent):
        return
    if isinstance(event, ErrorEvent):
        print(f"! {event.kind}: {event.message}", file=sys.stderr)
        return
    payload = event_to_dict(event)
    kind = payload.pop("event", "event")
    detail = " ".join(f"{k}={v}" for k, v in payload.items() if v)
    print(f"- {kind} {detail}", file=sys.stderr)


def _list_sessions(config: EngineConfig, cwd: str, limit: int, from_index: bool) -> None:
    store = CodexSessionStore(config.codex_sessions_dir, config.codex_index_path)
    if from_index:
        sessions = store.list_index_threads(cwd, limit=limit)
    else:
        sessions = store.list_sessions(cwd, limit)
    if not sessions:
        print("No sessions found.")
        return
    for s in sessions:
        created = s.created_at.isoformat(timespec="seconds") if s.created_at else "-"
        print(f"{s.id}  {created}  {s.source.value:<7}  {s.cwd}  {s.display_name}")


if __name__ == "__main__":
    main()
