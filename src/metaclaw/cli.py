"""
Command-line interface for metaclaw.
"""

import argparse
import asyncio
import logging
import signal
import sys

import structlog

from .agent.events import EventBus, EventType
from .agent.session import SessionManager
from .config import Settings, get_settings
from .memory.workspace import WorkspaceStore

logger = structlog.get_logger()

EXIT_COMMANDS = {"/exit", "/quit"}


def configure_logging(level: str = "INFO") -> None:
    """Route structlog through stdlib logging at ``level``."""
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, level.upper(), logging.INFO),
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="metaclaw",
        description="metaclaw - a long-lived personal agent with semantic memory",
    )
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    chat_parser = subparsers.add_parser("chat", help="Chat with a session interactively")
    chat_parser.add_argument("--session", default="default", help="Session id")

    history_parser = subparsers.add_parser("history", help="Print a session's turn log")
    history_parser.add_argument("--session", default="default", help="Session id")

    memory_parser = subparsers.add_parser("memory", help="Show or clear a session's memory")
    memory_parser.add_argument("--session", default="default", help="Session id")
    memory_parser.add_argument("--clear", action="store_true", help="Delete all vector memories")
    memory_parser.add_argument("--limit", type=int, default=20, help="Entries to list")

    config_parser = subparsers.add_parser("config", help="Show configuration")
    config_parser.add_argument("--check", action="store_true", help="Check configuration validity")

    return parser


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    settings = get_settings()
    configure_logging(args.log_level or settings.log_level)

    if args.command == "chat":
        asyncio.run(run_chat(settings, args.session))
    elif args.command == "history":
        show_history(settings, args.session)
    elif args.command == "memory":
        asyncio.run(show_memory(settings, args.session, args.clear, args.limit))
    elif args.command == "config":
        if not show_config(settings, args.check):
            sys.exit(1)
    else:
        parser.print_help()


async def _print_stream(events: EventBus, session_id: str) -> None:
    queue = events.subscribe(session_id)
    try:
        while True:
            event = await queue.get()
            if event.type == EventType.STREAM and event.data.get("kind") == "content":
                print(event.data["chunk"], end="", flush=True)
            elif event.type == EventType.TOOL_CALL:
                names = ", ".join(t["name"] for t in event.data["tools"])
                print(f"\n[tools: {names}]", flush=True)
            elif event.type == EventType.SYSTEM:
                print(f"\n[{event.data.get('message')}]", flush=True)
    finally:
        events.unsubscribe(queue)


async def run_chat(settings: Settings, session_id: str) -> None:
    """Interactive REPL on one session. Ctrl-C cancels the running turn."""
    manager = SessionManager(settings)
    agent = manager.start_session(session_id)
    printer = asyncio.create_task(_print_stream(manager.events, session_id))
    print(f"metaclaw session '{session_id}'. Type /exit to quit.\n")

    try:
        while True:
            try:
                line = await asyncio.to_thread(input, "> ")
            except EOFError:
                break
            line = line.strip()
            if not line:
                continue
            if line in EXIT_COMMANDS:
                break

            loop = asyncio.get_running_loop()
            loop.add_signal_handler(signal.SIGINT, agent.cancel_processing)
            try:
                await agent.process_message(line, channel_id="cli")
            finally:
                loop.remove_signal_handler(signal.SIGINT)
            print("\n")
    finally:
        printer.cancel()
        await manager.stop_all()


def show_history(settings: Settings, session_id: str) -> None:
    store = WorkspaceStore(settings.workspace_for(session_id))
    turns = store.load_all_turns()
    if not turns:
        print("No history.")
        return
    for message in turns:
        text = message.text
        if message.tool_calls:
            calls = ", ".join(tc.name for tc in message.tool_calls)
            text = f"{text} [calls: {calls}]".strip()
        label = f"{message.role}:{message.name}" if message.name else message.role
        print(f"{label:<20} {text[:200]}")


async def show_memory(settings: Settings, session_id: str, clear: bool, limit: int) -> None:
    manager = SessionManager(settings)
    agent = manager.start_session(session_id)
    try:
        if clear:
            await agent.clear_memory()
            print(f"Cleared vector memory of session '{session_id}'.")
            return

        print(f"{agent.memory.count()} entries in vector memory\n")
        for entry in agent.memory.list_entries(limit):
            meta = entry.metadata
            print(
                f"{entry.id[:8]}  {meta.timestamp[:19]}  {meta.type:<6} "
                f"sal={meta.salience:.2f} rc={meta.recall_count}  {entry.text[:100]}"
            )

        quick = agent.quick_memory.read().strip()
        print("\nMEMORY.md:")
        print(quick or "(empty)")
    finally:
        await manager.stop_all()


def show_config(settings: Settings, check: bool) -> bool:
    """Print the configuration; with ``check`` report problems. Returns validity."""

    def mask(value: str) -> str:
        if not value:
            return "(not set)"
        return value[:4] + "..." + value[-4:] if len(value) > 10 else "****"

    llm_config = settings.get_llm_config()

    print("\n=== metaclaw Configuration ===\n")
    print(f"  Log level: {settings.log_level}")
    print(f"  Workspace root: {settings.workspace_root}")
    print(f"  Sessions: {', '.join(settings.session_ids) or '(none)'}")
    print(f"  Restrict to workspace: {settings.restrict_to_workspace}")
    print(f"  Self-modification: {settings.allow_self_modify}")

    print("\nLLM:")
    print(f"  Provider: {llm_config.provider}")
    print(f"  Model: {llm_config.model}")
    print(f"  Context window: {llm_config.context_window}")
    print(f"  Anthropic Key: {mask(settings.anthropic_api_key)}")
    print(f"  OpenAI Key: {mask(settings.openai_api_key)}")
    print(f"  OpenRouter Key: {mask(settings.openrouter_api_key)}")
    print(f"  Embedding model: {llm_config.embedding_model}")

    print("\nContext:")
    print(f"  Compression threshold: {settings.context.compression_threshold}")
    print(f"  Keep recent: {settings.context.keep_recent_messages}")
    print(f"  Cap: {settings.context.cap or '(provider window)'}")
    print(f"  Max iterations: {settings.context.max_iterations}")

    print("\nRecall:")
    recall = settings.recall
    print(f"  Enabled: {recall.enabled}")
    print(f"  Limit: {recall.limit}, min similarity: {recall.min_similarity}")
    print(f"  Weights: salience={recall.salience_weight}, recall={recall.recall_weight}, decay={recall.decay_rate}")

    if not check:
        return True

    print("\n=== Configuration Check ===\n")
    problems = settings.validate_provider()
    if problems:
        print("Errors:")
        for p in problems:
            print(f"   - {p}")
        return False
    print("Configuration looks good!")
    return True


if __name__ == "__main__":
    main()
