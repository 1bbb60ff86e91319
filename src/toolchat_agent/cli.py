"""
Command-line interface for Toolchat-Agent.
"""

import argparse
import asyncio
import sys
from pathlib import Path
from uuid import uuid4

import structlog
import uvicorn

from .config import get_settings
from .log_config import configure_logging

logger = structlog.get_logger()


def main() -> None:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        prog="toolchat",
        description="Toolchat-Agent - streaming chat agent with tool calling",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    settings = get_settings()

    serve_parser = subparsers.add_parser("serve", help="Start the API server")
    serve_parser.add_argument("--host", default=settings.host, help="Host to bind to")
    serve_parser.add_argument("--port", type=int, default=settings.port, help="Port to bind to")
    serve_parser.add_argument("--reload", action="store_true", help="Enable auto-reload")

    chat_parser = subparsers.add_parser("chat", help="Chat with the agent in the terminal")
    chat_parser.add_argument("--no-tools", action="store_true", help="Disable tool calling")
    chat_parser.add_argument("--session", default=None, help="Session id to resume")

    subparsers.add_parser("tools", help="List available tools")

    config_parser = subparsers.add_parser("config", help="Show configuration")
    config_parser.add_argument("--check", action="store_true", help="Check configuration validity")

    subparsers.add_parser("init", help="Create a .env file and the data directory")

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    configure_logging(
        "WARNING" if args.command == "chat" else settings.log_level,
        json=settings.log_json,
    )

    if args.command == "serve":
        run_server(args.host, args.port, args.reload)
    elif args.command == "chat":
        asyncio.run(chat_loop(args.session, enable_tools=not args.no_tools))
    elif args.command == "tools":
        list_tools()
    elif args.command == "config":
        show_config(args.check)
    elif args.command == "init":
        init_project()
    else:
        parser.print_help()


def run_server(host: str, port: int, reload: bool) -> None:
    """Run the FastAPI server."""
    settings = get_settings()
    logger.info("Starting Toolchat-Agent server", host=host, port=port)

    uvicorn.run(
        "toolchat_agent.api.app:create_app",
        host=host,
        port=port,
        reload=reload,
        factory=True,
        log_level=settings.log_level.lower(),
        ws_ping_interval=settings.ws_ping_interval_seconds,
    )


def list_tools() -> None:
    """Print the built-in tools."""
    from .tools import create_default_registry

    registry = create_default_registry()
    print(f"\n=== Tools ({len(registry)}) ===\n")
    for spec in registry.list():
        params = ", ".join(spec.parameters.get("properties", {}))
        print(f"  {spec.name}({params})")
        print(f"      {spec.description}")


async def chat_loop(session_id: str | None, enable_tools: bool = True) -> None:
    """Interactive terminal chat using the streaming agent."""
    from .agent import (
        Agent,
        ClientMetadata,
        TokenEvent,
        ToolCallEvent,
        ToolProgressUpdate,
        ToolResultEvent,
        create_session_store,
    )
    from .api.turns import TurnRunner

    settings = get_settings()
    if not settings.openai_api_key:
        print("OPENAI_API_KEY is not set. Run: toolchat config --check")
        return

    store = await create_session_store(settings)
    runner = TurnRunner(Agent(settings=settings), store, record_annotations=False)
    metadata = ClientMetadata(timezone=settings.default_timezone, locale=settings.default_locale)
    session_id = session_id or str(uuid4())

    print(f"Session: {session_id}")
    print("Type 'exit' to quit, 'clear' to reset the conversation.\n")

    try:
        while True:
            try:
                line = await asyncio.to_thread(input, "you> ")
            except (EOFError, KeyboardInterrupt):
                print()
                break

            message = line.strip()
            if not message:
                continue
            if message in ("exit", "quit"):
                break
            if message == "clear":
                await store.clear_messages(session_id)
                print("Chat history cleared\n")
                continue

            print("assistant> ", end="", flush=True)
            turn = runner.start_turn(session_id, message, enable_tools=enable_tools, metadata=metadata)
            async for event in turn:
                if isinstance(event, TokenEvent):
                    print(event.content, end="", flush=True)
                elif isinstance(event, ToolCallEvent):
                    print(f"\n  [tool] {event.name} {event.args}", flush=True)
                elif isinstance(event, ToolProgressUpdate):
                    print(f"  [..] {event.message}", flush=True)
                elif isinstance(event, ToolResultEvent):
                    print(f"  [done] {event.result}", flush=True)
            print("\n")
    finally:
        await runner.aclose()
        await store.close()


def show_config(check: bool) -> None:
    """Show current configuration."""
    settings = get_settings()

    def mask(value: str) -> str:
        if not value:
            return "(not set)"
        return value[:4] + "..." + value[-4:] if len(value) > 10 else "****"

    print("\n=== Toolchat-Agent Configuration ===\n")

    print("Server:")
    print(f"  Host: {settings.host}")
    print(f"  Port: {settings.port}")
    print(f"  Debug: {settings.debug}")
    print(f"  CORS Origins: {settings.cors_origins or '(none)'}")
    print(f"  WebSocket Ping Interval: {settings.ws_ping_interval_seconds}s")

    print("\nCompletion Provider:")
    print(f"  Model: {settings.openai_model}")
    print(f"  Base URL: {settings.openai_base_url or '(default)'}")
    print(f"  API Key: {mask(settings.openai_api_key)}")
    print(f"  Temperature: {settings.openai_temperature}")
    print(f"  Max Tokens: {settings.openai_max_tokens}")

    print("\nSessions:")
    print(f"  Backend: {settings.session_backend}")
    print(f"  Timeout: {settings.session_timeout_hours}h")
    print(f"  Sweep Interval: {settings.session_sweep_interval_minutes}min")
    if settings.session_backend == "sql":
        print(f"  Database URL: {settings.database_url}")

    print("\nClient Defaults:")
    print(f"  Timezone: {settings.default_timezone}")
    print(f"  Locale: {settings.default_locale}")

    if check:
        print("\n=== Configuration Check ===\n")
        errors = []
        warnings = []

        if not settings.openai_api_key:
            errors.append("OPENAI_API_KEY is required")

        if settings.cors_origins == "*":
            warnings.append("CORS allows any origin - set CORS_ORIGINS in production")

        if settings.session_backend == "memory":
            warnings.append("In-memory sessions are lost on restart - set SESSION_BACKEND=sql to persist")

        if errors:
            print("❌ Errors:")
            for e in errors:
                print(f"   - {e}")

        if warnings:
            print("⚠️  Warnings:")
            for w in warnings:
                print(f"   - {w}")

        if not errors and not warnings:
            print("✅ Configuration looks good!")
        elif not errors:
            print("\n✅ Configuration is valid (with warnings)")
        else:
            print("\n❌ Configuration has errors - fix them before starting")


def init_project() -> None:
    """Create a starter .env file and the data directory."""
    env_file = Path(".env")
    data_dir = Path("data")

    data_dir.mkdir(exist_ok=True)

    if not env_file.exists():
        env_content = """# Toolchat-Agent Configuration

# === REQUIRED ===

OPENAI_API_KEY=

# === OPTIONAL ===

# OPENAI_MODEL=gpt-4o-mini
# OPENAI_BASE_URL=https://api.openai.com/v1

# Sessions: memory or sql
SESSION_BACKEND=memory
# DATABASE_URL=sqlite+aiosqlite:///./data/chatbot.db
# SESSION_TIMEOUT_HOURS=24

# Server
HOST=0.0.0.0
PORT=3000
CORS_ORIGINS=*
LOG_LEVEL=INFO
"""
        env_file.write_text(env_content)
        print(f"✅ Created {env_file}")
    else:
        print(f"ℹ️  {env_file} already exists")

    print(f"✅ Created {data_dir}")
    print("\n=== Next Steps ===")
    print("1. Edit .env and add your OPENAI_API_KEY")
    print("2. Run: toolchat serve")
    print("3. Connect a client to ws://localhost:3000/ws or try: toolchat chat")


if __name__ == "__main__":
    main()
