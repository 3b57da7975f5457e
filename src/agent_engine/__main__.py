"""CLI entry point for agent-engine."""

from __future__ import annotations

import argparse
import asyncio
import json
import signal
import sys

from agent_engine.ai.agent import ChatRequest
from agent_engine.app import AgentApp
from agent_engine.config import AppConfig, load_config
from agent_engine.core.models import ToolResult
from agent_engine.log import setup_logging


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="agent-engine",
        description="Streaming, tool-calling agent loop over Anthropic, OpenAI, Gemini and Ollama models",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # chat command
    chat_parser = subparsers.add_parser("chat", help="Run one chat turn and stream its events")
    chat_parser.add_argument(
        "-c", "--config", default="config.yaml", help="Path to config file"
    )
    chat_parser.add_argument(
        "-e", "--env", default=".env", help="Path to .env file"
    )
    chat_parser.add_argument(
        "-s", "--session", default="", help="Session id (omit for a stateless turn)"
    )
    chat_parser.add_argument(
        "--answer",
        action="append",
        default=[],
        metavar="TOOL_CALL_ID=TEXT",
        help="Answer a pending input request instead of sending a prompt (repeatable)",
    )
    chat_parser.add_argument("prompt", nargs="?", default="", help="User prompt")

    # config-check command
    check_parser = subparsers.add_parser("config-check", help="Validate configuration")
    check_parser.add_argument(
        "-c", "--config", default="config.yaml", help="Path to config file"
    )
    check_parser.add_argument(
        "-e", "--env", default=".env", help="Path to .env file"
    )

    # model-info command
    model_parser = subparsers.add_parser("model-info", help="Show model capabilities")
    model_parser.add_argument(
        "-c", "--config", default="config.yaml", help="Path to config file"
    )
    model_parser.add_argument(
        "-e", "--env", default=".env", help="Path to .env file"
    )

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    if args.command == "config-check":
        _check_config(args.config, args.env)
    elif args.command == "model-info":
        _model_info(args.config, args.env)
    elif args.command == "chat":
        _chat(args.config, args.env, args.session, args.prompt, args.answer)


def _load(config_path: str, env_path: str) -> AppConfig:
    try:
        return load_config(config_path, env_path)
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        print("Copy config.example.yaml to config.yaml and edit it")
        sys.exit(1)
    except Exception as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)


def _check_config(config_path: str, env_path: str) -> None:
    """Validate configuration and print summary."""
    config = _load(config_path, env_path)
    print(f"Configuration valid: {config_path}")
    print(f"  Data directory: {config.data_dir}")
    print(f"  Provider: {config.provider.backend} ({config.provider.model})")
    print(f"  Max iterations: {config.agent.max_iterations}")
    print(f"  Planning tools: {config.agent.enable_planning}")
    print(f"  User input tool: {config.agent.enable_user_input}")
    storage = config.storage
    location = {"file": storage.dir, "sqlite": storage.db_path}.get(storage.backend, "-")
    print(f"  Storage: {storage.backend} {location}")


def _model_info(config_path: str, env_path: str) -> None:
    """Show the configured model's static capabilities."""
    config = _load(config_path, env_path)
    try:
        app = AgentApp(config)
    except Exception as e:
        print(f"Provider error: {e}", file=sys.stderr)
        sys.exit(1)

    caps = app.model.capabilities()
    print("AI Model Configuration")
    print("=" * 50)
    print(f"  Id       : {app.model.id}")
    print(f"  Tools    : {caps.supports_tools}")
    print(f"  Streaming: {caps.supports_streaming}")
    print(f"  Vision   : {caps.supports_vision}")
    print(f"  Context  : {caps.max_context_tokens}")
    print(f"  Output   : {caps.max_output_tokens}")
    print(f"  Temp     : {config.provider.temperature}")
    print()


def _parse_answers(answers: list[str]) -> list[ToolResult]:
    results = []
    for answer in answers:
        tool_call_id, sep, text = answer.partition("=")
        if not sep or not tool_call_id:
            print(f"Invalid --answer value: {answer!r} (expected TOOL_CALL_ID=TEXT)", file=sys.stderr)
            sys.exit(2)
        results.append(ToolResult(tool_call_id=tool_call_id, content=text))
    return results


def _chat(config_path: str, env_path: str, session_id: str, prompt: str, answers: list[str]) -> None:
    """Run one chat call, printing each event as a JSON line on stdout."""
    config = _load(config_path, env_path)
    setup_logging(config.log_level, json_output=config.json_logs)
    request = ChatRequest(prompt=prompt, session_id=session_id, tool_results=_parse_answers(answers))
    if not request.prompt and not request.tool_results:
        print("Nothing to send: give a prompt or at least one --answer", file=sys.stderr)
        sys.exit(2)

    async def _async_main() -> int:
        loop = asyncio.get_running_loop()
        cancel_event = asyncio.Event()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, cancel_event.set)
            except NotImplementedError:
                # Windows doesn't support add_signal_handler
                signal.signal(sig, lambda s, f: cancel_event.set())

        async with AgentApp(config) as app:
            agent = app.create_agent(cancel_event=cancel_event)
            stream = await agent.chat(request)
            async for event in stream:
                print(json.dumps(event.to_dict(), ensure_ascii=False), flush=True)
            error = stream.err()
        if error is not None:
            print(f"Error: {error}", file=sys.stderr)
            return 1
        return 0

    sys.exit(asyncio.run(_async_main()))


if __name__ == "__main__":
    main()
