# llm_gateway/cli.py
# SPDX-License-Identifier: Apache-2.0
"""
llm-gateway CLI

Small operator entrypoint over :class:`~llm_gateway.dispatcher.Dispatcher`:
list models, probe provider health, or send one chat message.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from typing import List, Optional

from llm_gateway.config import load_configs
from llm_gateway.context import make_ctx
from llm_gateway.dispatcher import Dispatcher
from llm_gateway.errors import LLMError
from llm_gateway.metrics import MetricsExporter
from llm_gateway.metrics_console import ConsoleMetrics
from llm_gateway.types import ChatRequest, Message, StreamEventType

CONFIG_ENV = "LLM_GATEWAY_CONFIG"


# --------------------------------------------------------------------------- #
# Internal helpers
# --------------------------------------------------------------------------- #

def _new_dispatcher(with_metrics: bool) -> Dispatcher:
    sinks = [MetricsExporter(ConsoleMetrics(output_file=sys.stderr))] if with_metrics else []
    return Dispatcher(metrics_sinks=sinks)


def _register_providers(dispatcher: Dispatcher, config_path: Optional[str]) -> None:
    if not config_path:
        raise LLMError(f"no config file given (use --config or set {CONFIG_ENV})")
    for cfg in load_configs(config_path):
        dispatcher.register(cfg.name, cfg)


async def _cmd_models(dispatcher: Dispatcher, names: List[str]) -> int:
    rc = 0
    for name in names or dispatcher.list():
        try:
            models = await dispatcher.list_models(make_ctx(), name)
        except LLMError as err:
            print(f"{name}: error: {err}", file=sys.stderr)
            rc = 1
            continue
        print(f"{name}:")
        for m in models:
            window = f" ctx={m.context_window}" if m.context_window else ""
            print(f"  {m.id:<32} {m.name}{window}")
    return rc


async def _cmd_health(dispatcher: Dispatcher, timeout_ms: Optional[int]) -> int:
    results = await dispatcher.health_check_all(make_ctx(timeout_ms=timeout_ms))
    rc = 0
    for name in sorted(results):
        err = results[name]
        if err is None:
            print(f"{name:<20} OK")
        else:
            print(f"{name:<20} FAIL {err.kind.value}: {err.message}")
            rc = 1
    return rc


async def _cmd_chat(dispatcher: Dispatcher, args: argparse.Namespace) -> int:
    messages = []
    if args.system:
        messages.append(Message("system", args.system))
    messages.append(Message("user", args.message))
    request = ChatRequest(
        model=args.model,
        messages=messages,
        temperature=args.temperature,
        max_tokens=args.max_tokens,
        stream=args.stream,
    )
    ctx = make_ctx(timeout_ms=args.timeout_ms)

    if not args.stream:
        result = await dispatcher.generate(ctx, args.provider, request)
        print(result.text)
        u = result.usage
        print(
            f"[tokens prompt={u.prompt_tokens} completion={u.completion_tokens} total={u.total_tokens}]",
            file=sys.stderr,
        )
        return 0

    stream = await dispatcher.generate_stream(ctx, args.provider, request)
    async with stream:
        async for event in stream:
            if event.type is StreamEventType.DELTA:
                sys.stdout.write(event.delta)
                sys.stdout.flush()
            elif event.type is StreamEventType.ERROR:
                print(f"\nerror: {event.error_kind.value}: {event.error_message}", file=sys.stderr)
                return 1
    print()
    return 0


async def _run(args: argparse.Namespace) -> int:
    dispatcher = _new_dispatcher(args.metrics)
    try:
        _register_providers(dispatcher, args.config)
        if args.command == "models":
            return await _cmd_models(dispatcher, args.provider or [])
        if args.command == "health":
            return await _cmd_health(dispatcher, args.timeout_ms)
        if args.command == "chat":
            return await _cmd_chat(dispatcher, args)
        print(f"error: unknown command '{args.command}'", file=sys.stderr)
        return 2
    finally:
        await dispatcher.close()


# --------------------------------------------------------------------------- #
# Entrypoint
# --------------------------------------------------------------------------- #

def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="llm-gateway - talk to configured LLM providers",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  llm-gateway -c providers.json models
  llm-gateway -c providers.json health --timeout-ms 5000
  llm-gateway -c providers.json chat -p openai -m gpt-4o-mini "hello"
  llm-gateway -c providers.json --metrics chat -p claude -m claude-3-haiku-20240307 --stream "hi"

Configuration:
  LLM_GATEWAY_CONFIG=path   Default for --config
  The file holds {"providers": [{"kind": "openai", "name": "openai", "api_key": "..."}]}
        """.strip(),
    )
    parser.add_argument(
        "-c", "--config",
        default=os.environ.get(CONFIG_ENV),
        help="JSON provider config file",
    )
    parser.add_argument(
        "--metrics", action="store_true",
        help="Print canonical metrics to stderr",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true",
        help="Debug logging",
    )

    subparsers = parser.add_subparsers(
        dest="command",
        required=True,
        help="command to execute",
        metavar="COMMAND",
    )

    models_parser = subparsers.add_parser("models", help="List models per provider")
    models_parser.add_argument(
        "-p", "--provider",
        action="append",
        help="Provider name (can be used multiple times; default all)",
    )

    health_parser = subparsers.add_parser("health", help="Probe every provider")
    health_parser.add_argument("--timeout-ms", type=int, default=10_000)

    chat_parser = subparsers.add_parser("chat", help="Send one message")
    chat_parser.add_argument("-p", "--provider", required=True, help="Provider name")
    chat_parser.add_argument("-m", "--model", required=True, help="Model id")
    chat_parser.add_argument("-s", "--system", help="Optional system prompt")
    chat_parser.add_argument("-t", "--temperature", type=float)
    chat_parser.add_argument("--max-tokens", type=int)
    chat_parser.add_argument("--timeout-ms", type=int, default=60_000)
    chat_parser.add_argument("--stream", action="store_true", help="Stream the reply")
    chat_parser.add_argument("message", help="User message")

    try:
        args = parser.parse_args(argv)
    except SystemExit as e:
        return e.code

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        return asyncio.run(_run(args))
    except LLMError as err:
        print(f"error: {err}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
