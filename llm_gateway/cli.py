#!/usr/bin/env python3
"""
llm-gateway command line

    llm-gateway serve   [--settings FILE] [--host H] [--port P] [--users-dir DIR]
    llm-gateway status  [--url URL]
    llm-gateway infer   PROMPT --token T [--url URL] [--temperature X] [--stop S ...]
    llm-gateway embed   TEXT --token T [--url URL]
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from typing import Optional

from .client import GatewayClient, GatewayClientError
from .config import ConfigError, GatewayConfig
from .engine import LiteLLMEngine
from .gateway import InferenceGateway
from .users import UserConfigError, load_users

logger = logging.getLogger(__name__)

DEFAULT_URL = "http://127.0.0.1:3100"


async def serve(config: GatewayConfig, disable_signals: bool = False) -> None:
    users = load_users(config.users_dir)
    logger.info(f"Loaded {len(users)} user(s) from {config.users_dir}")

    engine = LiteLLMEngine(
        model=config.model,
        embedding_model=config.embedding_model,
        api_base=config.api_base,
        api_key=config.api_key,
        max_tool_rounds=config.max_tool_rounds,
    )
    gateway = InferenceGateway(
        config,
        users,
        engine,
        embedding_engine=engine if config.embedding_model else None,
    )

    def _graceful(sig: int, frame=None):
        if not gateway.shutdown_event.is_set():
            logger.info(f"Signal {signal.Signals(sig).name} received - initiating graceful shutdown")
            gateway.request_shutdown()

    if not disable_signals:
        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, _graceful, signal.SIGINT)
            loop.add_signal_handler(signal.SIGTERM, _graceful, signal.SIGTERM)
        except NotImplementedError:
            signal.signal(signal.SIGINT, _graceful)
            signal.signal(signal.SIGTERM, _graceful)

    try:
        await gateway.init()
        await gateway.start()
        await gateway.serve_forever()
    finally:
        await gateway.close()
        logger.info("Server shutdown complete")


async def cli_status(url: str) -> int:
    async with GatewayClient(url, timeout=10.0) as client:
        if await client.ping():
            print(f"Gateway at {url} is up")
            return 0
    print(f"Gateway at {url} is not reachable")
    return 1


async def cli_infer(url: str, token: str, prompt: str, temperature: Optional[float], stop_text) -> int:
    async def _print_chunk(chunk: str) -> None:
        sys.stdout.write(chunk)
        sys.stdout.flush()

    async with GatewayClient(url, bearer_token=token) as client:
        try:
            await client.infer(prompt, temperature=temperature, stop_text=stop_text, on_text_chunk=_print_chunk)
        except GatewayClientError as e:
            print(f"\nInference failed: {e}", file=sys.stderr)
            return 1
    print()
    return 0


async def cli_embed(url: str, token: str, text: str) -> int:
    async with GatewayClient(url, bearer_token=token) as client:
        try:
            embedding = await client.embed(text)
        except GatewayClientError as e:
            print(f"Embedding failed: {e}", file=sys.stderr)
            return 1
    print(json.dumps(embedding))
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description='LLM Gateway - inference with per-user MCP tools')
    subparsers = parser.add_subparsers(dest='command', help='Commands')

    serve_parser = subparsers.add_parser('serve', help='Start the gateway')
    serve_parser.add_argument('--settings', type=str, help='TOML settings file')
    serve_parser.add_argument('--host', type=str, help='Host/interface to bind')
    serve_parser.add_argument('--port', type=int, help='Port to listen on')
    serve_parser.add_argument('--users-dir', type=str, help='Directory of user JSON files')
    serve_parser.add_argument('--disable-signals', action='store_true', help='Do not register SIGINT/SIGTERM handlers')

    status_parser = subparsers.add_parser('status', help='Check that a gateway is up')
    status_parser.add_argument('--url', default=DEFAULT_URL, help=f'Gateway URL (default: {DEFAULT_URL})')

    infer_parser = subparsers.add_parser('infer', help='Stream an inference')
    infer_parser.add_argument('prompt')
    infer_parser.add_argument('--token', required=True, help='Bearer token')
    infer_parser.add_argument('--url', default=DEFAULT_URL)
    infer_parser.add_argument('--temperature', type=float)
    infer_parser.add_argument('--stop', action='append', dest='stop_text', help='Stop sequence (repeatable)')

    embed_parser = subparsers.add_parser('embed', help='Embed a piece of text')
    embed_parser.add_argument('text')
    embed_parser.add_argument('--token', required=True, help='Bearer token')
    embed_parser.add_argument('--url', default=DEFAULT_URL)

    args = parser.parse_args(argv)

    if args.command == 'serve':
        try:
            config = GatewayConfig.load(args.settings)
            if args.host:
                config.host = args.host
            if args.port:
                config.port = args.port
            if args.users_dir:
                config.users_dir = args.users_dir
            config.validate()
        except ConfigError as e:
            print(f"Configuration error: {e}", file=sys.stderr)
            return 2
        logging.basicConfig(
            level=getattr(logging, config.log_level.upper()),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
        try:
            asyncio.run(serve(config, disable_signals=args.disable_signals))
        except UserConfigError as e:
            logger.error(f"Failed to load users: {e}")
            return 2
        return 0

    logging.basicConfig(level=logging.WARNING)
    if args.command == 'status':
        return asyncio.run(cli_status(args.url))
    if args.command == 'infer':
        return asyncio.run(cli_infer(args.url, args.token, args.prompt, args.temperature, args.stop_text))
    if args.command == 'embed':
        return asyncio.run(cli_embed(args.url, args.token, args.text))

    parser.print_help()
    return 1


if __name__ == '__main__':
    sys.exit(main())
