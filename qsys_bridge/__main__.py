"""Command line entry point: ``qsys-bridge [mcp|serve]``"""

from typing import List, Optional
import argparse
import sys

import structlog

from qsys_bridge.domain.orchestration.bridge_orchestrator import BridgeOrchestrator
from qsys_bridge.infrastructure.config.settings import load_config
from qsys_bridge.infrastructure.observability.logging import setup_logging

logger = structlog.get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="qsys-bridge", description="Q-SYS control bridge")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("mcp", help="Serve tools over MCP stdio (default)")

    serve = subparsers.add_parser("serve", help="Serve tools over HTTP and WebSocket")
    serve.add_argument("--bind", default="127.0.0.1", help="Interface to listen on")
    serve.add_argument("--listen-port", type=int, default=8000, help="HTTP port to listen on")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    config = load_config()
    setup_logging(config.log_level, config.log_format)

    orchestrator = BridgeOrchestrator(config)
    command = args.command or "mcp"
    logger.info("Starting qsys-bridge", command=command, host=config.host)

    if command == "serve":
        import uvicorn
        from qsys_bridge.application.websocket.ws_server import create_app

        uvicorn.run(create_app(orchestrator), host=args.bind, port=args.listen_port, log_config=None)
    else:
        from qsys_bridge.application.mcp.mcp_server import run_stdio

        run_stdio(orchestrator)

    return 0


if __name__ == "__main__":
    sys.exit(main())
