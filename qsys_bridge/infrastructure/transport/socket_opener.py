"""
Transport socket to the remote engine.

Opens the WebSocket the engine client speaks over. Certificates are not
verified: engines commonly present self-signed certificates.
"""

from typing import Any
import asyncio
import ssl

import structlog
import websockets
from websockets.exceptions import WebSocketException

from qsys_bridge.domain.errors import ConnectTimeoutError, ConnectionFailedError

logger = structlog.get_logger(__name__)

CONTROL_PATH = "/qrc-public-api/v0"
HANDSHAKE_TIMEOUT = 10.0


def build_control_url(host: str, port: int, secure: bool) -> str:
    scheme = "wss" if secure else "ws"
    return f"{scheme}://{host}:{port}{CONTROL_PATH}"


def _insecure_ssl_context() -> ssl.SSLContext:
    context = ssl.create_default_context()
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    return context


async def open_control_socket(
    host: str,
    port: int,
    secure: bool,
    timeout: float = HANDSHAKE_TIMEOUT
) -> Any:
    """Open the control socket, failing with a timeout error after ``timeout`` seconds"""

    url = build_control_url(host, port, secure)
    logger.debug("Opening control socket", url=url)

    try:
        return await asyncio.wait_for(
            websockets.connect(
                url,
                ssl=_insecure_ssl_context() if secure else None,
                open_timeout=None,
                max_size=None
            ),
            timeout
        )
    except asyncio.TimeoutError:
        raise ConnectTimeoutError(f"Timed out after {timeout:g}s connecting to {host}:{port}")
    except (OSError, WebSocketException) as e:
        raise ConnectionFailedError(f"Could not connect to {host}:{port}: {e}")
