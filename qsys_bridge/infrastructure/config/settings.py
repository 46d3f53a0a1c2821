"""
Bridge configuration.

Settings are merged, lowest precedence first, from model defaults,
``config.json``, ``last-connection.json`` (both under the config directory)
and ``QSYS_*`` environment variables. Missing or corrupt files are treated as
empty.
"""

from typing import Dict, Any, Mapping, Optional
from pathlib import Path
import json
import os

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from qsys_bridge.domain.errors import MissingHostError
from qsys_bridge.domain.models.connection_state import (
    ConnectionParams, DEFAULT_PORT, DEFAULT_POLLING_INTERVAL_MS
)

logger = structlog.get_logger(__name__)

DEFAULT_CONFIG_DIR = Path.home() / ".qsys-mcp"
CONFIG_FILE = "config.json"
LAST_CONNECTION_FILE = "last-connection.json"


class BridgeConfig(BaseModel):
    """Effective bridge configuration"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    host: Optional[str] = None
    port: int = DEFAULT_PORT
    secure: bool = True
    auto_connect: bool = True
    polling_interval: int = DEFAULT_POLLING_INTERVAL_MS
    component_filter: Optional[str] = Field(None, alias="filter")
    engine_client: Optional[str] = Field(None, description="Engine client factory as 'module:attribute'")
    config_dir: Path = DEFAULT_CONFIG_DIR
    recordings_dir: Optional[Path] = None
    spill_dir: Optional[Path] = None
    max_response_bytes: int = 1024 * 1024
    log_level: str = "INFO"
    log_format: str = "console"
    debug: bool = False

    @property
    def effective_recordings_dir(self) -> Path:
        return self.recordings_dir or self.config_dir / "recordings"

    def connection_params(self, host_override: Optional[str] = None) -> ConnectionParams:
        """Build connection parameters, resolving the host from config"""
        host = host_override or self.host
        if not host:
            raise MissingHostError("QSYS_HOST environment variable required")
        return ConnectionParams(
            host=host,
            port=self.port,
            secure=self.secure,
            polling_interval=self.polling_interval,
            component_filter=self.component_filter
        )


def _read_json(path: Path) -> Dict[str, Any]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return {}
    return data if isinstance(data, dict) else {}


def _env_int(environ: Mapping[str, str], name: str) -> Optional[int]:
    raw = environ.get(name)
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer environment value", variable=name, value=raw)
        return None


def _environment_overrides(environ: Mapping[str, str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}

    if environ.get("QSYS_HOST"):
        overrides["host"] = environ["QSYS_HOST"]
    port = _env_int(environ, "QSYS_PORT")
    if port is not None:
        overrides["port"] = port
    if environ.get("QSYS_SECURE"):
        overrides["secure"] = environ["QSYS_SECURE"].lower() != "false"
    if environ.get("QSYS_AUTO_CONNECT"):
        overrides["autoConnect"] = environ["QSYS_AUTO_CONNECT"].lower() == "true"
    polling = _env_int(environ, "QSYS_POLLING_INTERVAL")
    if polling is not None:
        overrides["pollingInterval"] = polling

    for variable, key in (
        ("QSYS_FILTER", "filter"),
        ("QSYS_ENGINE_CLIENT", "engineClient"),
        ("QSYS_RECORDINGS_DIR", "recordingsDir"),
        ("QSYS_SPILL_DIR", "spillDir"),
        ("QSYS_LOG_LEVEL", "logLevel"),
        ("QSYS_LOG_FORMAT", "logFormat"),
    ):
        if environ.get(variable):
            overrides[key] = environ[variable]

    if environ.get("QSYS_MCP_DEBUG") == "true":
        overrides["debug"] = True
        overrides.setdefault("logLevel", "DEBUG")

    return overrides


def load_config(
    config_dir: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None
) -> BridgeConfig:
    """Load configuration from disk and the environment"""

    environ = os.environ if environ is None else environ
    if config_dir is None:
        config_dir = Path(environ["QSYS_CONFIG_DIR"]) if environ.get("QSYS_CONFIG_DIR") else DEFAULT_CONFIG_DIR

    layers = [
        ("config", _read_json(config_dir / CONFIG_FILE)),
        ("last_connection", _read_json(config_dir / LAST_CONNECTION_FILE)),
        ("environment", _environment_overrides(environ)),
    ]

    merged: Dict[str, Any] = {"configDir": config_dir}
    config = BridgeConfig.model_validate(merged)

    for source, layer in layers:
        if not layer:
            continue
        candidate = {**merged, **layer}
        try:
            config = BridgeConfig.model_validate(candidate)
        except ValidationError as e:
            logger.warning("Ignoring invalid configuration layer", source=source, error=str(e))
            continue
        merged = candidate

    logger.debug("Configuration loaded", host=config.host, port=config.port, auto_connect=config.auto_connect)
    return config


class ConnectionStore:
    """Persists the last successful connection parameters"""

    def __init__(self, config_dir: Path = DEFAULT_CONFIG_DIR):
        self.path = config_dir / LAST_CONNECTION_FILE

    def save(self, params: ConnectionParams) -> bool:
        """Best-effort write; failures are logged and swallowed"""
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps(params.to_record(), indent=2), encoding="utf-8")
            return True
        except OSError as e:
            logger.debug("Could not persist last connection", path=str(self.path), error=str(e))
            return False

    def load(self) -> Dict[str, Any]:
        return _read_json(self.path)
