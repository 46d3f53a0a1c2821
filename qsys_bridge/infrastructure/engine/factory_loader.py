from typing import Optional
import importlib

import structlog

from qsys_bridge.domain.engine.engine_client import EngineClientFactory
from qsys_bridge.domain.errors import ConfigurationError

logger = structlog.get_logger(__name__)


def load_engine_factory(reference: Optional[str]) -> EngineClientFactory:
    """Resolve an engine client factory from a 'package.module:attribute' reference"""

    if not reference:
        raise ConfigurationError(
            "No engine client configured",
            suggestion="Set QSYS_ENGINE_CLIENT (or engineClient in config.json) to 'module:factory'"
        )

    module_name, _, attribute = reference.partition(":")
    if not module_name or not attribute:
        raise ConfigurationError(f"Invalid engine client reference: {reference!r}", suggestion="Use 'module:factory'")

    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigurationError(f"Cannot import engine client module {module_name!r}: {e}")

    factory = getattr(module, attribute, None)
    if not callable(factory):
        raise ConfigurationError(f"Engine client factory {reference!r} is not callable")

    logger.info("Engine client factory loaded", reference=reference)
    return factory
