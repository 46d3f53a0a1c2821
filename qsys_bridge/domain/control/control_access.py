"""
Read/write contract for engine controls.

Controls are addressed as ``Component.control``; the component name is
everything before the first dot. Batch reads and writes never fail as a
whole: every item settles on its own and failures become structured
per-item results.
"""

from typing import Any, Dict, List, Optional, Sequence, Tuple, Union, TYPE_CHECKING
import asyncio
import difflib
import math
import re

import structlog
from pydantic import BaseModel, Field

from qsys_bridge.domain.engine.engine_client import Control, EngineClient
from qsys_bridge.domain.errors import (
    BridgeError, ControlValidationError, InvalidArgumentError, InvalidPathError,
    NotFoundError, ProtectedControlError, ReadOnlyControlError, WriteRejectedError
)
from qsys_bridge.domain.models.control_state import ControlState, ControlType

if TYPE_CHECKING:
    from qsys_bridge.domain.connection.connection_manager import ConnectionManager

logger = structlog.get_logger(__name__)

PROTECTED_PATTERNS = (
    re.compile(r"^Master\.", re.IGNORECASE),
    re.compile(r"^Emergency\.", re.IGNORECASE),
    re.compile(r"\.power$", re.IGNORECASE),
    re.compile(r"^SystemMute", re.IGNORECASE),
)
MAX_GET_BATCH = 100
MAX_SET_BATCH = 50
SUGGESTION_LIMIT = 5
CONFIRM_TOLERANCE = 0.001


class ControlUpdate(BaseModel):
    """A single requested control write"""
    path: str = Field(description="Control path in 'Component.control' format")
    value: Union[bool, int, float, str] = Field(description="New control value")
    force: bool = Field(default=False, description="Override protection for critical controls")


def parse_control_path(path: str) -> Tuple[str, str]:
    """Split a control path on its first dot"""
    dot = path.find(".")
    if dot == -1:
        raise InvalidPathError(f'Invalid path: "{path}"')
    return path[:dot], path[dot + 1:]


def is_protected(path: str) -> bool:
    return any(pattern.search(path) for pattern in PROTECTED_PATTERNS)


def _nearby(name: str, candidates: Sequence[str]) -> List[str]:
    """Closest names first, padded with the first candidates"""
    close = difflib.get_close_matches(name, candidates, n=SUGGESTION_LIMIT, cutoff=0.4)
    for candidate in candidates:
        if len(close) >= SUGGESTION_LIMIT:
            break
        if candidate not in close:
            close.append(candidate)
    return close


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def validate_value(state: ControlState, value: Any):
    """Check a proposed value against the control's type tag and bounds"""

    control_type = state.type

    if control_type == ControlType.BOOLEAN.value and not isinstance(value, bool):
        raise ControlValidationError(f'Boolean control requires true/false, got "{value}"')

    if control_type in (ControlType.FLOAT.value, ControlType.INTEGER.value):
        if not _is_number(value) or math.isnan(value):
            raise ControlValidationError(f"Numeric control requires number, got {type(value).__name__}")

    if control_type == ControlType.INTEGER.value and not float(value).is_integer():
        raise ControlValidationError(f"Integer control requires whole number, got {value}")

    if isinstance(value, (int, float)):
        if state.value_min is not None and value < state.value_min:
            raise ControlValidationError(
                f"Value {value} below minimum {state.value_min:g}",
                details={"min": state.value_min}
            )
        if state.value_max is not None and value > state.value_max:
            raise ControlValidationError(
                f"Value {value} above maximum {state.value_max:g}",
                details={"max": state.value_max}
            )


def confirms(state: ControlState, requested: Any) -> bool:
    """Whether the settled state reflects the requested value"""

    if state.type == ControlType.TRIGGER.value:
        return True

    if state.type == ControlType.BOOLEAN.value:
        return state.bool_value == requested

    if _is_number(requested):
        if not _is_number(state.value):
            return False
        return abs(state.value - requested) < CONFIRM_TOLERANCE

    return requested in (state.string, state.value)


class ControlAccess:
    """Resolves, reads and writes controls on the live engine snapshot"""

    def __init__(self, connection: "ConnectionManager"):
        self.connection = connection

    def resolve(self, path: str, engine: Optional[EngineClient] = None) -> Control:
        """Find the control addressed by ``path`` or raise a not-found diagnostic"""

        engine = engine or self.connection.require_engine()
        component_name, control_name = parse_control_path(path)
        components = engine.components

        component = components.get(component_name)
        if component is None:
            available = _nearby(component_name, list(components))
            raise NotFoundError(
                f'Component "{component_name}" not found. Available: {", ".join(available)}',
                available=available
            )

        control = component.controls.get(control_name)
        if control is None:
            available = _nearby(control_name, list(component.controls))
            raise NotFoundError(
                f'Control not found in "{component_name}". Available: {", ".join(available)}',
                available=available
            )

        return control

    async def get(self, paths: List[str]) -> List[Dict[str, Any]]:
        """Read current state for each path; unresolved paths yield per-item errors"""

        if not 1 <= len(paths) <= MAX_GET_BATCH:
            raise InvalidArgumentError(f"Between 1 and {MAX_GET_BATCH} control paths are required")

        await self.connection.ensure_connected()
        engine = self.connection.require_engine()

        results = []
        for path in paths:
            try:
                control = self.resolve(path, engine)
            except BridgeError as e:
                results.append({"control": path, **e.to_payload()})
                continue
            results.append({"control": path, **control.state.to_dict()})

        return results

    async def set(self, updates: List[ControlUpdate]) -> List[Dict[str, Any]]:
        """Apply writes concurrently; each item settles independently, in input order"""

        if not 1 <= len(updates) <= MAX_SET_BATCH:
            raise InvalidArgumentError(f"Between 1 and {MAX_SET_BATCH} control updates are required")

        await self.connection.ensure_connected()
        engine = self.connection.require_engine()

        settled = await asyncio.gather(
            *(self._set_one(update, engine) for update in updates),
            return_exceptions=True
        )

        results = []
        for update, outcome in zip(updates, settled):
            if isinstance(outcome, BaseException):
                logger.error("Unexpected control write failure", path=update.path, error=str(outcome))
                outcome = {"control": update.path, "error": str(outcome), "code": "write_failed", "confirmed": False}
            results.append(outcome)

        return results

    async def _set_one(self, update: ControlUpdate, engine: EngineClient) -> Dict[str, Any]:
        path, value = update.path, update.value

        try:
            control = self.resolve(path, engine)

            if not update.force and is_protected(path):
                raise ProtectedControlError("Protected control. Use force:true to override")

            state = control.state
            if state.is_read_only:
                raise ReadOnlyControlError("Control is read-only and cannot be modified")

            validate_value(state, value)

        except BridgeError as e:
            return {"control": path, **e.to_payload(), "confirmed": False}

        try:
            new_state = await control.update(value)
        except Exception as e:
            logger.warning("Control write failed", path=path, error=str(e))
            return {"control": path, "error": str(e), "code": "write_failed", "confirmed": False}

        if not confirms(_with_type(new_state, state), value):
            rejected = WriteRejectedError(
                "Control rejected - value not set as requested",
                details={"requested": value, "actual": new_state.value}
            )
            return {"control": path, **rejected.to_payload(), "confirmed": False}

        return {
            "control": path,
            "value": new_state.value,
            "string": new_state.string,
            "position": new_state.position,
            "confirmed": True
        }


def _with_type(new_state: ControlState, previous: ControlState) -> ControlState:
    """Engines may omit the type tag on write confirmations"""
    if new_state.type is None and previous.type is not None:
        return new_state.model_copy(update={"type": previous.type})
    return new_state
