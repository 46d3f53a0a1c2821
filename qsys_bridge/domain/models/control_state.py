from typing import Dict, Any, List, Optional
from pydantic import BaseModel, ConfigDict, Field
from enum import Enum


READ_ONLY_DIRECTIONS = frozenset({"Read", "Read Only"})


class ControlType(str, Enum):
    """Engine control type tags"""
    BOOLEAN = "Boolean"
    FLOAT = "Float"
    INTEGER = "Integer"
    STRING = "String"
    TRIGGER = "Trigger"


class ControlState(BaseModel):
    """Point-in-time state of a single control.

    Every field is always present; fields that do not apply to a control are
    ``None``. Engine clients speaking the Q-SYS key names can build one with
    :meth:`from_engine`.
    """
    model_config = ConfigDict(frozen=True)

    value: Any = Field(None, description="Current value (numeric or string)")
    string: Optional[str] = Field(None, description="Display string")
    position: Optional[float] = Field(None, description="Normalized position 0-1")
    bool_value: Optional[bool] = Field(None, description="Boolean view of the value")
    direction: Optional[str] = Field(None, description="Read, Write or Read/Write")
    choices: Optional[List[str]] = None
    value_min: Optional[float] = None
    value_max: Optional[float] = None
    type: Optional[str] = None

    @classmethod
    def from_engine(cls, raw: Dict[str, Any]) -> "ControlState":
        return cls(
            value=raw.get("Value"),
            string=raw.get("String"),
            position=raw.get("Position"),
            bool_value=raw.get("Bool"),
            direction=raw.get("Direction"),
            choices=raw.get("Choices") or None,
            value_min=raw.get("ValueMin"),
            value_max=raw.get("ValueMax"),
            type=raw.get("Type"),
        )

    @property
    def is_read_only(self) -> bool:
        return self.direction in READ_ONLY_DIRECTIONS

    def to_dict(self) -> Dict[str, Any]:
        """Tool-facing representation"""
        return {
            "value": self.value,
            "string": self.string,
            "position": self.position,
            "bool": self.bool_value,
            "direction": self.direction,
            "choices": self.choices,
            "min": self.value_min,
            "max": self.value_max,
        }

    def to_discovery_dict(self, name: str) -> Dict[str, Any]:
        return {"name": name, "type": self.type, **self.to_dict()}
