from typing import List, Literal, Optional
from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from qsys_bridge.domain.control.control_access import ControlUpdate, MAX_GET_BATCH, MAX_SET_BATCH
from qsys_bridge.domain.recording.recorder import MAX_DURATION, MIN_DURATION


class ToolArguments(BaseModel):
    """Base model for tool arguments (camelCase on the wire)"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ConnectArguments(ToolArguments):
    host: Optional[str] = Field(None, description="Core IP address or hostname (defaults to saved configuration)")
    port: Optional[int] = Field(None, description="Port (default 443)")
    secure: Optional[bool] = Field(None, description="Use an encrypted connection (default true)")
    polling_interval: Optional[int] = Field(None, description="Polling interval in ms (minimum 34)")
    filter: Optional[str] = Field(None, description="Only load components matching this filter")


class StatusArguments(ToolArguments):
    detailed: bool = Field(default=False, description="Include component inventory")


class DiscoverArguments(ToolArguments):
    component: Optional[str] = Field(None, description="Component name or regex pattern (omit for all)")
    include_controls: bool = Field(default=False, description="Include control details for each component")


class GetArguments(ToolArguments):
    controls: List[str] = Field(
        description="Control paths in 'Component.control' format",
        min_length=1,
        max_length=MAX_GET_BATCH
    )


class SetArguments(ToolArguments):
    controls: List[ControlUpdate] = Field(description="Controls to update", min_length=1, max_length=MAX_SET_BATCH)


class MonitorArguments(ToolArguments):
    action: Literal["start", "read", "stop"] = Field(description="start, read or stop a monitor")
    id: str = Field(description="Caller-chosen monitor identifier", min_length=1)
    controls: Optional[List[str]] = Field(None, description="Control paths to watch (start only)")


class RecordArguments(ToolArguments):
    duration: float = Field(description="Recording length in seconds", ge=MIN_DURATION, le=MAX_DURATION)
    filename: Optional[str] = Field(None, description="Output CSV file name")
    filter_regex: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("filterRegex", "filter", "filter_regex"),
        description="Regex matched against 'Component.control' paths"
    )
