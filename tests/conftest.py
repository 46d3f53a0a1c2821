"""Shared fixtures: an in-memory engine client and injectable transport.

The fake engine models a small design:

    Mixer   gain (Float, -100..20), mute (Boolean), label (String), steps (Integer, 0..10)
    Master  mute (Boolean), power (Boolean)
    Sensor  level (Float, read-only)
    Button  press (Trigger)
"""

import asyncio
import re
from typing import Any, Callable, Dict, List, Optional

import pytest
import pytest_asyncio

from qsys_bridge.domain.engine.engine_client import Component, Control, EngineClient
from qsys_bridge.domain.models.control_state import ControlState
from qsys_bridge.domain.orchestration.bridge_orchestrator import BridgeOrchestrator
from qsys_bridge.infrastructure.config.settings import BridgeConfig
from qsys_bridge.infrastructure.observability.logging import metrics


# =============================================================================
# Fake engine
# =============================================================================

def apply_value(state: ControlState, value: Any) -> ControlState:
    """Engine-side view of a successful write"""
    if isinstance(value, bool):
        return state.model_copy(update={"value": 1 if value else 0, "bool_value": value, "string": str(value).lower()})
    if isinstance(value, (int, float)):
        return state.model_copy(update={"value": value, "string": f"{value:g}"})
    return state.model_copy(update={"value": value, "string": value})


class FakeControl(Control):
    def __init__(
        self,
        name: str,
        state: ControlState,
        confirm: Optional[Callable[[ControlState, Any], ControlState]] = None,
        fail: Optional[Exception] = None
    ):
        super().__init__(name)
        self._state = state
        self.confirm = confirm or apply_value
        self.fail = fail
        self.writes: List[Any] = []

    @property
    def state(self) -> ControlState:
        return self._state

    async def update(self, value: Any) -> ControlState:
        self.writes.append(value)
        await asyncio.sleep(0)
        if self.fail is not None:
            raise self.fail
        self._state = self.confirm(self._state, value)
        return self._state


class FakeEngine(EngineClient):
    def __init__(self, components: Dict[str, Component]):
        super().__init__()
        self._components = components
        self.closed = False

    @property
    def components(self) -> Dict[str, Component]:
        return self._components

    async def close(self):
        self.closed = True

    def control(self, path: str) -> FakeControl:
        component, _, control = path.partition(".")
        return self._components[component].controls[control]

    def change(self, path: str, value: Any):
        """Simulate an engine-side change: per-control and global update events"""
        component_name, _, control_name = path.partition(".")
        component = self._components[component_name]
        control = component.controls[control_name]
        control._state = apply_value(control.state, value)
        control.publish(control.state)
        self.emit("update", component, control, control.state)


def float_state(value: float, low: float, high: float, direction: str = "Read/Write") -> ControlState:
    return ControlState(
        value=value, string=f"{value:g}", position=(value - low) / (high - low),
        direction=direction, value_min=low, value_max=high, type="Float"
    )


def bool_state(value: bool = False) -> ControlState:
    return ControlState(
        value=1 if value else 0, string=str(value).lower(), position=1.0 if value else 0.0,
        bool_value=value, direction="Read/Write", type="Boolean"
    )


def build_design() -> Dict[str, Component]:
    def component(name: str, type_: str, **controls: ControlState) -> Component:
        return Component(name, type_, {key: FakeControl(key, state) for key, state in controls.items()})

    return {
        "Mixer": component(
            "Mixer", "mixer",
            gain=float_state(0.0, -100.0, 20.0),
            mute=bool_state(),
            label=ControlState(value="Main", string="Main", direction="Read/Write", type="String"),
            steps=ControlState(value=0, string="0", direction="Read/Write", value_min=0, value_max=10, type="Integer"),
        ),
        "Master": component("Master", "gain", mute=bool_state(), power=bool_state(True)),
        "Sensor": component("Sensor", "meter", level=float_state(-20.0, -100.0, 0.0, direction="Read")),
        "Button": component("Button", "custom_controls", press=ControlState(direction="Read/Write", type="Trigger")),
    }


class FakeSocket:
    def __init__(self, host: str, port: int):
        self.host = host
        self.port = port
        self.closed = False

    async def close(self):
        self.closed = True


class FakeSocketOpener:
    """Stands in for the websocket transport; ``failures`` are raised in order"""

    def __init__(self):
        self.calls: List[Dict[str, Any]] = []
        self.sockets: List[FakeSocket] = []
        self.failures: List[Exception] = []
        self.always_fail: Optional[Exception] = None

    async def __call__(self, host: str, port: int, secure: bool, timeout: float = 10.0) -> FakeSocket:
        self.calls.append({"host": host, "port": port, "secure": secure, "timeout": timeout})
        if self.always_fail is not None:
            raise self.always_fail
        if self.failures:
            raise self.failures.pop(0)
        socket = FakeSocket(host, port)
        self.sockets.append(socket)
        return socket


class FakeEngineFactory:
    """Builds a fresh fake engine per session; applies the component filter like a real client"""

    def __init__(self, design: Callable[[], Dict[str, Component]] = build_design):
        self.design = design
        self.calls: List[Dict[str, Any]] = []
        self.engines: List[FakeEngine] = []
        self.gate: Optional[asyncio.Event] = None
        self.fail: Optional[Exception] = None

    async def __call__(self, *, socket: Any, polling_interval: int, component_filter: Optional[str] = None) -> FakeEngine:
        self.calls.append({"socket": socket, "polling_interval": polling_interval, "component_filter": component_filter})
        if self.gate is not None:
            await self.gate.wait()
        if self.fail is not None:
            raise self.fail

        components = self.design()
        if component_filter:
            pattern = re.compile(component_filter)
            components = {name: c for name, c in components.items() if pattern.search(name)}

        engine = FakeEngine(components)
        self.engines.append(engine)
        return engine

    @property
    def engine(self) -> FakeEngine:
        return self.engines[-1]


class RecordingSleep:
    """Injectable sleep that records requested delays and only yields"""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float):
        self.delays.append(delay)
        await asyncio.sleep(0)


async def drain_reconnects(connection, limit: int = 20):
    """Await the chain of scheduled reconnect attempts until it settles"""
    for _ in range(limit):
        task = connection.reconnect_task
        if task is None or task.done():
            return
        await task


async def wait_until(predicate: Callable[[], bool], limit: int = 100):
    for _ in range(limit):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def config(tmp_path) -> BridgeConfig:
    return BridgeConfig(
        host="core.local",
        auto_connect=False,
        config_dir=tmp_path / "config",
        recordings_dir=tmp_path / "recordings",
        spill_dir=tmp_path / "spill",
    )


@pytest.fixture
def engine_factory() -> FakeEngineFactory:
    return FakeEngineFactory()


@pytest.fixture
def socket_opener() -> FakeSocketOpener:
    return FakeSocketOpener()


@pytest.fixture
def fake_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest_asyncio.fixture
async def orchestrator(config, engine_factory, socket_opener, fake_sleep):
    bridge = BridgeOrchestrator(config, engine_factory=engine_factory, socket_opener=socket_opener, sleep=fake_sleep)
    yield bridge
    await bridge.shutdown()


@pytest_asyncio.fixture
async def connected(orchestrator):
    """Orchestrator with a live session to the fake engine"""
    await orchestrator.connection.ensure_connected()
    return orchestrator
