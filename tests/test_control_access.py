"""Control reads and writes against the fake engine."""

import pytest

from qsys_bridge.domain.control.control_access import (
    ControlUpdate, confirms, is_protected, parse_control_path, validate_value
)
from qsys_bridge.domain.errors import ControlValidationError, InvalidArgumentError, InvalidPathError
from qsys_bridge.domain.models.control_state import ControlState


def updates(*items):
    return [ControlUpdate(path=path, value=value, force=force) for path, value, force in items]


class TestPaths:

    def test_split_on_first_dot(self):
        assert parse_control_path("Mixer.gain") == ("Mixer", "gain")
        assert parse_control_path("Zone.input.1.gain") == ("Zone", "input.1.gain")

    def test_missing_dot(self):
        with pytest.raises(InvalidPathError):
            parse_control_path("Mixer")

    @pytest.mark.parametrize("path", ["Master.mute", "master.gain", "EMERGENCY.stop", "Amp.Power", "SystemMute1.state"])
    def test_protected_patterns(self, path):
        assert is_protected(path)

    @pytest.mark.parametrize("path", ["Mixer.gain", "Amp.powerLevel", "MyMaster.gain"])
    def test_unprotected(self, path):
        assert not is_protected(path)


class TestValidation:

    def test_boolean_requires_bool(self):
        state = ControlState(type="Boolean")
        with pytest.raises(ControlValidationError, match="true/false"):
            validate_value(state, 1)

    def test_numeric_rejects_bool_and_string(self):
        state = ControlState(type="Float")
        with pytest.raises(ControlValidationError):
            validate_value(state, True)
        with pytest.raises(ControlValidationError):
            validate_value(state, "loud")

    def test_integer_requires_whole_number(self):
        state = ControlState(type="Integer")
        validate_value(state, 3.0)
        with pytest.raises(ControlValidationError, match="whole number"):
            validate_value(state, 2.5)

    def test_bounds(self):
        state = ControlState(type="Float", value_min=-60, value_max=12)
        with pytest.raises(ControlValidationError) as exc_info:
            validate_value(state, -100)
        assert exc_info.value.message == "Value -100 below minimum -60"
        assert exc_info.value.details == {"min": -60}

    def test_confirm_tolerance(self):
        state = ControlState(value=-10.0004, type="Float")
        assert confirms(state, -10)
        assert not confirms(state.model_copy(update={"value": -10.5}), -10)

    def test_trigger_always_confirms(self):
        assert confirms(ControlState(type="Trigger"), 1)


class TestGet:

    @pytest.mark.asyncio
    async def test_reads_state(self, connected):
        [item] = await connected.controls.get(["Mixer.gain"])

        assert item == {
            "control": "Mixer.gain",
            "value": 0.0,
            "string": "0",
            "position": pytest.approx(100 / 120),
            "bool": None,
            "direction": "Read/Write",
            "choices": None,
            "min": -100.0,
            "max": 20.0,
        }

    @pytest.mark.asyncio
    async def test_unknown_control_is_per_item(self, connected):
        results = await connected.controls.get(["Mixer.gian", "Mixr.gain", "Mixer.mute"])

        missing_control, missing_component, ok = results
        assert "value" not in missing_control
        assert missing_control["code"] == "not_found"
        assert missing_control["error"].startswith('Control not found in "Mixer"')
        assert missing_control["available"][0] == "gain"
        assert missing_component["error"].startswith('Component "Mixr" not found')
        assert "Mixer" in missing_component["available"]
        assert ok["bool"] is False

    @pytest.mark.asyncio
    async def test_invalid_path_is_per_item(self, connected):
        [item] = await connected.controls.get(["nodot"])

        assert item["code"] == "invalid_path"

    @pytest.mark.asyncio
    async def test_batch_limit(self, connected):
        with pytest.raises(InvalidArgumentError):
            await connected.controls.get([f"Mixer.c{i}" for i in range(101)])


class TestSet:

    @pytest.mark.asyncio
    async def test_results_preserve_order(self, connected):
        results = await connected.controls.set(updates(
            ("Mixer.gain", -10, False),
            ("Mixer.nothing", 1, False),
            ("Mixer.mute", True, False),
            ("Master.mute", True, False),
        ))

        assert [r["control"] for r in results] == ["Mixer.gain", "Mixer.nothing", "Mixer.mute", "Master.mute"]
        assert results[0]["confirmed"] is True
        assert results[0]["value"] == -10
        assert results[1]["code"] == "not_found"
        assert results[2]["confirmed"] is True
        assert results[3]["code"] == "protected"

    @pytest.mark.asyncio
    async def test_boolean_validation_before_round_trip(self, connected, engine_factory):
        [result] = await connected.controls.set(updates(("Mixer.mute", "yes", False)))

        assert result["code"] == "validation"
        assert result["confirmed"] is False
        assert engine_factory.engine.control("Mixer.mute").writes == []

    @pytest.mark.asyncio
    async def test_bound_violation(self, connected):
        [result] = await connected.controls.set(updates(("Mixer.gain", -200, False)))

        assert result["error"] == "Value -200 below minimum -100"
        assert result["min"] == -100

    @pytest.mark.asyncio
    async def test_protected_requires_force(self, connected, engine_factory):
        [blocked] = await connected.controls.set(updates(("Master.mute", True, False)))
        [forced] = await connected.controls.set(updates(("Master.mute", True, True)))

        assert blocked["error"] == "Protected control. Use force:true to override"
        assert forced["confirmed"] is True
        assert engine_factory.engine.control("Master.mute").writes == [True]

    @pytest.mark.asyncio
    async def test_force_does_not_bypass_read_only(self, connected):
        [result] = await connected.controls.set(updates(("Sensor.level", -5, True)))

        assert result["code"] == "read_only"

    @pytest.mark.asyncio
    async def test_rejected_write_is_not_fatal(self, connected, engine_factory):
        gain = engine_factory.engine.control("Mixer.gain")
        gain.confirm = lambda state, value: state.model_copy(update={"value": 6.0})

        [result] = await connected.controls.set(updates(("Mixer.gain", 10, False)))

        assert result["code"] == "write_rejected"
        assert result["confirmed"] is False
        assert result["requested"] == 10
        assert result["actual"] == 6.0

    @pytest.mark.asyncio
    async def test_trigger_confirms_without_comparison(self, connected):
        [result] = await connected.controls.set(updates(("Button.press", 1, False)))

        assert result["confirmed"] is True

    @pytest.mark.asyncio
    async def test_string_control(self, connected):
        [result] = await connected.controls.set(updates(("Mixer.label", "Lobby", False)))

        assert result["confirmed"] is True
        assert result["string"] == "Lobby"

    @pytest.mark.asyncio
    async def test_write_failure_isolated(self, connected, engine_factory):
        engine_factory.engine.control("Mixer.gain").fail = RuntimeError("engine refused")

        failed, ok = await connected.controls.set(updates(("Mixer.gain", 1, False), ("Mixer.steps", 4, False)))

        assert failed == {"control": "Mixer.gain", "error": "engine refused", "code": "write_failed", "confirmed": False}
        assert ok["confirmed"] is True
