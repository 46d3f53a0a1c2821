"""Bounded tool responses and spill-file lifecycle."""

import json
import os
import time
from pathlib import Path

import pytest

from qsys_bridge.domain.errors import NotFoundError
from qsys_bridge.domain.response.response_envelope import ResponseEnvelope, human_size, summarize


def payload(response):
    return json.loads(response.text)


class TestSuccess:

    def test_small_payload_inline(self, tmp_path):
        envelope = ResponseEnvelope(tmp_path)

        response = envelope.success({"connected": True})

        assert payload(response) == {"connected": True}
        assert response.to_mcp() == {"content": [{"type": "text", "text": '{"connected": true}'}]}

    def test_oversized_payload_spills(self, tmp_path):
        envelope = ResponseEnvelope(tmp_path, max_bytes=200)
        data = [{"name": f"Component {i}", "controlCount": i} for i in range(50)]

        descriptor = payload(envelope.success(data))

        assert descriptor["spilled"] is True
        spill = Path(descriptor["file"])
        assert spill.parent == tmp_path
        assert spill.name.startswith("qsys-response-")
        assert json.loads(spill.read_text()) == data
        assert descriptor["size"] == len(json.dumps(data).encode("utf-8"))
        assert descriptor["summary"] == {"type": "array", "length": 50, "sample": data[:3]}
        assert list(tmp_path.glob(".tmp-*")) == []

    def test_spill_failure_truncates_arrays(self, tmp_path):
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("")
        envelope = ResponseEnvelope(blocker, max_bytes=200)

        result = payload(envelope.success(list(range(500))))

        assert result == {"truncated": True, "count": 500, "data": list(range(20))}

    def test_spill_failure_for_objects_is_an_error(self, tmp_path):
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("")
        envelope = ResponseEnvelope(blocker, max_bytes=200)

        response = envelope.success({f"key{i}": "x" * 20 for i in range(50)})

        assert response.is_error
        assert payload(response)["code"] == "payload_too_large"


class TestErrors:

    def test_bridge_error_payload(self, tmp_path):
        response = ResponseEnvelope(tmp_path).error(NotFoundError('Monitor "m9" not found', available=["m1"]))

        assert response.is_error
        assert response.to_mcp()["isError"] is True
        assert payload(response) == {"error": 'Monitor "m9" not found', "code": "not_found", "available": ["m1"]}

    def test_plain_message_with_suggestion(self, tmp_path):
        response = ResponseEnvelope(tmp_path).error("Unknown tool: nope", "Available tools: qsys_get")

        assert payload(response) == {"error": "Unknown tool: nope", "suggestion": "Available tools: qsys_get"}


class TestSpillLifecycle:

    def test_sweep_removes_expired_files_only(self, tmp_path):
        envelope = ResponseEnvelope(tmp_path, max_bytes=10)
        fresh = Path(payload(envelope.success(["a" * 50]))["file"])
        expired = tmp_path / "qsys-response-old.json"
        expired.write_text("[]")
        old = time.time() - 16 * 60
        os.utime(expired, (old, old))
        unrelated = tmp_path / "keep.json"
        unrelated.write_text("{}")
        os.utime(unrelated, (old, old))

        assert envelope.sweep() == 1
        assert fresh.exists()
        assert not expired.exists()
        assert unrelated.exists()

    def test_cleanup_removes_own_files(self, tmp_path):
        envelope = ResponseEnvelope(tmp_path, max_bytes=10)
        spilled = [Path(payload(envelope.success(["b" * 50]))["file"]) for _ in range(3)]

        assert envelope.cleanup() == 3
        assert not any(path.exists() for path in spilled)


class TestHelpers:

    @pytest.mark.parametrize("size,expected", [(512, "512 B"), (2048, "2.0 KB"), (3 * 1024 * 1024, "3.0 MB")])
    def test_human_size(self, size, expected):
        assert human_size(size) == expected

    def test_summarize_object(self):
        assert summarize({"a": 1, "b": 2}) == {"type": "object", "keys": ["a", "b"], "keyCount": 2}
