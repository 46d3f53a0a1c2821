"""
Bounded-size tool responses.

Results are serialized to JSON text. Anything larger than the configured
threshold is written to a spill file in the temp directory and replaced by a
small descriptor that points at it. Spill files live for a fixed retention
window; a background sweeper deletes expired ones and ``cleanup`` removes
this process's files at exit.
"""

from typing import Dict, Any, List, Optional, Union
from datetime import datetime, timedelta, timezone
from pathlib import Path
import asyncio
import json
import os
import tempfile
import time
import uuid

import structlog
from pydantic import BaseModel, Field

from qsys_bridge.domain.errors import BridgeError, PayloadTooLargeError

logger = structlog.get_logger(__name__)

MAX_RESPONSE_BYTES = 1024 * 1024
SPILL_RETENTION = timedelta(minutes=15)
SWEEP_INTERVAL = 60.0
SPILL_PREFIX = "qsys-response-"
TRUNCATED_ITEMS = 20
SUMMARY_SAMPLE = 3
SUMMARY_KEYS = 50


class ToolResponse(BaseModel):
    """Transport-neutral tool result"""
    content: List[Dict[str, str]] = Field(default_factory=list)
    is_error: bool = False

    @property
    def text(self) -> str:
        return "".join(item.get("text", "") for item in self.content)

    def to_mcp(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"content": self.content}
        if self.is_error:
            result["isError"] = True
        return result


def human_size(size: int) -> str:
    if size < 1024:
        return f"{size} B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f} KB"
    return f"{size / (1024 * 1024):.1f} MB"


def summarize(data: Any) -> Dict[str, Any]:
    """Best-effort structural summary of a spilled payload"""
    if isinstance(data, list):
        return {"type": "array", "length": len(data), "sample": data[:SUMMARY_SAMPLE]}
    if isinstance(data, dict):
        keys = list(data.keys())
        return {"type": "object", "keys": keys[:SUMMARY_KEYS], "keyCount": len(keys)}
    return {"type": type(data).__name__}


class ResponseEnvelope:
    """Wraps tool results as bounded-size text payloads"""

    def __init__(
        self,
        spill_dir: Optional[Path] = None,
        max_bytes: int = MAX_RESPONSE_BYTES,
        retention: timedelta = SPILL_RETENTION
    ):
        self.spill_dir = Path(spill_dir) if spill_dir else Path(tempfile.gettempdir())
        self.max_bytes = max_bytes
        self.retention = retention
        self._spilled: List[Path] = []

    def success(self, data: Any) -> ToolResponse:
        text = json.dumps(data, default=str)
        size = len(text.encode("utf-8"))

        if size > self.max_bytes:
            return self._oversized(data, text, size)

        return self._text(text)

    def error(
        self,
        error: Union[BridgeError, str],
        suggestion: Optional[str] = None
    ) -> ToolResponse:
        if isinstance(error, BridgeError):
            payload = error.to_payload()
            if suggestion and "suggestion" not in payload:
                payload["suggestion"] = suggestion
        else:
            payload = {"error": error}
            if suggestion:
                payload["suggestion"] = suggestion

        return self._text(json.dumps(payload, indent=2, default=str), is_error=True)

    def _text(self, text: str, is_error: bool = False) -> ToolResponse:
        return ToolResponse(content=[{"type": "text", "text": text}], is_error=is_error)

    def _oversized(self, data: Any, text: str, size: int) -> ToolResponse:
        try:
            descriptor = self._spill(text, data, size)
        except OSError as e:
            logger.error("Failed to spill oversized response", size=size, error=str(e))
            if isinstance(data, list):
                truncated = {"truncated": True, "count": len(data), "data": data[:TRUNCATED_ITEMS]}
                return self._text(json.dumps(truncated, default=str))
            return self.error(PayloadTooLargeError(
                f"Response too large ({human_size(size)}) and could not be written to a file",
                details={"size": size}
            ))

        logger.info("Oversized response spilled to file", file=descriptor["file"], size=size)
        return self._text(json.dumps(descriptor, default=str))

    def _spill(self, text: str, data: Any, size: int) -> Dict[str, Any]:
        """Atomic write: temp file in the same directory, then rename"""

        self.spill_dir.mkdir(parents=True, exist_ok=True)
        target = self.spill_dir / f"{SPILL_PREFIX}{uuid.uuid4().hex}.json"

        fd, temp_name = tempfile.mkstemp(dir=self.spill_dir, prefix=".tmp-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(text)
            os.replace(temp_name, target)
        except BaseException:
            try:
                os.unlink(temp_name)
            except OSError:
                pass
            raise

        self._spilled.append(target)
        created_at = datetime.now(timezone.utc)

        return {
            "spilled": True,
            "file": str(target),
            "size": size,
            "sizeHuman": human_size(size),
            "createdAt": created_at.isoformat(),
            "expiresAt": (created_at + self.retention).isoformat(),
            "summary": summarize(data)
        }

    def sweep(self) -> int:
        """Delete spill files older than the retention window"""

        cutoff = time.time() - self.retention.total_seconds()
        removed = 0

        try:
            candidates = list(self.spill_dir.glob(f"{SPILL_PREFIX}*.json"))
        except OSError:
            return 0

        for path in candidates:
            try:
                if path.stat().st_mtime < cutoff:
                    path.unlink()
                    removed += 1
            except OSError:
                continue

        if removed:
            logger.info("Expired spill files removed", count=removed)
        self._spilled = [p for p in self._spilled if p.exists()]
        return removed

    async def run_sweeper(self, interval: float = SWEEP_INTERVAL):
        """Periodic sweep; runs until cancelled"""
        while True:
            try:
                self.sweep()
            except Exception as e:
                logger.error("Spill sweep error", error=str(e))

            await asyncio.sleep(interval)

    def cleanup(self) -> int:
        """Remove every spill file written by this process"""

        removed = 0
        for path in self._spilled:
            try:
                path.unlink()
                removed += 1
            except OSError:
                continue
        self._spilled = []
        return removed
