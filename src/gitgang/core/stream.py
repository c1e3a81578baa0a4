"""Agent activity stream: record parsing and line fan-out.

Agents emit one line per event. A line that is a JSON object with a ``type``
field is a structured record; anything else is free text. Structured records
are parsed into a small tagged union keyed by ``type``. Unknown fields are
ignored and unknown types fall back to :class:`OtherRecord`.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import Any, AsyncIterator, Literal, Union

from pydantic import BaseModel, ConfigDict, ValidationError


class _Record(BaseModel):
    model_config = ConfigDict(extra="ignore")


class ThinkingRecord(_Record):
    type: Literal["thinking"]
    content: str | None = None


class ToolUseRecord(_Record):
    type: Literal["tool_use"]
    name: str | None = None
    tool_name: str | None = None
    input: dict[str, Any] | None = None
    parameters: dict[str, Any] | None = None

    @property
    def tool(self) -> str:
        return self.tool_name or self.name or "tool"

    @property
    def arguments(self) -> dict[str, Any]:
        return self.input or self.parameters or {}


class ToolResultRecord(_Record):
    type: Literal["tool_result"]
    is_error: bool | None = None
    status: str | None = None
    content: Any = None

    @property
    def failed(self) -> bool:
        return bool(self.is_error) or (self.status or "").lower() in ("error", "failed")


class ExecRecord(_Record):
    type: Literal["exec"]
    command: str | None = None
    exit_code: int | None = None


class MessageRecord(_Record):
    type: Literal["message"]
    role: str | None = None
    content: str | None = None


class EnvelopeRecord(_Record):
    """Wrapper records (``assistant``/``user``/``system``) carrying content blocks."""

    type: Literal["assistant", "user", "system"]
    subtype: str | None = None
    model: str | None = None
    message: dict[str, Any] | None = None


class OtherRecord(_Record):
    type: str


StreamRecord = Union[
    ThinkingRecord,
    ToolUseRecord,
    ToolResultRecord,
    ExecRecord,
    MessageRecord,
    EnvelopeRecord,
    OtherRecord,
]

RECORD_TYPES: dict[str, type[_Record]] = {
    "thinking": ThinkingRecord,
    "tool_use": ToolUseRecord,
    "tool_result": ToolResultRecord,
    "exec": ExecRecord,
    "command_exec": ExecRecord,
    "message": MessageRecord,
    "assistant": EnvelopeRecord,
    "user": EnvelopeRecord,
    "system": EnvelopeRecord,
}


def parse_record(data: dict[str, Any]) -> StreamRecord | None:
    """Parse a decoded JSON object into a stream record."""
    kind = data.get("type")
    if not isinstance(kind, str):
        return None

    model = RECORD_TYPES.get(kind, OtherRecord)
    if model is ExecRecord:
        data = {**data, "type": "exec"}
    try:
        return model.model_validate(data)  # type: ignore[return-value]
    except ValidationError:
        return OtherRecord(type=kind)


def parse_stream_line(line: str) -> StreamRecord | None:
    """Parse one output line; None for free text."""
    line = line.strip()
    if not line.startswith("{"):
        return None
    try:
        data = json.loads(line)
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None
    return parse_record(data)


def expand_record(record: StreamRecord) -> list[StreamRecord]:
    """Flatten envelope records into the records of their content blocks."""
    if not isinstance(record, EnvelopeRecord):
        return [record]

    content = (record.message or {}).get("content")
    if not isinstance(content, list):
        return [record]

    blocks: list[StreamRecord] = []
    for block in content:
        if isinstance(block, dict):
            parsed = parse_record(block)
            if parsed is not None:
                blocks.append(parsed)
    return blocks or [record]


@dataclass(frozen=True)
class LineRecord:
    """One non-empty output line from an agent process."""

    source: str  # "stdout" or "stderr"
    raw: str
    record: StreamRecord | None


_CLOSED = object()


class LineChannel:
    """Fan-out channel of line records for one process.

    Every subscriber gets its own queue, so consumers (log writer, activity
    tracker) progress independently. Subscribe before the first publish.
    """

    def __init__(self) -> None:
        self._queues: list[asyncio.Queue[object]] = []
        self._closed = False

    def subscribe(self) -> AsyncIterator[LineRecord]:
        queue: asyncio.Queue[object] = asyncio.Queue()
        self._queues.append(queue)
        return self._drain(queue)

    def publish(self, item: LineRecord) -> None:
        if self._closed:
            return
        for queue in self._queues:
            queue.put_nowait(item)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for queue in self._queues:
            queue.put_nowait(_CLOSED)

    @property
    def closed(self) -> bool:
        return self._closed

    @staticmethod
    async def _drain(queue: asyncio.Queue[object]) -> AsyncIterator[LineRecord]:
        while True:
            item = await queue.get()
            if item is _CLOSED:
                return
            yield item  # type: ignore[misc]


async def pump_lines(
    reader: asyncio.StreamReader,
    channel: LineChannel,
    source: str,
) -> None:
    """Read a process stream line by line into a channel until EOF."""
    while True:
        try:
            chunk = await reader.readline()
        except ValueError:
            # Line longer than the reader limit; asyncio has already discarded it.
            continue
        if not chunk:
            return
        text = chunk.decode("utf-8", errors="replace").rstrip("\r\n")
        if not text.strip():
            continue
        channel.publish(LineRecord(source=source, raw=text, record=parse_stream_line(text)))
