"""Incremental decoder for the server-pushed event stream.

Wire format::

    event: claude_delta
    data: {"content": "Hello"}

Records are separated by a blank line. Chunks may split a record anywhere,
including inside a multi-byte character, so undecoded bytes and incomplete
records are carried over to the next :meth:`EventStreamParser.feed` call.
"""

from __future__ import annotations

import codecs
import json
from typing import Optional

from pydantic import ValidationError

from cloud_session.log import get_logger
from cloud_session.stream.events import EVENT_MODELS, MalformedPayload, StreamEvent

logger = get_logger(__name__)

EVENT_PREFIX = "event:"
DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"


class EventStreamParser:
    """Turn text/byte chunks into typed events, one record at a time."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._event_type: Optional[str] = None
        self.done = False

    @property
    def event_type(self) -> Optional[str]:
        return self._event_type

    def feed(self, chunk: str | bytes) -> list[StreamEvent]:
        """Consume one chunk and return every event it completed."""
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)
        self._buffer += chunk.replace("\r\n", "\n")

        events: list[StreamEvent] = []
        while "\n\n" in self._buffer:
            record, self._buffer = self._buffer.split("\n\n", 1)
            events.extend(self._parse_record(record, final=False))
        return events

    def flush(self) -> list[StreamEvent]:
        """Decode whatever is left once the stream has ended."""
        self._buffer += self._decoder.decode(b"", final=True)
        record, self._buffer = self._buffer, ""
        if not record.strip():
            return []
        return self._parse_record(record, final=True)

    def _parse_record(self, record: str, final: bool) -> list[StreamEvent]:
        events: list[StreamEvent] = []
        for line in record.split("\n"):
            if line.startswith(EVENT_PREFIX):
                self._event_type = line[len(EVENT_PREFIX):].strip()
            elif line.startswith(DATA_PREFIX):
                payload = line[len(DATA_PREFIX):].strip()
                if payload == DONE_SENTINEL:
                    self.done = True
                    continue
                event = self._decode_payload(payload, final)
                if event is not None:
                    events.append(event)
        return events

    def _decode_payload(self, payload: str, final: bool) -> Optional[StreamEvent]:
        if not payload:
            return None
        try:
            data = json.loads(payload)
        except json.JSONDecodeError as e:
            if final and not payload.endswith("}"):
                # Stream cut off inside the last record.
                logger.debug("stream_tail_incomplete", length=len(payload))
                return None
            logger.warning("stream_payload_malformed", event_type=self._event_type, error=str(e))
            return MalformedPayload(event_type=self._event_type, raw=payload, reason=str(e))

        if not isinstance(data, dict):
            return MalformedPayload(event_type=self._event_type, raw=payload, reason="payload is not an object")

        event_type = self._event_type or data.get("type")
        model = EVENT_MODELS.get(event_type) if event_type else None
        if model is None:
            logger.debug("stream_event_ignored", event_type=event_type)
            return None

        try:
            return model.model_validate(data)  # type: ignore[return-value]
        except ValidationError as e:
            logger.warning("stream_payload_invalid", event_type=event_type, errors=e.error_count())
            return MalformedPayload(event_type=event_type, raw=payload, reason=str(e))
