import codecs
import json
import logging
from typing import List, Union

from pydantic import ValidationError

from querypilot.ai_feature.events import DATA_PREFIX, DONE_MARKER, EVENT_TYPES, AgentEvent, event_adapter

logger = logging.getLogger(__name__)


class FrameDecoder:
    """
    Incremental decoder for the agent event stream.

    Chunks may split lines or multi-byte characters anywhere; incomplete
    input is buffered until the rest arrives. Only `data: ` lines count.
    Malformed JSON and unknown event types are dropped.
    """

    def __init__(self):
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.done = False

    def feed(self, chunk: Union[bytes, str]) -> List[AgentEvent]:
        if isinstance(chunk, bytes):
            chunk = self._utf8.decode(chunk)
        self._buffer += chunk

        *lines, self._buffer = self._buffer.split("\n")
        return self._parse_lines(lines)

    def flush(self) -> List[AgentEvent]:
        """Decode whatever is left once the stream has ended."""
        self._buffer += self._utf8.decode(b"", final=True)
        lines, self._buffer = [self._buffer], ""
        return self._parse_lines(lines)

    def _parse_lines(self, lines: List[str]) -> List[AgentEvent]:
        events = []
        for line in lines:
            line = line.rstrip("\r")
            if not line.startswith(DATA_PREFIX):
                continue
            payload = line[len(DATA_PREFIX):]
            if payload == DONE_MARKER:
                self.done = True
                continue
            event = self._parse_payload(payload)
            if event is not None:
                events.append(event)
        return events

    @staticmethod
    def _parse_payload(payload: str):
        try:
            raw = json.loads(payload)
        except json.JSONDecodeError:
            logger.debug(f"Dropping malformed frame: {payload[:80]}")
            return None
        if not isinstance(raw, dict) or raw.get("type") not in EVENT_TYPES:
            return None
        try:
            return event_adapter.validate_python(raw)
        except ValidationError:
            logger.debug(f"Dropping invalid {raw.get('type')} frame")
            return None
