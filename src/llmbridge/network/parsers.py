import json
import logging
from dataclasses import dataclass
from typing import Any, List, Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class SSEEvent:
    data: str
    event: Optional[str] = None
    id: Optional[str] = None


def _field_value(line: str, name: str) -> Optional[str]:
    prefix = f"{name}:"
    if not line.startswith(prefix):
        return None
    value = line[len(prefix):]
    if value.startswith(" "):
        value = value[1:]
    return value


def split_framed_events(text: str) -> Tuple[List[SSEEvent], str]:
    """Parse complete SSE frames and return them with the unconsumed tail.

    A frame is complete once a blank line follows it. Everything after the last
    blank line is returned untouched so a caller can prepend it to the next
    read.
    """
    events: List[SSEEvent] = []
    data_lines: List[str] = []
    event_name: Optional[str] = None
    event_id: Optional[str] = None
    consumed = 0
    position = 0

    lines = text.split("\n")
    # the last segment has no terminating newline yet
    for raw_line in lines[:-1]:
        position += len(raw_line) + 1
        line = raw_line.rstrip("\r")
        if line.strip() == "":
            if data_lines:
                events.append(SSEEvent(data="\n".join(data_lines), event=event_name, id=event_id))
            data_lines = []
            event_name = None
            event_id = None
            consumed = position
            continue
        if line.startswith(":"):
            continue
        data = _field_value(line, "data")
        if data is not None:
            data_lines.append(data)
            continue
        name = _field_value(line, "event")
        if name is not None:
            event_name = name.strip()
            continue
        ident = _field_value(line, "id")
        if ident is not None:
            event_id = ident.strip()
    return events, text[consumed:]


def parse_framed_events(text: str) -> List[SSEEvent]:
    events, _ = split_framed_events(text)
    return events


def parse_line_records(text: str) -> List[Any]:
    records: List[Any] = []
    for line in text.split("\n"):
        candidate = line.strip()
        if not candidate:
            continue
        try:
            records.append(json.loads(candidate))
        except json.JSONDecodeError as exc:
            logger.warning("dropping malformed record line=%r error=%s", candidate[:200], exc)
    return records


def parse_chunked_text(text: str) -> List[str]:
    return [line.strip() for line in text.split("\n") if line.strip()]


__all__ = [
    "SSEEvent",
    "parse_chunked_text",
    "parse_framed_events",
    "parse_line_records",
    "split_framed_events",
]
