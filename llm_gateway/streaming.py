#!/usr/bin/env python3
"""
Pseudo-SSE framing used by /infer.

Frames are separated by a blank line, so literal newlines inside a chunk are
replaced with BREAK_TOKEN on the way out and restored by the consumer.
"""

from dataclasses import dataclass
from typing import List, Optional

BREAK_TOKEN = "[BREAK]"
EOF_MARKER = "[EOF]"
FRAME_SEPARATOR = "\n\n"


def escape_chunk(chunk: str) -> str:
    return chunk.replace("\n", BREAK_TOKEN)


def unescape_chunk(data: str) -> str:
    return data.replace(BREAK_TOKEN, "\n")


def data_frame(chunk: str) -> bytes:
    return f"data:{escape_chunk(chunk)}{FRAME_SEPARATOR}".encode("utf-8")


def eof_frame() -> bytes:
    return f"data:{EOF_MARKER}{FRAME_SEPARATOR}".encode("utf-8")


def error_frame(message: str) -> bytes:
    return f"event: error\ndata:{escape_chunk(message)}{FRAME_SEPARATOR}".encode("utf-8")


@dataclass
class Frame:
    data: str
    event: Optional[str] = None

    @property
    def is_eof(self) -> bool:
        return self.event is None and self.data == EOF_MARKER

    @property
    def is_error(self) -> bool:
        return self.event == "error"


class FrameDecoder:
    """Incremental decoder: feed raw text as it arrives, get complete frames back"""

    def __init__(self):
        self._buffer = ""

    def feed(self, text: str) -> List[Frame]:
        self._buffer += text
        frames = []
        while FRAME_SEPARATOR in self._buffer:
            raw, self._buffer = self._buffer.split(FRAME_SEPARATOR, 1)
            frame = self._parse(raw)
            if frame is not None:
                frames.append(frame)
        return frames

    def flush(self) -> List[Frame]:
        """Parse whatever is left once the stream has ended"""
        raw, self._buffer = self._buffer, ""
        frame = self._parse(raw)
        return [frame] if frame is not None else []

    @staticmethod
    def _parse(raw: str) -> Optional[Frame]:
        if not raw.strip():
            return None
        event = None
        data_parts = []
        for line in raw.split("\n"):
            if line.startswith("event:"):
                event = line[len("event:"):].strip()
            elif line.startswith("data:"):
                data_parts.append(line[len("data:"):])
            else:
                data_parts.append(line)
        data = unescape_chunk("\n".join(data_parts))
        return Frame(data=data, event=event)
