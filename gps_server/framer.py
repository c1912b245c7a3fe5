from __future__ import annotations

from dataclasses import dataclass


FRAME_TEXT = "text"
FRAME_HEARTBEAT = "heartbeat"
FRAME_DEBUG = "debug"
FRAME_EMPTY = "empty"

HEARTBEAT_SIGNAL = "\x01\x04"
HEARTBEAT_REPLY = HEARTBEAT_SIGNAL.encode("ascii")
DEBUG_MARKERS = frozenset({"DBGON", "Capture Started"})


@dataclass(frozen=True)
class DecodedFrame:
    kind: str
    text: str

    @property
    def is_control(self) -> bool:
        return self.kind in (FRAME_HEARTBEAT, FRAME_DEBUG)


def decode_chunk(chunk: bytes) -> str:
    return chunk.decode("utf-8", errors="replace")


def frame_read_event(chunk: bytes) -> DecodedFrame:
    """Turn one socket read into a single frame.

    Devices send one report per write and the gateway treats every read event
    as one candidate message; nothing is carried over between reads.
    """
    text = decode_chunk(chunk).strip()
    if not text:
        return DecodedFrame(kind=FRAME_EMPTY, text="")
    if HEARTBEAT_SIGNAL in text:
        return DecodedFrame(kind=FRAME_HEARTBEAT, text=text)
    if text in DEBUG_MARKERS:
        return DecodedFrame(kind=FRAME_DEBUG, text=text)
    return DecodedFrame(kind=FRAME_TEXT, text=text)
