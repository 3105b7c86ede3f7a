"""
Window Segmenter

Splits a conversation into fixed-size message windows for the decision
detector. Pure and deterministic: the same messages always produce the same
windows.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Sequence, Tuple

from ..common.schemas import Message

DEFAULT_WINDOW_SIZE = 10


@dataclass(frozen=True)
class Window:
    """A contiguous, timestamp-ordered slice of one conversation"""
    index: int
    conversation_id: str
    messages: Tuple[Message, ...]

    @property
    def start(self) -> Optional[datetime]:
        return self.messages[0].timestamp if self.messages else None

    @property
    def end(self) -> Optional[datetime]:
        return self.messages[-1].timestamp if self.messages else None

    @property
    def context(self) -> str:
        """Prompt text: one ``[<iso timestamp>] <author>: <text>`` line per message"""
        return "\n".join(m.format_line() for m in self.messages)

    @property
    def authors(self) -> List[str]:
        seen = []
        for m in self.messages:
            if m.author not in seen:
                seen.append(m.author)
        return seen

    def __len__(self) -> int:
        return len(self.messages)


def segment(
    messages: Sequence[Message],
    window_size: int = DEFAULT_WINDOW_SIZE,
    overlap: int = 0,
    conversation_id: Optional[str] = None,
) -> List[Window]:
    """
    Partition messages into windows.

    Messages are stable-sorted by timestamp, then cut into consecutive chunks
    of at most ``window_size``; the trailing partial chunk is kept. With
    ``overlap > 0`` each window starts ``window_size - overlap`` messages after
    the previous one.

    Args:
        messages: Messages of one conversation, in any order
        window_size: Maximum messages per window (>= 1)
        overlap: Messages shared by consecutive windows (0 <= overlap < window_size)
        conversation_id: Defaults to the first message's conversation id

    Returns:
        Windows in chronological order
    """
    if window_size < 1:
        raise ValueError("window_size must be >= 1")
    if overlap < 0 or overlap >= window_size:
        raise ValueError("overlap must satisfy 0 <= overlap < window_size")
    if not messages:
        return []

    ordered = sorted(messages, key=lambda m: m.timestamp)
    cid = conversation_id or ordered[0].conversation_id
    step = window_size - overlap

    windows = []
    start = 0
    while start < len(ordered):
        chunk = tuple(ordered[start:start + window_size])
        windows.append(Window(index=len(windows), conversation_id=cid, messages=chunk))
        if start + window_size >= len(ordered):
            break
        start += step
    return windows
