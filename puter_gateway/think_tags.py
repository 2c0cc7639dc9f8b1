from __future__ import annotations

from typing import Literal

OPEN_TAG = "<think>"
CLOSE_TAG = "</think>"
MAX_TAIL_CHARS = len(CLOSE_TAG) - 1

SegmentKind = Literal["content", "reasoning"]


class ThinkTagSplitter:
    """Incremental splitter for inline ``<think>...</think>`` reasoning.

    Text outside the tags is content and text between them is reasoning.
    A suffix that could still grow into either tag is held back (at most
    seven characters) until the next chunk decides it, so a tag is never
    emitted in pieces. Unmatched tags only switch state and are dropped.
    """

    def __init__(self) -> None:
        self._inside = False
        self._tail = ""

    @property
    def inside(self) -> bool:
        return self._inside

    def feed(self, text: str) -> list[tuple[SegmentKind, str]]:
        segments: list[tuple[SegmentKind, str]] = []
        buffer = self._tail + text
        self._tail = ""
        while buffer:
            open_at = buffer.find(OPEN_TAG)
            close_at = buffer.find(CLOSE_TAG)
            hits = [
                (index, tag)
                for index, tag in ((open_at, OPEN_TAG), (close_at, CLOSE_TAG))
                if index >= 0
            ]
            if not hits:
                keep = _partial_tag_length(buffer)
                self._emit(segments, buffer[: len(buffer) - keep])
                self._tail = buffer[len(buffer) - keep :]
                break
            index, tag = min(hits)
            self._emit(segments, buffer[:index])
            self._inside = tag == OPEN_TAG
            buffer = buffer[index + len(tag) :]
        return segments

    def flush(self) -> list[tuple[SegmentKind, str]]:
        segments: list[tuple[SegmentKind, str]] = []
        self._emit(segments, self._tail)
        self._tail = ""
        return segments

    def _emit(self, segments: list[tuple[SegmentKind, str]], text: str) -> None:
        if not text:
            return
        kind: SegmentKind = "reasoning" if self._inside else "content"
        if segments and segments[-1][0] == kind:
            segments[-1] = (kind, segments[-1][1] + text)
        else:
            segments.append((kind, text))


def split_think_tags(text: str) -> tuple[str, str | None]:
    """Return ``(content, reasoning)`` for a complete piece of text."""
    splitter = ThinkTagSplitter()
    segments = splitter.feed(text) + splitter.flush()
    content = "".join(part for kind, part in segments if kind == "content")
    reasoning_parts = [part for kind, part in segments if kind == "reasoning"]
    if not reasoning_parts and OPEN_TAG not in text:
        return content, None
    reasoning = "".join(reasoning_parts)
    return content.strip(), reasoning or None


def _partial_tag_length(buffer: str) -> int:
    for length in range(min(MAX_TAIL_CHARS, len(buffer)), 0, -1):
        suffix = buffer[-length:]
        if OPEN_TAG.startswith(suffix) or CLOSE_TAG.startswith(suffix):
            return length
    return 0
