"""Line-bounded sliding-window chunking for markdown memory files."""

from __future__ import annotations

from dataclasses import dataclass
import hashlib

from memory_engine.config import ChunkingConfig

# Token counts are approximated as characters / 4.
CHARS_PER_TOKEN = 4


@dataclass(frozen=True)
class TextChunk:
    """One window of a document; line numbers are 1-indexed and inclusive."""

    start_line: int
    end_line: int
    text: str
    hash: str


def hash_text(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def _window_chars(lines: list[str]) -> int:
    return sum(len(line) + 1 for line in lines)


def chunk_markdown(content: str, config: ChunkingConfig | None = None) -> list[TextChunk]:
    """Split *content* into overlapping windows of whole lines.

    A window is emitted as soon as its size reaches ``tokens * 4`` characters;
    the next window starts with the longest suffix of emitted lines that fits in
    ``overlap * 4`` characters. A single line longer than the target is never
    split.
    """
    cfg = config or ChunkingConfig()
    max_chars = cfg.tokens * CHARS_PER_TOKEN
    overlap_chars = cfg.overlap * CHARS_PER_TOKEN

    lines = content.split("\n")
    chunks: list[TextChunk] = []
    current: list[str] = []
    current_chars = 0
    start_line = 1

    def emit(window: list[str], first_line: int) -> None:
        text = "\n".join(window).strip()
        if text:
            chunks.append(
                TextChunk(
                    start_line=first_line,
                    end_line=first_line + len(window) - 1,
                    text=text,
                    hash=hash_text(text),
                )
            )

    for line in lines:
        current.append(line)
        current_chars += len(line) + 1
        if current_chars < max_chars:
            continue

        emit(current, start_line)

        overlap_count = 0
        overlap_size = 0
        for previous in reversed(current):
            overlap_size += len(previous) + 1
            if overlap_size > overlap_chars:
                break
            overlap_count += 1
        # Always advance by at least one line.
        overlap_count = min(overlap_count, len(current) - 1)

        start_line += len(current) - overlap_count
        current = current[len(current) - overlap_count :]
        current_chars = _window_chars(current)

    if current:
        emit(current, start_line)

    return chunks
