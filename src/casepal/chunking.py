"""
Line-window chunking for source files.

Files are split into consecutive, non-overlapping windows of CHUNK_SIZE
lines. Each window keeps its line terminators so the chunks of one file
concatenate back into the original text.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

CHUNK_SIZE = 50  # lines per chunk

# Only "\n" ends a line; form feeds and U+2028 stay inside their line
_LINE = re.compile(r"[^\n]*\n|[^\n]+")


@dataclass(frozen=True)
class Chunk:
    """A line-aligned slice of a source file."""

    file_id: str
    text: str
    start_line: int
    end_line: int
    file_path: str | None = None

    @property
    def line_count(self) -> int:
        return self.end_line - self.start_line + 1

    def metadata(self) -> dict:
        """Flat metadata for the vector store (no None values)."""
        meta = {
            "file_id": self.file_id,
            "text": self.text,
            "start_line": self.start_line,
            "end_line": self.end_line,
        }
        if self.file_path:
            meta["file_path"] = self.file_path
        return meta


def chunk_text(
    text: str,
    file_id: str,
    file_path: str | None = None,
    chunk_size: int = CHUNK_SIZE,
) -> list[Chunk]:
    """
    Split text into chunks of at most chunk_size lines.

    Args:
        text: Full file contents.
        file_id: Identifier of the owning file.
        file_path: Optional logical path of the file.
        chunk_size: Lines per chunk; the last chunk takes the remainder.

    Returns:
        Chunks in file order. Empty text produces no chunks.
    """
    if chunk_size < 1:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")

    lines = _LINE.findall(text)
    total = len(lines)
    chunks = []

    for i in range(0, total, chunk_size):
        window = lines[i : i + chunk_size]
        chunks.append(Chunk(
            file_id=file_id,
            text="".join(window),
            start_line=i + 1,
            end_line=min(i + chunk_size, total),
            file_path=file_path,
        ))

    return chunks
