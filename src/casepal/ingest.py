"""
Project ingestion: walk a directory and feed changed files to the index.

Files are identified by their path relative to the project root, and a
SHA-256 of the content decides whether a file needs re-indexing.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from pathlib import Path

import pathspec

from casepal.index import SimilarityIndex

logger = logging.getLogger(__name__)

# ─────────────────────────────────────────────────────────────────────────────
# Configuration
# ─────────────────────────────────────────────────────────────────────────────

MAX_FILE_SIZE = 10 * 1024 * 1024  # 10 MB

# Binary/generated file extensions to skip
BINARY_EXTENSIONS = {
    ".pyc", ".pyo", ".so", ".o", ".obj", ".bin", ".exe", ".dll",
    ".class", ".jar", ".war", ".ear",
    ".png", ".jpg", ".jpeg", ".gif", ".ico", ".bmp", ".webp",
    ".mp3", ".mp4", ".avi", ".mov", ".mkv", ".wav", ".flac",
    ".zip", ".tar", ".gz", ".bz2", ".xz", ".7z", ".rar",
    ".pdf", ".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx",
    ".whl", ".egg",
    ".min.js", ".min.css",  # minified files
}


def file_hash(content: str) -> str:
    """SHA-256 hex digest of file content."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def load_gitignore(root: Path) -> pathspec.PathSpec | None:
    """Parse root/.gitignore, or None if it is missing or unreadable."""
    gitignore = root / ".gitignore"
    if not gitignore.exists():
        return None
    try:
        patterns = gitignore.read_text(encoding="utf-8").splitlines()
    except (OSError, UnicodeDecodeError) as e:
        logger.warning("Could not read %s: %s", gitignore, e)
        return None
    return pathspec.PathSpec.from_lines("gitwildmatch", patterns)


def should_index(path: Path, root: Path, ignore_spec: pathspec.PathSpec | None = None) -> bool:
    """
    Check if a file should be indexed.

    Skips:
    - Hidden files/directories (starting with .)
    - Binary files
    - Files over MAX_FILE_SIZE
    - Files matching .gitignore patterns
    """
    try:
        rel = path.relative_to(root)
    except ValueError:
        return False

    if any(part.startswith(".") for part in rel.parts):
        return False

    # Full filename check catches multi-part extensions like .min.js
    name = path.name.lower()
    if any(name.endswith(ext) for ext in BINARY_EXTENSIONS):
        return False

    try:
        if path.stat().st_size > MAX_FILE_SIZE:
            return False
    except OSError:
        return False

    if ignore_spec and ignore_spec.match_file(rel.as_posix()):
        return False

    return True


@dataclass
class FileTracker:
    """Remembers the content hash last indexed for each file id."""

    hashes: dict[str, str] = field(default_factory=dict)

    def has_changed(self, file_id: str, content: str) -> bool:
        return self.hashes.get(file_id) != file_hash(content)

    def mark(self, file_id: str, content: str) -> None:
        self.hashes[file_id] = file_hash(content)

    def clear(self) -> None:
        self.hashes.clear()


def discover_files(root: Path) -> list[Path]:
    """Indexable files under root, sorted by relative path."""
    root = root.resolve()
    ignore_spec = load_gitignore(root)
    files = [
        p for p in root.rglob("*")
        if p.is_file() and should_index(p, root, ignore_spec)
    ]
    return sorted(files, key=lambda p: p.relative_to(root).as_posix())


async def index_directory(
    index: SimilarityIndex,
    root: Path,
    tracker: FileTracker | None = None,
    max_files: int | None = None,
) -> dict:
    """
    Index every changed file under root.

    Args:
        index: Index to add chunks to.
        root: Project root; file ids are paths relative to it.
        tracker: Hash tracker; unchanged files are skipped.
        max_files: Stop after indexing this many files.

    Returns:
        Dict with counts: {"indexed": N, "skipped": M, "chunks": C}
    """
    root = root.resolve()
    tracker = tracker if tracker is not None else FileTracker()
    files = discover_files(root)

    rel_paths = [p.relative_to(root).as_posix() for p in files]
    index.initialize_project_structure({"name": p.rsplit("/", 1)[-1], "path": p} for p in rel_paths)

    indexed = skipped = chunks = 0
    for path, rel_path in zip(files, rel_paths):
        if max_files is not None and indexed >= max_files:
            break
        try:
            content = path.read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            logger.warning("Could not read %s: %s", path, e)
            skipped += 1
            continue

        if not tracker.has_changed(rel_path, content):
            skipped += 1
            continue

        logger.info("Indexing %s", rel_path)
        chunks += await index.add_to_index(rel_path, content, rel_path)
        tracker.mark(rel_path, content)
        indexed += 1

    logger.info("Done: %d indexed, %d skipped, %d chunks", indexed, skipped, chunks)
    return {"indexed": indexed, "skipped": skipped, "chunks": chunks}
