"""
Project structure tracking: folder tree, import relationships and a
per-file outline of functions and classes.

Imports and definitions are found with regular expressions, not a
parser. Relative import specifiers are resolved against the importing
file's directory; anything else (packages, absolute modules) is
recorded as written.
"""

from __future__ import annotations

import posixpath
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass

# import x from 'y' / export { x } from "y" (may span lines)
_JS_FROM = re.compile(r"""\b(?:import|export)\s[^'";]*?\bfrom\s*['"]([^'"\n]+)['"]""")
# import 'side-effect'
_JS_BARE = re.compile(r"""^\s*import\s*['"]([^'"\n]+)['"]""", re.MULTILINE)
# require('x')
_REQUIRE = re.compile(r"""\brequire\s*\(\s*['"]([^'"\n]+)['"]\s*\)""")
# from x.y import z / from . import z
_PY_FROM = re.compile(r"^[ \t]*from[ \t]+([.\w]+)[ \t]+import\b", re.MULTILINE)
# import x, y.z as w
_PY_IMPORT = re.compile(
    r"^[ \t]*import[ \t]+([\w.]+(?:[ \t]+as[ \t]+\w+)?(?:[ \t]*,[ \t]*[\w.]+(?:[ \t]+as[ \t]+\w+)?)*)[ \t]*;?[ \t]*$",
    re.MULTILINE,
)

# def f / async def f
_PY_DEF = re.compile(r"\bdef\s+(\w+)")
# function f / const f = (a) => ... / const f = (a) { ...
_TS_FUNCTION = re.compile(r"\bfunction\s+(\w+)|\bconst\s+(\w+)\s*=\s*\([^)]*\)\s*(?:=>|\{)")
_JS_FUNCTION = re.compile(r"\bfunction\s+(\w+)")
_CLASS = re.compile(r"\bclass\s+(\w+)")

_FUNCTION_PATTERNS = {".py": _PY_DEF, ".ts": _TS_FUNCTION, ".tsx": _TS_FUNCTION}


def extract_imports(text: str) -> list[str]:
    """Return imported module specifiers in order of first appearance."""
    found: list[tuple[int, str]] = []

    for pattern in (_JS_FROM, _JS_BARE, _REQUIRE, _PY_FROM):
        for match in pattern.finditer(text):
            found.append((match.start(), match.group(1)))

    for match in _PY_IMPORT.finditer(text):
        for name in match.group(1).split(","):
            found.append((match.start(), name.split()[0]))

    seen: set[str] = set()
    modules = []
    for _, module in sorted(found, key=lambda item: item[0]):
        if module not in seen:
            seen.add(module)
            modules.append(module)
    return modules


def _python_relative(module: str) -> str:
    """Rewrite '..pkg.mod' style Python specifiers as '../pkg/mod'."""
    dots = len(module) - len(module.lstrip("."))
    rest = module[dots:].replace(".", "/")
    prefix = "./" if dots == 1 else "../" * (dots - 1)
    return (prefix + rest) if rest else prefix.rstrip("/")


def resolve_import(module: str, importer_path: str) -> str:
    """
    Resolve a module specifier against the path of the file importing it.

    './x' and '../x' collapse against the importer's directory;
    '.x' (Python relative) is treated the same way. Other specifiers are
    returned unchanged.
    """
    if module.startswith(".") and not module.startswith(("./", "../")) and module not in (".", ".."):
        module = _python_relative(module)

    if not (module.startswith(("./", "../")) or module in (".", "..")):
        return module

    base = posixpath.dirname(importer_path.replace("\\", "/"))
    return posixpath.normpath(posixpath.join(base, module))


@dataclass(frozen=True)
class Symbol:
    """A function or class definition and the 1-based line it starts on."""

    kind: str  # "function" or "class"
    name: str
    line: int


def extract_symbols(text: str, path: str) -> list[Symbol]:
    """
    Find function and class definitions in a source file.

    The function pattern depends on the file extension: `def` for Python,
    `function` plus `const f = (...) =>` arrows for TypeScript, and plain
    `function` for everything else.

    Returns:
        Symbols ordered by line, functions before classes on the same line.
    """
    extension = posixpath.splitext(path)[1].lower()
    function_pattern = _FUNCTION_PATTERNS.get(extension, _JS_FUNCTION)

    symbols = []
    for kind, pattern in (("function", function_pattern), ("class", _CLASS)):
        for match in pattern.finditer(text):
            name = next(group for group in match.groups() if group)
            symbols.append(Symbol(kind, name, text.count("\n", 0, match.start()) + 1))
    symbols.sort(key=lambda s: s.line)
    return symbols


class ProjectStructure:
    """Folder tree plus per-file resolved imports and outline for one project."""

    def __init__(self) -> None:
        self.folders: dict[str, set[str]] = {}
        self.relationships: dict[str, set[str]] = {}
        self.symbols: dict[str, list[Symbol]] = {}
        self.paths_by_id: dict[str, str] = {}

    def add_path(self, path: str) -> str:
        """Register a file path and every folder above it."""
        path = posixpath.normpath(path.replace("\\", "/")).lstrip("/")
        parts = path.split("/")
        parent = ""
        for depth, part in enumerate(parts):
            is_dir = depth < len(parts) - 1
            self.folders.setdefault(parent, set()).add(part + "/" if is_dir else part)
            parent = posixpath.join(parent, part) if parent else part
        return path

    def initialize(self, files: Iterable[Mapping[str, str]]) -> None:
        """Register {name, path} entries; path falls back to name."""
        for entry in files:
            path = entry.get("path") or entry.get("name")
            if path:
                self.add_path(path)

    def record_file(self, file_id: str, path: str, text: str) -> set[str]:
        """Record a file's location, its outline and the resolved paths it imports."""
        path = self.add_path(path)
        self.paths_by_id[file_id] = path
        related = {resolve_import(m, path) for m in extract_imports(text)}
        self.relationships[path] = related
        self.symbols[path] = extract_symbols(text, path)
        return related

    def related_files(self, path: str) -> list[str]:
        return sorted(self.relationships.get(path, ()))

    def clear(self) -> None:
        self.folders.clear()
        self.relationships.clear()
        self.symbols.clear()
        self.paths_by_id.clear()

    def _render_folder(self, folder: str, depth: int, lines: list[str]) -> None:
        # Folders before files, each group alphabetical
        children = sorted(self.folders.get(folder, ()), key=lambda c: (not c.endswith("/"), c))
        for child in children:
            lines.append("  " * depth + child)
            if child.endswith("/"):
                name = child.rstrip("/")
                self._render_folder(posixpath.join(folder, name) if folder else name, depth + 1, lines)

    def render(self, file_ids: Iterable[str] | None = None) -> str:
        """
        Render the folder tree followed by each file's imports and outline.

        Args:
            file_ids: Restrict the import and outline listings to these
                files. The tree itself always covers every known path.

        Returns:
            Multi-line text, or "" when nothing is known.
        """
        if not self.folders:
            return ""

        lines: list[str] = []
        self._render_folder("", 0, lines)

        if file_ids is None:
            paths = sorted(self.relationships)
        else:
            paths = sorted({self.paths_by_id[f] for f in file_ids if f in self.paths_by_id})

        import_lines = []
        for path in paths:
            related = self.related_files(path)
            if not related:
                continue
            import_lines.append(path)
            import_lines.extend(f"  -> {dep}" for dep in related)

        if import_lines:
            lines.append("")
            lines.append("Imports:")
            lines.extend(import_lines)

        outline_lines = []
        for path in paths:
            symbols = self.symbols.get(path)
            if not symbols:
                continue
            outline_lines.append(path)
            outline_lines.extend(f"  {s.kind} {s.name} (line {s.line})" for s in symbols)

        if outline_lines:
            lines.append("")
            lines.append("Outline:")
            lines.extend(outline_lines)

        return "\n".join(lines)
