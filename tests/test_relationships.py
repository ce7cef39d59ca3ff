"""Tests for import scanning and folder structure rendering."""

from casepal.relationships import (
    ProjectStructure,
    Symbol,
    extract_imports,
    extract_symbols,
    resolve_import,
)


# ─────────────────────────────────────────────────────────────────────────────
# Import extraction
# ─────────────────────────────────────────────────────────────────────────────


def test_extract_js_imports():
    text = (
        "import React from 'react';\n"
        'import { a, b } from "./utils/a";\n'
        "const b = require('../lib/b');\n"
        "import './styles.css';\n"
        "export { helper } from './helpers';\n"
    )
    assert extract_imports(text) == ["react", "./utils/a", "../lib/b", "./styles.css", "./helpers"]


def test_extract_multiline_js_import():
    text = "import {\n  one,\n  two,\n} from './numbers';\n"
    assert extract_imports(text) == ["./numbers"]


def test_extract_python_imports():
    text = (
        "import os\n"
        "import numpy as np, sys\n"
        "from .models import Chunk\n"
        "from ..core.base import Base\n"
        "\n"
        "def f():\n"
        "    import json\n"
    )
    assert extract_imports(text) == ["os", "numpy", "sys", ".models", "..core.base", "json"]


def test_extract_deduplicates():
    text = "const a = require('x');\nconst b = require('x');\n"
    assert extract_imports(text) == ["x"]


def test_extract_ignores_prose():
    assert extract_imports("We import goods from abroad.") == []


# ─────────────────────────────────────────────────────────────────────────────
# Path resolution
# ─────────────────────────────────────────────────────────────────────────────


def test_resolve_same_directory():
    assert resolve_import("./utils/a", "src/app.ts") == "src/utils/a"


def test_resolve_parent_directory():
    assert resolve_import("../lib/b", "src/app/main.js") == "src/lib/b"


def test_resolve_from_root_file():
    assert resolve_import("./x", "main.ts") == "x"


def test_resolve_non_relative_passthrough():
    assert resolve_import("react", "src/app.ts") == "react"
    assert resolve_import("os.path", "pkg/mod.py") == "os.path"


def test_resolve_python_relative():
    assert resolve_import(".models", "pkg/sub/mod.py") == "pkg/sub/models"
    assert resolve_import("..core.base", "pkg/sub/mod.py") == "pkg/core/base"


def test_resolve_windows_separators():
    assert resolve_import("./b", "src\\a.ts") == "src/b"


# ─────────────────────────────────────────────────────────────────────────────
# Outline extraction
# ─────────────────────────────────────────────────────────────────────────────


def test_extract_python_symbols():
    text = (
        "import os\n"
        "\n"
        "class Parser:\n"
        "    def parse(self):\n"
        "        pass\n"
        "\n"
        "async def main():\n"
        "    undefined = None\n"
    )
    assert extract_symbols(text, "pkg/parser.py") == [
        Symbol("class", "Parser", 3),
        Symbol("function", "parse", 4),
        Symbol("function", "main", 7),
    ]


def test_extract_typescript_symbols():
    text = (
        "export function add(a: number, b: number) { return a + b; }\n"
        "const sub = (a: number, b: number) => a - b;\n"
        "const mul = (a, b) { return a * b; }\n"
        "const limit = 10;\n"
        "export class Calculator {}\n"
    )
    assert extract_symbols(text, "src/calc.TS") == [
        Symbol("function", "add", 1),
        Symbol("function", "sub", 2),
        Symbol("function", "mul", 3),
        Symbol("class", "Calculator", 5),
    ]


def test_extract_javascript_symbols_ignore_arrows():
    text = "function a() {}\nconst b = () => 1;\nclass C {}\n"
    assert [s.name for s in extract_symbols(text, "lib/a.js")] == ["a", "C"]


def test_extract_symbols_python_file_ignores_js_function():
    assert extract_symbols("function notPython() {}\n", "a.py") == []


# ─────────────────────────────────────────────────────────────────────────────
# ProjectStructure
# ─────────────────────────────────────────────────────────────────────────────


def _structure() -> ProjectStructure:
    structure = ProjectStructure()
    structure.initialize([
        {"name": "app.ts", "path": "src/app.ts"},
        {"name": "math.ts", "path": "src/utils/math.ts"},
        {"name": "README.md", "path": ""},
    ])
    return structure


def test_render_tree_and_imports():
    structure = _structure()
    structure.record_file("1", "src/app.ts", "import { add } from './utils/math';\n")

    assert structure.render() == (
        "src/\n"
        "  utils/\n"
        "    math.ts\n"
        "  app.ts\n"
        "README.md\n"
        "\n"
        "Imports:\n"
        "src/app.ts\n"
        "  -> src/utils/math"
    )


def test_render_restricted_to_file_ids():
    structure = _structure()
    structure.record_file("1", "src/app.ts", "import { add } from './utils/math';\n")
    structure.record_file("2", "src/utils/math.ts", "import fs from 'fs';\n")

    rendered = structure.render(["2"])
    assert "src/utils/math.ts\n  -> fs" in rendered
    assert "-> src/utils/math" not in rendered


def test_render_unknown_ids_has_no_imports():
    structure = _structure()
    structure.record_file("1", "src/app.ts", "import x from './x';\n")
    assert "Imports:" not in structure.render(["missing"])


def test_render_empty():
    assert ProjectStructure().render() == ""


def test_record_file_returns_resolved_paths():
    structure = ProjectStructure()
    related = structure.record_file("9", "lib/a.js", "const b = require('./b');\nconst c = require('c');\n")
    assert related == {"lib/b", "c"}
    assert structure.paths_by_id["9"] == "lib/a.js"
    assert structure.related_files("lib/a.js") == ["c", "lib/b"]


def test_clear():
    structure = _structure()
    structure.record_file("1", "src/app.ts", "")
    structure.clear()
    assert structure.render() == ""
    assert structure.paths_by_id == {}


def test_render_outline():
    structure = ProjectStructure()
    structure.record_file("1", "src/calc.py", "class Calc:\n    def add(self, a, b):\n        return a + b\n")
    structure.record_file("2", "src/util.py", "def helper():\n    pass\n")

    rendered = structure.render(["1"])
    assert rendered.endswith(
        "\n\nOutline:\n"
        "src/calc.py\n"
        "  class Calc (line 1)\n"
        "  function add (line 2)"
    )
    assert "helper" not in rendered
    assert "Imports:" not in rendered


def test_clear_drops_outline():
    structure = ProjectStructure()
    structure.record_file("1", "a.py", "def f():\n    pass\n")
    structure.clear()
    assert structure.symbols == {}
