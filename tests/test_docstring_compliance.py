from __future__ import annotations

import ast
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

_SKIP_DIRS = {".git", "__pycache__", ".pytest_cache", ".mypy_cache", "dist", "build", "venv", ".venv"}


@dataclass(frozen=True)
class Finding:
    path: Path
    lineno: int
    what: str


def _src_root() -> Path:
    return Path(__file__).resolve().parents[1] / "packages" / "companion-bridge-python" / "src"


def _iter_python_files_under(root: Path) -> Iterable[Path]:
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = [d for d in dirnames if d not in _SKIP_DIRS]
        for filename in filenames:
            if filename.endswith(".py"):
                yield Path(dirpath) / filename


def _parse(py_path: Path) -> ast.AST:
    return ast.parse(py_path.read_text(encoding="utf-8"), filename=str(py_path))


def _find_missing_docstrings(py_path: Path) -> list[Finding]:
    missing: list[Finding] = []

    class Visitor(ast.NodeVisitor):
        def __init__(self) -> None:
            self.stack: list[str] = []

        def _check(self, node: ast.AST, name: str) -> None:
            if ast.get_docstring(node) is None:  # type: ignore[arg-type]
                qualname = ".".join(self.stack + [name])
                missing.append(Finding(py_path, getattr(node, "lineno", 0), qualname))
            self.stack.append(name)
            self.generic_visit(node)
            self.stack.pop()

        def visit_ClassDef(self, node: ast.ClassDef) -> None:  # noqa: N802
            self._check(node, node.name)

        def visit_FunctionDef(self, node: ast.FunctionDef) -> None:  # noqa: N802
            self._check(node, node.name)

        def visit_AsyncFunctionDef(self, node: ast.AsyncFunctionDef) -> None:  # noqa: N802
            self._check(node, node.name)

    Visitor().visit(_parse(py_path))
    return missing


def _find_bare_excepts(py_path: Path) -> list[Finding]:
    return [
        Finding(py_path, node.lineno, "bare except")
        for node in ast.walk(_parse(py_path))
        if isinstance(node, ast.ExceptHandler) and node.type is None
    ]


def _report(title: str, findings: list[Finding]) -> None:
    if not findings:
        return
    repo_root = _src_root().parents[2]
    lines = [title]
    for f in sorted(findings, key=lambda m: (str(m.path), m.lineno, m.what)):
        lines.append(f"- {f.path.relative_to(repo_root)}:{f.lineno} {f.what}")
    raise AssertionError("\n".join(lines))


def test_docstrings_present_for_all_defs_under_src() -> None:
    """
    Docstring 合规护栏。

    规则：
    - 扫描 `packages/companion-bridge-python/src` 下所有 `.py` 文件；
    - 对每个 `class/def/async def` 要求存在 docstring（包含嵌套定义与 lambda 以外的闭包）。
    """

    missing: list[Finding] = []
    for py_path in _iter_python_files_under(_src_root()):
        missing.extend(_find_missing_docstrings(py_path))
    _report("missing docstrings:", missing)


def test_no_bare_except_under_src() -> None:
    """worker/host 循环依赖精确的异常分类：`except:` 会把 KeyboardInterrupt/SystemExit 一并吞掉。"""

    found: list[Finding] = []
    for py_path in _iter_python_files_under(_src_root()):
        found.extend(_find_bare_excepts(py_path))
    _report("bare except clauses:", found)
