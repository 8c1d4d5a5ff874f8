"""Static checks for generated files.

Checks, per changed file:
- JSON files parse.
- JS/JSX files parse as ES modules with JSX.
- Relative imports in JS/JSX files resolve to a file in the project.
Plus, across the project, no remaining file imports a file being deleted.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
import json
import posixpath
import re
from typing import Protocol

from tree_sitter import Language, Node, Parser
import tree_sitter_javascript

from .schemas import FileAction, ValidationIssue

JS_EXTENSIONS = {".js", ".jsx", ".mjs", ".cjs"}
RESOLVABLE_SUFFIXES = (
    ".js",
    ".jsx",
    ".ts",
    ".tsx",
    "/index.js",
    "/index.jsx",
    "/index.ts",
    "/index.tsx",
)
ASSET_PATTERN = re.compile(r"\.(css|scss|less|svg|png|jpe?g|gif|woff2?|ttf|eot)$")
IMPORT_PATTERN = re.compile(
    r"""(?:import\s+[\s\S]*?from\s+['"]([^'"]+)['"]"""
    r"""|import\s+['"]([^'"]+)['"]"""
    r"""|export\s+[\w\s{},*]*?from\s+['"]([^'"]+)['"]"""
    r"""|require\s*\(\s*['"]([^'"]+)['"]\s*\))"""
)
JS_LANGUAGE = Language(tree_sitter_javascript.language())
_parser = Parser(JS_LANGUAGE)


class SourceFile(Protocol):
    path: str
    content: str


@dataclass
class ValidationReport:
    errors: list[ValidationIssue] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors


def _extension(path: str) -> str:
    return posixpath.splitext(path)[1].lower()


def _resolve_relative(from_file: str, import_path: str) -> str:
    return posixpath.normpath(posixpath.join(posixpath.dirname(from_file), import_path))


def _iter_relative_imports(content: str) -> Iterable[str]:
    for match in IMPORT_PATTERN.finditer(content):
        import_path = next(g for g in match.groups() if g)
        if import_path.startswith("."):
            yield import_path


def _line_of(content: str, needle: str) -> int | None:
    for number, line in enumerate(content.splitlines(), start=1):
        if needle in line:
            return number
    return None


def check_json(path: str, content: str) -> list[ValidationIssue]:
    try:
        json.loads(content)
    except json.JSONDecodeError as e:
        return [ValidationIssue(file=path, line=e.lineno, message=f"Invalid JSON: {e.msg}", type="json")]
    return []


def _first_error(node: Node) -> Node | None:
    if node.is_error or node.is_missing:
        return node
    if not node.has_error:
        return None
    for child in node.children:
        found = _first_error(child)
        if found is not None:
            return found
    return None


def check_js_syntax(path: str, content: str) -> list[ValidationIssue]:
    """Parse JS/JSX source and report the first syntax error."""
    tree = _parser.parse(content.encode())
    node = _first_error(tree.root_node)
    if node is None:
        return []
    if node.is_missing:
        message = f"Missing '{node.type}'"
    else:
        snippet = node.text.decode(errors="replace").strip().splitlines()
        message = f"Unexpected token '{snippet[0][:40]}'" if snippet else "Unexpected token"
    return [ValidationIssue(file=path, line=node.start_point[0] + 1, message=message, type="syntax")]


def check_imports(path: str, content: str, project_paths: set[str]) -> list[ValidationIssue]:
    errors = []
    for import_path in _iter_relative_imports(content):
        if ASSET_PATTERN.search(import_path):
            continue
        base = _resolve_relative(path, import_path)
        if base in project_paths or any(base + suffix in project_paths for suffix in RESOLVABLE_SUFFIXES):
            continue
        errors.append(
            ValidationIssue(
                file=path,
                line=_line_of(content, import_path),
                message=f"Unresolved import '{import_path}': no matching file found in project",
                type="import",
            )
        )
    return errors


def _action(file: SourceFile) -> FileAction:
    return getattr(file, "action", None) or FileAction.MODIFY


def validate_changes(changed: Sequence[SourceFile], all_files: Sequence[SourceFile]) -> ValidationReport:
    """Validate ``changed`` as if applied on top of ``all_files``."""
    deleted = {f.path for f in changed if _action(f) is FileAction.DELETE}
    project_paths = ({f.path for f in all_files} | {f.path for f in changed}) - deleted
    errors: list[ValidationIssue] = []

    for file in changed:
        if _action(file) is FileAction.DELETE or not file.content:
            continue
        ext = _extension(file.path)
        if ext == ".json":
            errors.extend(check_json(file.path, file.content))
        elif ext in JS_EXTENSIONS:
            syntax_errors = check_js_syntax(file.path, file.content)
            errors.extend(syntax_errors)
            if not syntax_errors:
                errors.extend(check_imports(file.path, file.content, project_paths))

    if deleted:
        errors.extend(_deleted_imports(changed, all_files, deleted))
    return ValidationReport(errors=errors)


def validate_files(files: Sequence[SourceFile]) -> ValidationReport:
    """Validate a whole file set."""
    return validate_changes(files, files)


def _deleted_imports(
    changed: Sequence[SourceFile], all_files: Sequence[SourceFile], deleted: set[str]
) -> list[ValidationIssue]:
    latest = {f.path: f.content for f in changed if _action(f) is not FileAction.DELETE}
    errors = []
    for file in all_files:
        if file.path in deleted or _extension(file.path) not in JS_EXTENSIONS:
            continue
        content = latest.get(file.path) or file.content
        if not content:
            continue
        for import_path in _iter_relative_imports(content):
            base = _resolve_relative(file.path, import_path)
            targets = {base} | {base + suffix for suffix in RESOLVABLE_SUFFIXES}
            hit = next((t for t in sorted(targets) if t in deleted), None)
            if hit:
                errors.append(
                    ValidationIssue(
                        file=file.path,
                        line=_line_of(content, import_path),
                        message=f"Imports '{import_path}' which resolves to deleted file '{hit}'",
                        type="deleted-import",
                    )
                )
    return errors
