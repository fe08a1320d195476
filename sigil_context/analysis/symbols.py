# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""Symbol, import and call extraction.

Python sources are parsed with :mod:`ast`. Brace-delimited languages (Java,
Kotlin, C#, TypeScript, ...) are scanned with regexes after string literals
and comments have been masked, and block extents come from brace matching.
"""

from __future__ import annotations

import ast
import bisect
import logging
import re
from dataclasses import dataclass, field

from ..errors import ParseFailure
from .languages import detect_language, is_brace_language, module_name_for

logger = logging.getLogger(__name__)

CLASS_KINDS = {"class", "interface", "enum", "record", "struct", "trait", "object"}
CALLABLE_KINDS = {"method", "function"}


def split_lines(text: str) -> list[str]:
    """Split on ``\n`` only, so indexes agree with parser line numbers."""
    lines = text.split("\n")
    if lines and lines[-1] == "":
        lines.pop()
    return lines


@dataclass
class Symbol:
    """Represents a code symbol (class, method, function or field)."""

    name: str
    kind: str
    file_path: str
    line: int
    end_line: int = 0
    signature: str | None = None
    scope: str | None = None


@dataclass
class ParsedSource:
    """Everything the graph builder and chunker need from one file."""

    path: str
    language: str
    package: str | None = None
    symbols: list[Symbol] = field(default_factory=list)
    imports: list[str] = field(default_factory=list)
    calls: set[str] = field(default_factory=set)
    type_references: set[str] = field(default_factory=set)
    docstring: str | None = None

    @property
    def module_name(self) -> str:
        return module_name_for(self.path, self.package)

    @property
    def classes(self) -> list[Symbol]:
        return [s for s in self.symbols if s.kind in CLASS_KINDS]

    @property
    def callables(self) -> list[Symbol]:
        return [s for s in self.symbols if s.kind in CALLABLE_KINDS]

    @property
    def class_names(self) -> set[str]:
        return {s.name for s in self.classes}

    @property
    def method_names(self) -> set[str]:
        return {s.name for s in self.callables}

    def members_of(self, class_name: str) -> list[Symbol]:
        return [s for s in self.symbols if s.scope == class_name]


class _PythonVisitor(ast.NodeVisitor):
    """AST visitor to extract symbols from Python code."""

    def __init__(self, parsed: ParsedSource, lines: list[str]):
        self.parsed = parsed
        self.lines = lines
        self.current_class: str | None = None
        self.function_depth = 0

    def _signature(self, node: ast.AST) -> str:
        start = node.lineno - 1
        # Signatures can span lines; stop at the line closing the header.
        for end in range(start, min(start + 10, len(self.lines))):
            if self.lines[end].rstrip().endswith(":"):
                return " ".join(line.strip() for line in self.lines[start : end + 1])
        return self.lines[start].strip() if start < len(self.lines) else ""

    @staticmethod
    def _start_line(node) -> int:
        if getattr(node, "decorator_list", None):
            return min(d.lineno for d in node.decorator_list)
        return node.lineno

    def visit_ClassDef(self, node: ast.ClassDef) -> None:
        if self.function_depth:
            self.generic_visit(node)
            return
        self.parsed.symbols.append(
            Symbol(
                name=node.name,
                kind="class",
                file_path=self.parsed.path,
                line=self._start_line(node),
                end_line=node.end_lineno or node.lineno,
                signature=self._signature(node),
                scope=self.current_class,
            )
        )
        for base in node.bases:
            if isinstance(base, ast.Name):
                self.parsed.type_references.add(base.id)
            elif isinstance(base, ast.Attribute):
                self.parsed.type_references.add(base.attr)
        for stmt in node.body:
            target = None
            if isinstance(stmt, ast.AnnAssign) and isinstance(stmt.target, ast.Name):
                target = stmt.target.id
            elif isinstance(stmt, ast.Assign) and len(stmt.targets) == 1:
                if isinstance(stmt.targets[0], ast.Name):
                    target = stmt.targets[0].id
            if target:
                self.parsed.symbols.append(
                    Symbol(
                        name=target,
                        kind="field",
                        file_path=self.parsed.path,
                        line=stmt.lineno,
                        end_line=stmt.end_lineno or stmt.lineno,
                        signature=self.lines[stmt.lineno - 1].strip(),
                        scope=node.name,
                    )
                )

        old_class = self.current_class
        self.current_class = node.name
        self.generic_visit(node)
        self.current_class = old_class

    def _visit_function(self, node) -> None:
        if not self.function_depth:
            self.parsed.symbols.append(
                Symbol(
                    name=node.name,
                    kind="method" if self.current_class else "function",
                    file_path=self.parsed.path,
                    line=self._start_line(node),
                    end_line=node.end_lineno or node.lineno,
                    signature=self._signature(node),
                    scope=self.current_class,
                )
            )
        self.function_depth += 1
        self.generic_visit(node)
        self.function_depth -= 1

    visit_FunctionDef = _visit_function
    visit_AsyncFunctionDef = _visit_function

    def visit_Import(self, node: ast.Import) -> None:
        for alias in node.names:
            self.parsed.imports.append(alias.name)

    def visit_ImportFrom(self, node: ast.ImportFrom) -> None:
        module = node.module or ""
        if module:
            self.parsed.imports.append(module)
        for alias in node.names:
            if alias.name != "*":
                self.parsed.imports.append(f"{module}.{alias.name}" if module else alias.name)

    def visit_Call(self, node: ast.Call) -> None:
        if isinstance(node.func, ast.Name):
            self.parsed.calls.add(node.func.id)
        elif isinstance(node.func, ast.Attribute):
            self.parsed.calls.add(node.func.attr)
        self.generic_visit(node)

    def visit_Name(self, node: ast.Name) -> None:
        if node.id[:1].isupper():
            self.parsed.type_references.add(node.id)


_MASK_RE = re.compile(
    r'//[^\n]*|/\*.*?\*/|"(?:\\.|[^"\\\n])*"|\'(?:\\.|[^\'\\\n])*\'',
    re.DOTALL,
)
_PACKAGE_RE = re.compile(r"^\s*(?:package|namespace)\s+([\w.]+)", re.M)
_IMPORT_RE = re.compile(r"^\s*(?:import|using)\s+(?:static\s+)?([\w.]+(?:\.\*)?)\s*;?", re.M)
_TYPE_DECL_RE = re.compile(r"\b(class|interface|enum|record|struct|trait|object)\s+([A-Z_]\w*)")
_METHOD_DECL_RE = re.compile(
    r"^[ \t]*(?:@\w+(?:\([^)]*\))?\s+)*"
    r"((?:[\w<>\[\],.?:]+[ \t]+)*)"
    r"([A-Za-z_]\w*)\s*\([^;{)]*\)[^;{}=]*\{",
    re.M,
)
_FIELD_RE = re.compile(r"^\s*(?:[\w<>\[\],.?@]+\s+)+\w+\s*(?:=[^;]*)?;\s*$")
_CALL_RE = re.compile(r"\b([a-z_]\w*)\s*\(")
_TYPE_REF_RE = re.compile(r"\b([A-Z][A-Za-z0-9_]*)\b")

_CONTROL_KEYWORDS = {
    "if", "for", "while", "switch", "catch", "synchronized", "return", "else",
    "do", "try", "finally", "new", "throw", "case", "when", "foreach", "using",
    "lock", "sizeof", "typeof", "assert", "super", "this", "function", "func", "match",
}
_DECL_BLOCKERS = {"new", "return", "throw", "else", "case", "await", "yield"}


def _mask(text: str) -> str:
    """Blank out comments and string literals, preserving offsets and newlines."""
    return _MASK_RE.sub(lambda m: re.sub(r"[^\n]", " ", m.group(0)), text)


class SourceParser:
    """Parses source files into :class:`ParsedSource` records."""

    def parse(self, rel_path: str, text: str) -> ParsedSource:
        """Parse one file; raises :class:`ParseFailure` on malformed input."""
        language = detect_language(rel_path)
        if "\x00" in text:
            raise ParseFailure(rel_path, "binary content")
        if language == "python":
            try:
                return self._parse_python(rel_path, text)
            except RecursionError as exc:
                # Raised by ast on very long expression chains in generated code.
                raise ParseFailure(rel_path, "nesting too deep to parse") from exc
        if is_brace_language(language):
            return self._parse_brace(rel_path, text, language)
        logger.debug("No parser for %s (%s); recording no symbols", rel_path, language)
        return ParsedSource(path=rel_path, language=language)

    def _parse_python(self, rel_path: str, text: str) -> ParsedSource:
        try:
            tree = ast.parse(text, filename=rel_path)
        except (SyntaxError, ValueError) as exc:
            raise ParseFailure(rel_path, str(exc)) from exc

        parsed = ParsedSource(path=rel_path, language="python")
        parsed.docstring = ast.get_docstring(tree)
        _PythonVisitor(parsed, split_lines(text)).visit(tree)
        return parsed

    def _parse_brace(self, rel_path: str, text: str, language: str) -> ParsedSource:
        masked = _mask(text)
        if masked.count("{") != masked.count("}"):
            raise ParseFailure(rel_path, "unbalanced braces")

        lines = split_lines(text)
        line_starts = [0] + [m.end() for m in re.finditer("\n", masked)]

        def line_of(offset: int) -> int:
            return bisect.bisect_right(line_starts, offset)

        def block_end(open_offset: int) -> int:
            depth = 0
            for i in range(open_offset, len(masked)):
                ch = masked[i]
                if ch == "{":
                    depth += 1
                elif ch == "}":
                    depth -= 1
                    if depth == 0:
                        return i
            raise ParseFailure(rel_path, f"unterminated block at line {line_of(open_offset)}")

        parsed = ParsedSource(path=rel_path, language=language)
        package_match = _PACKAGE_RE.search(masked)
        if package_match:
            parsed.package = package_match.group(1)
        parsed.imports = [m.group(1) for m in _IMPORT_RE.finditer(masked)]
        parsed.docstring = _leading_doc_comment(text)

        # (start, end, name) spans of type declarations, outermost first.
        class_spans: list[tuple[int, int, str]] = []
        for match in _TYPE_DECL_RE.finditer(masked):
            brace = masked.find("{", match.end())
            semicolon = masked.find(";", match.end())
            if brace < 0 or (0 <= semicolon < brace):
                continue
            if _TYPE_DECL_RE.search(masked, match.end(), brace):
                continue
            end = block_end(brace)
            name = match.group(2)
            scope = _innermost(class_spans, match.start())
            class_spans.append((brace, end, name))
            decl_start = masked.rfind("\n", 0, match.start()) + 1
            parsed.symbols.append(
                Symbol(
                    name=name,
                    kind=match.group(1),
                    file_path=rel_path,
                    line=line_of(decl_start),
                    end_line=line_of(end),
                    signature=text[decl_start:brace].strip(),
                    scope=scope,
                )
            )

        method_spans: list[tuple[int, int]] = []
        for match in _METHOD_DECL_RE.finditer(masked):
            name = match.group(2)
            modifiers = match.group(1).split()
            if name in _CONTROL_KEYWORDS or _DECL_BLOCKERS.intersection(modifiers):
                continue
            if CLASS_KINDS.intersection(modifiers):
                continue
            start = match.start() + len(match.group(0)) - len(match.group(0).lstrip())
            if any(s < start < e for s, e in method_spans):
                continue
            brace = match.end() - 1
            end = block_end(brace)
            method_spans.append((start, end))
            parsed.symbols.append(
                Symbol(
                    name=name,
                    kind="method",
                    file_path=rel_path,
                    line=line_of(start),
                    end_line=line_of(end),
                    signature=" ".join(text[start:brace].split()),
                    scope=_innermost(class_spans, start),
                )
            )

        for open_offset, end, name in class_spans:
            first = line_of(open_offset) + 1
            last = line_of(end) - 1
            for lineno in range(first, last + 1):
                offset = line_starts[lineno - 1]
                if _innermost(class_spans, offset) != name:
                    continue
                if any(s <= offset <= e for s, e in method_spans):
                    continue
                line = masked[offset : line_starts[lineno] if lineno < len(line_starts) else None]
                if "(" in line or not _FIELD_RE.match(line):
                    continue
                field_name = line.split("=")[0].split()[-1].rstrip(";")
                parsed.symbols.append(
                    Symbol(
                        name=field_name,
                        kind="field",
                        file_path=rel_path,
                        line=lineno,
                        end_line=lineno,
                        signature=lines[lineno - 1].strip(),
                        scope=name,
                    )
                )

        declared = parsed.class_names
        parsed.calls = {
            m.group(1) for m in _CALL_RE.finditer(masked) if m.group(1) not in _CONTROL_KEYWORDS
        }
        parsed.type_references = {
            m.group(1) for m in _TYPE_REF_RE.finditer(masked) if m.group(1) not in declared
        }
        parsed.symbols.sort(key=lambda s: (s.line, s.kind not in CLASS_KINDS))
        return parsed


def _innermost(spans: list[tuple[int, int, str]], offset: int) -> str | None:
    best = None
    best_size = None
    for start, end, name in spans:
        if start < offset < end and (best_size is None or end - start < best_size):
            best, best_size = name, end - start
    return best


def _leading_doc_comment(text: str) -> str | None:
    match = re.search(r"/\*\*(.*?)\*/", text, re.DOTALL)
    if not match:
        return None
    body = [line.strip().lstrip("*").strip() for line in match.group(1).splitlines()]
    body = [line for line in body if line and not line.startswith("@")]
    return " ".join(body) or None
