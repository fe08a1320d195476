# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""Language and file classification helpers."""

from __future__ import annotations

from pathlib import Path

EXT_LANGUAGE_MAP = {
    ".py": "python",
    ".pyw": "python",
    ".pyi": "python",
    ".java": "java",
    ".kt": "kotlin",
    ".kts": "kotlin",
    ".scala": "scala",
    ".groovy": "groovy",
    ".js": "javascript",
    ".jsx": "javascript",
    ".mjs": "javascript",
    ".ts": "typescript",
    ".tsx": "typescript",
    ".go": "go",
    ".cs": "csharp",
    ".rs": "rust",
    ".cpp": "cpp",
    ".cc": "cpp",
    ".hpp": "cpp",
    ".c": "c",
    ".h": "c",
    ".swift": "swift",
    ".php": "php",
}

# Languages whose blocks are delimited by braces and parsed with regexes.
BRACE_LANGUAGES = {
    "java",
    "kotlin",
    "scala",
    "groovy",
    "javascript",
    "typescript",
    "go",
    "csharp",
    "rust",
    "cpp",
    "c",
    "swift",
    "php",
}

# Languages where a class usually lives in a file named after it.
CLASS_PER_FILE_LANGUAGES = {"java", "kotlin", "scala", "groovy", "csharp"}


def detect_language(path: str | Path) -> str:
    """Map a path to a language name, or "text" when unknown."""
    return EXT_LANGUAGE_MAP.get(Path(path).suffix.lower(), "text")


def is_brace_language(language: str) -> bool:
    return language in BRACE_LANGUAGES


def module_name_for(rel_path: str, package: str | None = None) -> str:
    """Dotted module name for a repository-relative path.

    Python paths map to their import path (``pkg/mod.py`` -> ``pkg.mod``);
    other languages use the declared package plus the file stem.
    """
    path = Path(rel_path)
    if detect_language(path) == "python":
        parts = list(path.with_suffix("").parts)
        if parts and parts[-1] == "__init__":
            parts = parts[:-1]
        return ".".join(parts)
    if package:
        return f"{package}.{path.stem}"
    return path.stem
