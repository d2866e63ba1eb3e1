"""Turn sandbox output or runtime stacks into fixable error candidates.

Everything here is pure: the same input lines always yield the same candidate.
"""

from __future__ import annotations

import re
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Literal

ErrorOrigin = Literal["build", "runtime"]

OUTPUT_WINDOW_LINES = 60
ERROR_CONTEXT_LINES = 10

_SOURCE_EXTENSIONS = ("tsx", "ts", "jsx", "js", "mjs", "cjs", "vue", "svelte", "css")

# A path fragment rooted at the project's src/ folder, e.g. "src/App.tsx" inside
# "/home/project/src/App.tsx:12:5" or "http://localhost:5173/src/App.tsx?t=1".
SOURCE_FILE_RE = re.compile(
    r"(?<![\w-])(src/(?:[\w.@\[\]-]+/)*[\w.@\[\]-]+?\.(?:"
    + "|".join(_SOURCE_EXTENSIONS)
    + r"))(?![\w-])"
)

_UNRESOLVED_IMPORT_RE = re.compile(
    r"Failed to resolve import\s+[\"']([^\"']+)[\"']\s+from\s+[\"']([^\"']+)[\"']"
)
_MODULE_NOT_FOUND_RE = re.compile(
    r"(?:Cannot find module\s+[\"']([^\"']+)[\"']"
    r"|Module not found:(?:\s*Error:)?\s*Can't resolve\s+[\"']([^\"']+)[\"'])"
)
_NOT_DEFINED_RE = re.compile(r"\b([A-Za-z_$][\w$]*) is not defined\b")
_JS_ERROR_RE = re.compile(
    r"\b(TypeError|ReferenceError|SyntaxError|RangeError|URIError|EvalError):\s*(\S.*)"
)

# Evaluated in this order; the first signature found wins.
_SIGNATURES: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("unresolved_import", _UNRESOLVED_IMPORT_RE),
    ("module_not_found", _MODULE_NOT_FOUND_RE),
    ("not_defined", _NOT_DEFINED_RE),
    ("js_error", _JS_ERROR_RE),
)


@dataclass(frozen=True)
class ErrorCandidate:
    file_path: str
    error_text: str
    origin: ErrorOrigin = "build"
    signature: str | None = None


_TOKEN_BREAK_RE = re.compile(r"[\s\"'(),]")


def find_source_path(text: str) -> str | None:
    text = text or ""
    for m in SOURCE_FILE_RE.finditer(text):
        head = text[: m.start()]
        breaks = list(_TOKEN_BREAK_RE.finditer(head))
        token_prefix = head[breaks[-1].end() :] if breaks else head
        # Dependency sources are not the user's to fix.
        if "node_modules/" in token_prefix:
            continue
        return m.group(1)
    return None


# Vite prefixes each log line with a wall-clock time, e.g. "3:45:12 PM [vite] ".
_LOG_PREFIX_RE = re.compile(r"^\s*\d{1,2}:\d{2}:\d{2}(?:\s*[AP]M)?\s+")


def _context_from(text: str, pos: int) -> str:
    start = text.rfind("\n", 0, pos) + 1
    lines = text[start:].split("\n")
    lines[0] = _LOG_PREFIX_RE.sub("", lines[0])
    return "\n".join(lines[:ERROR_CONTEXT_LINES]).strip()


def from_output(
    lines: Sequence[str], *, window: int = OUTPUT_WINDOW_LINES
) -> ErrorCandidate | None:
    """Look for a build or runtime failure in the most recent output lines.

    A candidate needs both a known error signature and a project source path.
    """
    recent = list(lines)[-window:] if window > 0 else []
    text = "\n".join(recent)
    if not text:
        return None

    for signature, pattern in _SIGNATURES:
        m = pattern.search(text)
        if m is None:
            continue
        file_path = None
        if signature == "unresolved_import":
            importer = m.group(2)
            file_path = find_source_path(importer)
        if file_path is None:
            file_path = find_source_path(text)
        if file_path is None:
            return None
        return ErrorCandidate(
            file_path=file_path,
            error_text=_context_from(text, m.start()),
            origin="build",
            signature=signature,
        )
    return None


def from_runtime_stack(stack: str) -> str | None:
    """Project source path of the first stack frame that has one."""
    return find_source_path(stack or "")
