"""Static health checks for generated artifacts.

The checks are cheap and local: nothing is executed. ``ArtifactValidator``
returns a list of human-readable errors that can be fed straight back into a
fix prompt; an empty list means the artifact set passed.
"""

import ast
import json
import re

from agents.prompts import DISALLOWED_IMPORTS
from models.schemas import ArtifactSet

_SCRIPT_EXTENSIONS = {"js", "jsx", "ts", "tsx", "mjs", "cjs"}
_BRACKET_EXTENSIONS = _SCRIPT_EXTENSIONS | {"css"}

_PAIRS = {")": "(", "]": "[", "}": "{"}

_IMPORT_SOURCES = re.compile(
    r"""(?:\bimport\s+(?:[\w*{}\s,$]+\s+from\s+)?|\bfrom\s+|\brequire\s*\(\s*)["']([^"']+)["']"""
)


def _extension(path: str) -> str:
    name = path.rsplit("/", 1)[-1]
    return name.rsplit(".", 1)[-1].lower() if "." in name else ""


def check_brackets(content: str, allow_line_comments: bool = True) -> str | None:
    """Return an error message if (), [] and {} are unbalanced.

    String literals and comments are skipped. Quoted strings end at a newline,
    so a stray apostrophe in JSX text only hides the rest of its line.
    """
    stack: list[tuple[str, int]] = []
    line = 1
    i = 0
    length = len(content)

    while i < length:
        char = content[i]
        nxt = content[i + 1] if i + 1 < length else ""

        if char == "\n":
            line += 1
        elif char == "/" and nxt == "*":
            end = content.find("*/", i + 2)
            end = length if end == -1 else end + 2
            line += content.count("\n", i, end)
            i = end
            continue
        elif char == "/" and nxt == "/" and allow_line_comments:
            end = content.find("\n", i)
            i = length if end == -1 else end
            continue
        elif char in "\"'`":
            j = i + 1
            while j < length and content[j] != char:
                if content[j] == "\\":
                    j += 1
                elif content[j] == "\n":
                    if char != "`":
                        break
                    line += 1
                j += 1
            i = j + 1 if j < length and content[j] == char else j
            continue
        elif char in "([{":
            stack.append((char, line))
        elif char in _PAIRS:
            if not stack or stack[-1][0] != _PAIRS[char]:
                return f"unexpected '{char}' on line {line}"
            stack.pop()
        i += 1

    if stack:
        opener, opened_on = stack[-1]
        return f"unclosed '{opener}' opened on line {opened_on}"
    return None


def find_disallowed_imports(content: str) -> list[str]:
    """Module names from ``DISALLOWED_IMPORTS`` imported by ``content``."""
    found: list[str] = []
    for match in _IMPORT_SOURCES.finditer(content):
        source = match.group(1).removeprefix("node:")
        for module in DISALLOWED_IMPORTS:
            if (source == module or source.startswith(f"{module}/")) and module not in found:
                found.append(module)
    return found


class ArtifactValidator:
    """Validates an artifact set file by file.

    Usage:
        >>> errors = ArtifactValidator().validate({"/data.json": "{oops"})
        >>> errors[0]
        '/data.json: invalid JSON (Expecting property name enclosed in double quotes at line 1)'
    """

    def validate(self, artifacts: ArtifactSet) -> list[str]:
        errors: list[str] = []
        for path, content in artifacts.items():
            errors.extend(f"{path}: {error}" for error in self.validate_file(path, content))
        return errors

    def validate_file(self, path: str, content: str) -> list[str]:
        ext = _extension(path)
        errors: list[str] = []

        if ext == "json":
            try:
                json.loads(content)
            except json.JSONDecodeError as e:
                errors.append(f"invalid JSON ({e.msg} at line {e.lineno})")
        elif ext == "py":
            try:
                ast.parse(content, filename=path)
            except SyntaxError as e:
                errors.append(f"Python syntax error ({e.msg} at line {e.lineno})")

        if ext in _BRACKET_EXTENSIONS:
            bracket_error = check_brackets(content, allow_line_comments=ext != "css")
            if bracket_error:
                errors.append(f"unbalanced brackets: {bracket_error}")

        if ext in _SCRIPT_EXTENSIONS:
            for module in find_disallowed_imports(content):
                errors.append(
                    f"disallowed import '{module}' (use {DISALLOWED_IMPORTS[module]})"
                )

        return errors
