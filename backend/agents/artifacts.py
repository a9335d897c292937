"""Tolerant extraction of file artifacts from free-form model output.

Models format files in many ways. ``parse_artifacts`` runs an ordered list of
strategies, each a small function that can be tested on its own. A strategy
only adds paths that earlier strategies did not find, and some strategies
only run while few files have been found. Paths are normalized to start with
``/``.

``clean_artifacts`` is the final cleanup pass applied to a merged set: it
drops empty and placeholder-only files and generated junk filenames.
"""

import json
import re
from collections.abc import Callable
from dataclasses import dataclass

import structlog

from agents.utils import extract_json_from_response
from models.schemas import ArtifactSet

logger = structlog.get_logger(__name__)

# Substrings of paths that cannot run in the target runtime.
DENIED_PATH_PARTS = (
    "prisma/",
    "server/",
    "api/",
    ".env",
    "docker",
    "/migrations/",
    "schema.prisma",
)

PLACEHOLDER_CONTENTS = frozenset({"...", "// TODO", "/* TODO */", "TODO", "# TODO"})

JUNK_FILENAME_PATTERNS = (
    re.compile(r"^file\d+\.json$", re.IGNORECASE),
    re.compile(r"^data\d+\.json$", re.IGNORECASE),
)

FALLBACK_PATH = "/App.tsx"


def normalize_path(path: str) -> str:
    path = path.strip().strip("\"'`")
    return path if path.startswith("/") else f"/{path}"


def is_denied_path(path: str) -> bool:
    """True if ``path`` matches the runtime deny-list."""
    lowered = path.lower()
    return any(part in lowered for part in DENIED_PATH_PARTS)


def is_junk_filename(path: str) -> bool:
    name = path.rsplit("/", 1)[-1]
    return any(pattern.match(name) for pattern in JUNK_FILENAME_PATTERNS)


def is_placeholder(content: str) -> bool:
    stripped = content.strip()
    return not stripped or stripped in PLACEHOLDER_CONTENTS


def clean_artifacts(artifacts: ArtifactSet) -> ArtifactSet:
    """Drop empty, placeholder-only and junk-named artifacts."""
    cleaned: ArtifactSet = {}
    for path, content in artifacts.items():
        if is_placeholder(content) or is_junk_filename(path):
            logger.debug("artifact_dropped", path=path)
            continue
        cleaned[path] = content
    return cleaned


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------

_FILENAME_ATTR = re.compile(r"```\w*[ \t]*filename=[\"']?([^\"'\s]+)[\"']?[^\n]*\n([\s\S]*?)```")
_COMMENT_FILENAME = re.compile(r"```(\w+)\n(?://|#)\s*(?:filename:?\s*)?(\S+\.\w+)[ \t]*\n([\s\S]*?)```")
_SEPARATOR = re.compile(
    r"//\s*=+\s*/?([^\s=]+\.[A-Za-z]+)\s*=+[ \t]*\n([\s\S]*?)(?=//\s*=+\s*/?[\w/.-]+\.[A-Za-z]+|\Z)"
)
_HEADER = re.compile(
    r"(?:#{2,4}\s+|\*\*)`?/?([\w./-]+\.(?:tsx?|jsx?|css|json|html|md|py))`?(?:\*\*)?[\s:]*\n+```\w*\n([\s\S]*?)```"
)
_LANG_BLOCK = re.compile(r"```(tsx?|jsx?|css|json|html)\n([\s\S]*?)```")
_ANY_BLOCK = re.compile(r"```(?:[\w+-]+)?\n([\s\S]*?)```")
_EXPORTED_FUNCTION = re.compile(r"export (?:default )?function (\w+)")


def from_filename_attribute(text: str) -> ArtifactSet:
    """```tsx filename="/App.tsx" blocks."""
    return {normalize_path(m.group(1)): m.group(2).strip() for m in _FILENAME_ATTR.finditer(text)}


def from_comment_filename(text: str) -> ArtifactSet:
    """Blocks whose first line is a ``// filename: App.tsx`` style comment."""
    return {normalize_path(m.group(2)): m.group(3).strip() for m in _COMMENT_FILENAME.finditer(text)}


def from_json_files(text: str) -> ArtifactSet:
    """A JSON object with a ``files`` mapping."""
    if '"files"' not in text:
        return {}
    parsed = extract_json_from_response(text)
    files = parsed.get("files") if parsed else None
    if not isinstance(files, dict):
        return {}
    return {
        normalize_path(path): content
        for path, content in files.items()
        if isinstance(path, str) and isinstance(content, str)
    }


def from_separators(text: str) -> ArtifactSet:
    """``// ===== /path/file.tsx =====`` separated sections."""
    return {normalize_path(m.group(1)): m.group(2).strip() for m in _SEPARATOR.finditer(text)}


def from_headers(text: str) -> ArtifactSet:
    """A markdown header or bold filename followed by a fenced block."""
    return {normalize_path(m.group(1)): m.group(2).strip() for m in _HEADER.finditer(text)}


def _infer_filename(lang: str, content: str, counter: int) -> str:
    if lang == "css":
        return "/styles.css"
    if lang == "html":
        return "/index.html"
    if lang == "json" and '"dependencies"' in content:
        return "/package.json"
    if "export default function App" in content:
        return "/App.tsx"
    match = _EXPORTED_FUNCTION.search(content)
    if match:
        return f"/components/{match.group(1)}.tsx"
    if "interface " in content and lang.startswith("ts"):
        return "/types.ts"
    return f"/file{counter}.{lang}"


def from_language_inference(text: str) -> ArtifactSet:
    """Name unlabeled blocks from their language and content."""
    files: ArtifactSet = {}
    counter = 0
    for match in _LANG_BLOCK.finditer(text):
        content = match.group(2).strip()
        if not content:
            continue
        counter += 1
        path = _infer_filename(match.group(1), content, counter)
        files.setdefault(path, content)
    return files


def from_first_block(text: str) -> ArtifactSet:
    """Last resort: the first fenced block becomes ``/App.tsx``."""
    match = _ANY_BLOCK.search(text)
    if match and match.group(1).strip():
        return {FALLBACK_PATH: match.group(1).strip()}
    return {}


@dataclass(frozen=True)
class Strategy:
    """One extraction strategy and the condition under which it runs.

    Attributes:
        name: Used in logs.
        extract: Text to artifacts.
        max_found: Only run while fewer than this many files were found;
            None means always run.
    """

    name: str
    extract: Callable[[str], ArtifactSet]
    max_found: int | None = None


STRATEGIES: tuple[Strategy, ...] = (
    Strategy("filename_attribute", from_filename_attribute),
    Strategy("comment_filename", from_comment_filename),
    Strategy("json_files", from_json_files),
    Strategy("separators", from_separators, max_found=1),
    Strategy("headers", from_headers, max_found=2),
    Strategy("language_inference", from_language_inference, max_found=2),
    Strategy("first_block", from_first_block, max_found=1),
)


def parse_artifacts(text: str, strategies: tuple[Strategy, ...] = STRATEGIES) -> ArtifactSet:
    """Extract an artifact set from model output.

    Args:
        text: Raw model output.
        strategies: Ordered strategies. Earlier ones win on duplicate paths,
            and a later strategy never re-adds content already found.

    Returns:
        Path to content, possibly empty.
    """
    files: ArtifactSet = {}
    if not text:
        return files

    for strategy in strategies:
        if strategy.max_found is not None and len(files) >= strategy.max_found:
            continue
        try:
            found = strategy.extract(text)
        except (re.error, json.JSONDecodeError, ValueError) as e:
            logger.warning("artifact_strategy_failed", strategy=strategy.name, error=str(e))
            continue
        seen_contents = set(files.values())
        for path, content in found.items():
            # The same block picked up again under an inferred name
            if path not in files and content not in seen_contents:
                files[path] = content

    if files:
        logger.debug("artifacts_parsed", count=len(files), paths=sorted(files))
    return files
