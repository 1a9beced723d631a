"""Read and write YAML frontmatter on plan phase files.

The sync engine treats this module as its codec: `read_phase_file` turns a
file into string fields plus an opaque body, `write_frontmatter_fields`
merges updates back in without touching the body.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from mission_control.models import ParsedPhaseFile, ParsedPlan

logger = logging.getLogger("mission_control.parsers")

_FRONTMATTER_RE = re.compile(
    r"\A---[ \t]*\r?\n(.*?)^---[ \t]*(?:\r?\n|\Z)(.*)\Z",
    re.DOTALL | re.MULTILINE,
)
_PHASE_FILE_RE = re.compile(r"^phase-(\d{2}).*\.md$")
_UNCHECKED_ITEM_RE = re.compile(r"^- \[ \] (.+)$", re.MULTILINE)

# Two-digit phase file index → pipeline phase
PHASE_INDEX_MAP: dict[str, str] = {
    "01": "requirements",
    "02": "planning",
    "03": "research",
    "04": "implementation",
    "05": "testing",
    "06": "review",
    "07": "deploy",
}

VALID_STATUSES = ("pending", "active", "blocked", "complete", "skipped")


class FrontmatterReadError(OSError):
    """Raised when a markdown file cannot be read."""


class FrontmatterParseError(ValueError):
    """Raised when markdown frontmatter exists but is not valid YAML mapping."""


class FrontmatterWriteError(OSError):
    """Raised when the rewritten markdown file cannot be saved."""


@dataclass
class PhaseFileContent:
    fields: dict[str, str] = field(default_factory=dict)
    body: str = ""
    raw: dict[str, Any] = field(default_factory=dict)


def _split_frontmatter(text: str) -> tuple[str | None, str]:
    """Split a markdown file into (frontmatter_text, body).

    Returns (None, full_text) if no frontmatter is found.
    """
    match = _FRONTMATTER_RE.match(text)
    if not match:
        return None, text
    return match.group(1), match.group(2)


def _rebuild_file(fm_dict: dict, body: str) -> str:
    """Reconstruct a markdown file from frontmatter dict + body."""
    fm_text = yaml.dump(fm_dict, default_flow_style=False, sort_keys=False, allow_unicode=True)
    return f"---\n{fm_text}---\n{body}"


def _load_frontmatter_dict(fm_text: str, file_path: Path) -> dict:
    """Parse YAML frontmatter and ensure it is a mapping."""
    try:
        parsed = yaml.safe_load(fm_text) or {}
    except yaml.YAMLError as exc:
        raise FrontmatterParseError(f"Invalid YAML frontmatter in {file_path}") from exc
    if not isinstance(parsed, dict):
        raise FrontmatterParseError(f"Expected mapping frontmatter in {file_path}")
    return parsed


def _read_text(file_path: Path) -> str:
    try:
        return file_path.read_bytes().decode("utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise FrontmatterReadError(f"Cannot read {file_path}: {exc}") from exc


def stringify_value(value: Any) -> str:
    """Coerce a frontmatter value to the string form used for comparison."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def read_phase_file(file_path: Path | str) -> PhaseFileContent:
    """Parse a phase file into string fields and its untouched body."""
    path = Path(file_path)
    text = _read_text(path)
    fm_text, body = _split_frontmatter(text)
    if fm_text is None:
        return PhaseFileContent(fields={}, body=body, raw={})

    fm_dict = _load_frontmatter_dict(fm_text, path)
    fields = {str(key): stringify_value(value) for key, value in fm_dict.items()}
    return PhaseFileContent(fields=fields, body=body, raw=fm_dict)


def write_frontmatter_fields(file_path: Path | str, updates: dict[str, Any]) -> None:
    """Merge `updates` into a file's YAML frontmatter and write it back.

    The markdown body is preserved byte-for-byte. A file without frontmatter
    gets a new block holding just the updates.
    """
    path = Path(file_path)
    text = _read_text(path)
    fm_text, body = _split_frontmatter(text)

    if fm_text is None:
        fm_dict = dict(updates)
    else:
        fm_dict = _load_frontmatter_dict(fm_text, path)
        fm_dict.update(updates)

    try:
        path.write_bytes(_rebuild_file(fm_dict, body).encode("utf-8"))
    except OSError as exc:
        raise FrontmatterWriteError(f"Cannot write {path}: {exc}") from exc


def _parse_status(raw: Any) -> str:
    if isinstance(raw, str) and raw in VALID_STATUSES:
        return raw
    return "pending"


def _optional_str(raw: Any) -> str | None:
    if raw is None:
        return None
    return stringify_value(raw)


def _safe_read(path: Path) -> PhaseFileContent | None:
    try:
        return read_phase_file(path)
    except (FrontmatterReadError, FrontmatterParseError) as exc:
        logger.warning("Skipping unreadable plan file %s: %s", path, exc)
        return None


def scan_plan_dir(plan_dir: Path | str) -> ParsedPlan:
    """Read plan.md and the phase-NN-*.md files of a plan directory.

    Missing or malformed files are skipped; a missing directory yields an
    empty plan.
    """
    root = Path(plan_dir)
    result = ParsedPlan()

    overview = _safe_read(root / "plan.md") if (root / "plan.md").is_file() else None
    if overview:
        result.title = _optional_str(overview.raw.get("title"))
        result.description = _optional_str(overview.raw.get("description"))
        result.status = _optional_str(overview.raw.get("status"))

    try:
        file_names = sorted(p.name for p in root.iterdir() if p.is_file() and _PHASE_FILE_RE.match(p.name))
    except OSError:
        return result

    for file_name in file_names:
        match = _PHASE_FILE_RE.match(file_name)
        phase = PHASE_INDEX_MAP.get(match.group(1)) if match else None
        if not phase:
            continue

        path = root / file_name
        parsed = _safe_read(path)
        raw = parsed.raw if parsed else {}
        result.phases.append(
            ParsedPhaseFile(
                phase=phase,
                status=_parse_status(raw.get("status")),
                title=_optional_str(raw.get("title")),
                description=_optional_str(raw.get("description")),
                filePath=str(path),
                fileName=file_name,
            )
        )

    return result


def mark_checklist_items(file_path: Path | str, completed_items: list[str]) -> int:
    """Tick `- [ ]` items whose text contains any of `completed_items`.

    Matching is a case-insensitive substring test. Returns the number of
    items ticked; the file is only rewritten when something changed.
    """
    path = Path(file_path)
    if not completed_items:
        return 0
    content = _read_text(path)
    needles = [item.lower() for item in completed_items if item]
    ticked = 0

    def _tick(match: re.Match) -> str:
        nonlocal ticked
        item_text = match.group(1)
        lowered = item_text.lower()
        if any(needle in lowered for needle in needles):
            ticked += 1
            return f"- [x] {item_text}"
        return match.group(0)

    updated = _UNCHECKED_ITEM_RE.sub(_tick, content)
    if ticked:
        try:
            path.write_bytes(updated.encode("utf-8"))
        except OSError as exc:
            raise FrontmatterWriteError(f"Cannot write {path}: {exc}") from exc
    return ticked
