"""
Edit proposals and the search/replace engine.

The model answers with JSON, either {"edits": [...]} or a bare list:

    {"type": "modify", "path": "src/app.py",
     "replacements": [{"search": "old", "replace": "new"}]}
    {"type": "upsert", "path": "src/new.py", "content": "..."}
    {"type": "delete", "path": "src/old.py"}
"""

from __future__ import annotations

import json
import re
from typing import Any, Literal

from loguru import logger
from pydantic import BaseModel, Field, ValidationError, model_validator

from lucidcoder.errors import EditsParseError
from lucidcoder.formatting import normalize_repo_path

_TYPE_ALIASES = {
    "create": "upsert",
    "write": "upsert",
    "replace": "upsert",
    "update": "modify",
    "edit": "modify",
    "remove": "delete",
}


class Replacement(BaseModel):
    search: str
    replace: str = ""


class Edit(BaseModel):
    type: Literal["modify", "upsert", "delete"]
    path: str
    content: str | None = None
    replacements: list[Replacement] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _coerce(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        kind = str(data.get("type") or data.get("action") or "").strip().lower()
        data["type"] = _TYPE_ALIASES.get(kind, kind)
        if "path" not in data and "file" in data:
            data["path"] = data["file"]
        data["path"] = normalize_repo_path(data.get("path"))
        return data

    @model_validator(mode="after")
    def _check_shape(self) -> "Edit":
        if not self.path:
            raise ValueError("edit path is required")
        if self.type == "modify" and not self.replacements:
            raise ValueError("modify edits need at least one replacement")
        if self.type == "upsert" and self.content is None:
            raise ValueError("upsert edits need content")
        return self


class ReplacementError(ValueError):
    def __init__(self, message: str, search: str = ""):
        self.search = search
        super().__init__(message)


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def strip_code_fences(text: str) -> str:
    content = (text or "").strip()
    if content.startswith("```"):
        lines = content.split("\n")
        lines = [l for l in lines if not l.strip().startswith("```")]
        content = "\n".join(lines).strip()
    return content


def find_json_value(text: str) -> Any | None:
    """Decode the first JSON object or array embedded anywhere in text."""
    decoder = json.JSONDecoder()
    for match in re.finditer(r"[\[{]", text):
        try:
            value, _ = decoder.raw_decode(text, match.start())
        except json.JSONDecodeError:
            continue
        if isinstance(value, (dict, list)):
            return value
    return None


def parse_edits(text: str, stage: str | None = None) -> list[Edit]:
    """
    Parse edits from a model response.

    Returns an empty list when the response holds no edits. Raises
    EditsParseError when no JSON can be recovered at all.
    """
    content = strip_code_fences(text)
    if not content:
        return []

    try:
        data = json.loads(content)
    except json.JSONDecodeError:
        data = find_json_value(content)
        if data is None:
            raise EditsParseError(f"Could not parse edits from the {stage or 'model'} response", stage=stage)

    if isinstance(data, dict):
        raw = data.get("edits")
        if raw is None and "path" in data:
            raw = [data]
    else:
        raw = data
    if not isinstance(raw, list):
        return []

    edits = []
    for item in raw:
        try:
            edits.append(Edit.model_validate(item))
        except ValidationError as e:
            logger.warning(f"[EDITS] Dropping invalid edit entry: {e.errors()[0].get('msg', e)}")
    return edits


# ---------------------------------------------------------------------------
# Search / replace
# ---------------------------------------------------------------------------

def _whitespace_pattern(search: str) -> re.Pattern | None:
    tokens = search.split()
    if not tokens:
        return None
    return re.compile(r"\s+".join(re.escape(t) for t in tokens))


def apply_replacements(content: str, replacements: list[Replacement | dict]) -> str:
    """
    Apply replacements in order. Each search must match exactly once,
    first literally, then ignoring whitespace differences.
    """
    updated = content
    for entry in replacements:
        if isinstance(entry, dict):
            try:
                entry = Replacement.model_validate(entry)
            except ValidationError:
                raise ReplacementError("Invalid replacement entry")
        if not isinstance(entry, Replacement) or not entry.search:
            raise ReplacementError("Invalid replacement entry")

        search = entry.search
        count = updated.count(search)
        if count == 1:
            updated = updated.replace(search, entry.replace, 1)
            continue
        if count > 1:
            raise ReplacementError("Replacement search text is ambiguous", search)

        pattern = _whitespace_pattern(search)
        matches = list(pattern.finditer(updated)) if pattern else []
        if not matches:
            raise ReplacementError("Replacement search text not found", search)
        if len(matches) > 1:
            raise ReplacementError("Replacement search text is ambiguous", search)
        start, end = matches[0].span()
        updated = updated[:start] + entry.replace + updated[end:]
    return updated
