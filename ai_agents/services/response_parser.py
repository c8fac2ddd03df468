"""
Parsing helpers for assistant replies.

Structured replies (questions/suggestions) are JSON arrays that the assistant may wrap
in fences or prose. Finalize replies are plain text split on section markers.
"""
from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .errors import ParseError
from .models import Question, Suggestion
from .prompt_builder import ACCEPTANCE_CRITERIA_MARKER, USER_STORY_MARKER

USER_STORY_MARKERS: Tuple[str, ...] = (USER_STORY_MARKER, "【用戶故事】")
ACCEPTANCE_CRITERIA_MARKERS: Tuple[str, ...] = (ACCEPTANCE_CRITERIA_MARKER, "【驗收標準】")

_FENCE_PATTERN = re.compile(r"```[ \t]*[A-Za-z0-9_-]*[ \t]*\r?\n?(.*?)```", re.DOTALL)
_CRITERION_PATTERN = re.compile(r"^[1-5]\.\s*(.*)$")

_MISSING = object()


@dataclass
class StructuredReply:
    records: List[Dict[str, Any]]
    raw: str

    def as_questions(self) -> List[Question]:
        return [Question(role=r["role"], prompt=list(r["prompt"]), answer=r.get("answer")) for r in self.records]

    def as_suggestions(self) -> List[Suggestion]:
        return [Suggestion(role=r["role"], prompt=list(r["prompt"])) for r in self.records]


@dataclass
class SectionReply:
    user_story: str
    acceptance_criteria: List[str] = field(default_factory=list)
    raw: str = ""


def parse_structured(raw: str) -> StructuredReply:
    """Deserialize a role-tagged JSON array; raises ParseError carrying the raw text."""
    value = _extract_json_value(raw or "")
    if value is _MISSING:
        raise ParseError("failed to parse structured reply from AI", raw=raw or "")

    items = _unwrap_array(value)
    if items is None:
        raise ParseError("structured reply is not a JSON array", raw=raw)

    records: List[Dict[str, Any]] = []
    for index, item in enumerate(items):
        if not isinstance(item, dict) or not str(item.get("role") or "").strip():
            raise ParseError(
                f"structured reply entry {index} has no role",
                raw=raw,
                details={"index": index},
            )
        record: Dict[str, Any] = {"role": str(item["role"]), "prompt": _coerce_prompts(item.get("prompt"))}
        answer = item.get("answer")
        if answer not in (None, ""):
            record["answer"] = str(answer)
        records.append(record)
    return StructuredReply(records=records, raw=raw)


def parse_sections(raw: str) -> SectionReply:
    """
    Split a finalize reply into the story and acceptance criteria.

    Falls back to the whole reply as the story when either marker is missing.
    """
    raw = raw or ""
    story_at, story_marker = _find_marker(raw, USER_STORY_MARKERS)
    criteria_at, criteria_marker = _find_marker(raw, ACCEPTANCE_CRITERIA_MARKERS)
    if story_at == -1 or criteria_at == -1 or criteria_at < story_at:
        return SectionReply(user_story=raw, acceptance_criteria=[], raw=raw)

    story = raw[story_at + len(story_marker) : criteria_at].strip()
    criteria: List[str] = []
    for line in raw[criteria_at + len(criteria_marker) :].splitlines():
        match = _CRITERION_PATTERN.match(line.strip())
        if not match:
            continue
        item = match.group(1).strip()
        if item:
            criteria.append(item)
    return SectionReply(user_story=story, acceptance_criteria=criteria, raw=raw)


# ---------- helpers ----------
def _find_marker(text: str, markers: Sequence[str]) -> Tuple[int, str]:
    for marker in markers:
        index = text.find(marker)
        if index != -1:
            return index, marker
    return -1, ""


def _extract_json_value(text: str) -> Any:
    stripped = text.strip()
    if not stripped:
        return _MISSING
    try:
        return json.loads(stripped)
    except json.JSONDecodeError:
        pass

    for block in _FENCE_PATTERN.findall(stripped):
        try:
            return json.loads(block.strip())
        except json.JSONDecodeError:
            continue

    # prose may carry stray brackets such as "step [1]"; prefer a record-shaped value
    decoder = json.JSONDecoder()
    first: Any = _MISSING
    for index, char in enumerate(stripped):
        if char not in "[{":
            continue
        try:
            value, _ = decoder.raw_decode(stripped, index)
        except json.JSONDecodeError:
            continue
        if not isinstance(value, (list, dict)):
            continue
        if _is_record_list(_unwrap_array(value)):
            return value
        if first is _MISSING:
            first = value
    return first


def _unwrap_array(value: Any) -> Optional[List[Any]]:
    if isinstance(value, list):
        return value
    if isinstance(value, dict):
        # a lone record holds its own prompt list
        if "role" in value:
            return [value]
        lists = [v for v in value.values() if isinstance(v, list)]
        if len(lists) == 1:
            return lists[0]
    return None


def _is_record_list(items: Optional[List[Any]]) -> bool:
    return bool(items) and all(isinstance(item, dict) and "role" in item for item in items)


def _coerce_prompts(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, list):
        return [str(item) for item in value]
    return [str(value)]
