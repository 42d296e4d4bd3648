"""
Extractors for a streamed diagnosis response.

The model answers with an optional reasoning block followed by a JSON block:

    <thought>Water staining around the trap.</thought>
    <json>{"diagnosis": "Leaking P-Trap", "trade": "Plumber", ...}</json>

Every function here is pure and is called on the *whole* buffer each time a
chunk arrives, so they must be cheap and must never raise on half-written
input. "Not parseable yet" is reported as ``None``.
"""

import json
import re
from functools import lru_cache
from typing import NamedTuple, Optional, Sequence, Tuple

REASONING_TAGS = ("thought", "thought_process")
JSON_TAGS = ("json", "diagnosis_data")


class TagMatch(NamedTuple):
    text: str
    closed: bool


class JsonFragment(NamedTuple):
    text: str
    is_complete: bool


class ExtractedJson(NamedTuple):
    data: dict
    is_complete: bool


@lru_cache(maxsize=None)
def _tag_regex(names: Tuple[str, ...]) -> "re.Pattern[str]":
    alt = "|".join(re.escape(n) for n in names)
    return re.compile(
        rf"<(?:{alt})>(?P<body>[\s\S]*?)(?P<close></(?:{alt})>|\Z)",
        re.IGNORECASE,
    )


@lru_cache(maxsize=None)
def _field_regex(field: str) -> "re.Pattern[str]":
    return re.compile(rf'"{re.escape(field)}"\s*:\s*"((?:[^"\\]|\\.)+)"', re.IGNORECASE)


_REASONING_FENCE_RE = re.compile(r"```thought\s*(?P<body>[\s\S]*?)(?P<close>```|\Z)", re.IGNORECASE)
_JSON_TAG_RE = _tag_regex(JSON_TAGS)
_BARE_OBJECT_RE = re.compile(r"\{[\s\S]*\}")

_STRAY_REASONING_MARKERS = re.compile(r"</?(?:thought|thought_process)>|```(?:thought)?", re.IGNORECASE)
# A marker the model has only half written when the buffer was cut
_TRAILING_PARTIAL_MARKER = re.compile(r"(?:</?[A-Za-z_]*|`{1,2})\Z")
_PAYLOAD_START = re.compile(r"<(?:json|diagnosis_data)>|```json", re.IGNORECASE)


# ---------------- Tag extractor ----------------
def extract_tag(buffer: str, names: Sequence[str] = REASONING_TAGS) -> Optional[TagMatch]:
    """Return the body of the first ``<name>`` region, open-ended if unclosed."""
    if not buffer:
        return None
    m = _tag_regex(tuple(names)).search(buffer)
    if not m:
        return None
    return TagMatch(m.group("body"), bool(m.group("close")))


def extract_reasoning(buffer: str) -> Optional[str]:
    """
    Reasoning text for live display.

    Accepts ``<thought>``/``<thought_process>`` tags and falls back to a
    fenced ```thought block. Returns None when neither opener is present.
    """
    match = extract_tag(buffer, REASONING_TAGS)
    if match is None:
        m = _REASONING_FENCE_RE.search(buffer or "")
        if not m:
            return None
        match = TagMatch(m.group("body"), bool(m.group("close")))

    text = match.text
    if not match.closed:
        # An unclosed region runs to end of buffer; do not swallow the payload
        payload = _PAYLOAD_START.search(text)
        if payload:
            text = text[:payload.start()]
        text = _TRAILING_PARTIAL_MARKER.sub("", text)
    text = _STRAY_REASONING_MARKERS.sub("", text)
    return text.strip()


# ---------------- Incremental JSON extractor ----------------
def _strip_fences(s: str) -> str:
    s = s.strip()
    if s.startswith("```"):
        s = re.sub(r"^```[\w-]*\s*", "", s)
    s = re.sub(r"\s*```$", "", s)
    return s.strip()


def locate_json(buffer: str) -> Optional[JsonFragment]:
    """
    Find the JSON payload region.

    Preference order:
      1) <json>/<diagnosis_data> tag; complete only if the closing tag is there
      2) bare {...} from the first '{' to the last '}' (never complete)
    """
    if not buffer:
        return None
    m = _JSON_TAG_RE.search(buffer)
    if m:
        return JsonFragment(_strip_fences(m.group("body")), bool(m.group("close")))
    m = _BARE_OBJECT_RE.search(buffer)
    if m:
        return JsonFragment(_strip_fences(m.group(0)), False)
    return None


def parse_fragment(fragment: JsonFragment) -> Optional[dict]:
    """
    Best-effort parse of a possibly truncated fragment.

    An incomplete fragment is cut back to its last '}' so the newest,
    half-written field is dropped and the rest of the object still parses.
    """
    text = fragment.text
    if not text:
        return None
    if not fragment.is_complete and not text.endswith("}"):
        last_brace = text.rfind("}")
        if last_brace == -1:
            return None
        text = text[:last_brace + 1]
    try:
        data = json.loads(text)
    except (ValueError, RecursionError):
        return None
    return data if isinstance(data, dict) else None


def extract_json(buffer: str, final: bool = False) -> Optional[ExtractedJson]:
    """
    Locate and parse the payload. ``final`` marks the end-of-stream pass,
    where whatever parses is taken as complete.
    """
    fragment = locate_json(buffer)
    if fragment is None:
        return None
    data = parse_fragment(fragment)
    if data is None:
        return None
    return ExtractedJson(data, fragment.is_complete or final)


# ---------------- Field sniffer ----------------
def sniff_field(fragment: str, field: str) -> Optional[str]:
    """First complete ``"field": "value"`` string in a possibly invalid fragment."""
    if not fragment:
        return None
    m = _field_regex(field).search(fragment)
    if not m:
        return None
    raw = m.group(1)
    try:
        value = json.loads(f'"{raw}"')
    except ValueError:
        value = raw
    value = value.strip()
    return value or None
