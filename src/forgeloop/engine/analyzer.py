"""Completion gate analysis over one iteration's captured output.

Agents may print plain text or JSON event lines. JSON lines are flattened to
their string leaves before scanning, so a token inside an escaped message body
is seen exactly as the agent wrote it. The completion gate also sees
``key: value`` for boolean and single-line string leaves.
"""

from __future__ import annotations

import json
import re

from forgeloop.engine.models import CompletionVerdict, OutputAnalysis

DEFAULT_COMPLETION_INDICATORS = (
    "STATUS: COMPLETE",
    "TASK_COMPLETE",
    "NO_MORE_WORK",
    "ALL_TASKS_DONE",
)

_EXIT_SIGNAL_PATTERN = re.compile(
    r"(?<![a-z0-9_])exit_signal\"?\s*[:=]\s*\"?(true|false)\b", re.IGNORECASE
)
_PROGRESS_HINTS = ("apply_patch", "updated file", "wrote", "created", "modified")
_SESSION_KEYS = ("session_id", "thread_id", "conversation_id", "id")

Indicators = tuple[str, ...] | list[str]


def analyze_output(output: str, indicators: Indicators = DEFAULT_COMPLETION_INDICATORS) -> OutputAnalysis:
    """Evaluate ``output`` without side effects; absent tokens mean "not complete"."""
    events = _json_events(output or "")
    text = _scan_text(output or "", keyed=True)
    plain = _scan_text(output or "").lower()
    lowered = text.lower()
    verdict = CompletionVerdict(
        indicator_found=_indicator_found(lowered, indicators),
        exit_signal=_last_exit_signal(text),
    )
    return OutputAnalysis(
        verdict=verdict,
        has_progress_hint=any(hint in plain for hint in _PROGRESS_HINTS),
        has_error="error:" in plain or any(_has_error_key(event) for event in events),
        session_id=next(
            (found for found in map(_find_session_id, events) if found is not None), None
        ),
    )


def evaluate_completion(output: str, indicators: Indicators = DEFAULT_COMPLETION_INDICATORS) -> CompletionVerdict:
    return analyze_output(output, indicators).verdict


def summarize_output(output: str, limit: int = 240) -> str:
    """Return the last meaningful line of ``output``, trimmed to ``limit`` characters."""
    for line in reversed(_scan_text(output or "").splitlines()):
        stripped = " ".join(line.split())
        if stripped:
            return stripped if len(stripped) <= limit else stripped[: limit - 3] + "..."
    return ""


def _last_exit_signal(text: str) -> bool:
    matches = _EXIT_SIGNAL_PATTERN.findall(text)
    if not matches:
        return False
    return matches[-1].lower() == "true"


def _indicator_found(lowered: str, indicators: Indicators) -> bool:
    for indicator in indicators:
        needle = indicator.strip().lower()
        if not needle:
            continue
        key, separator, expected = needle.partition(":")
        if not separator or not key.strip():
            if needle in lowered:
                return True
            continue
        # Keyed indicators ("STATUS: COMPLETE"): the last value reported for the key wins.
        pattern = rf"(?<![a-z0-9_]){re.escape(key.strip())}\"?\s*:\s*\"?([^\n\"]*)"
        values = re.findall(pattern, lowered)
        if values and _value_matches(values[-1].strip(), expected.strip()):
            return True
    return False


def _value_matches(found: str, expected: str) -> bool:
    if not found.startswith(expected):
        return False
    rest = found[len(expected) :]
    return not rest or not (rest[0].isalnum() or rest[0] == "_")


def _scan_text(output: str, *, keyed: bool = False) -> str:
    lines: list[str] = []
    for line in output.splitlines():
        payload = _parse_json_line(line)
        if payload is None:
            lines.append(line)
        else:
            lines.extend(_flatten(payload, keyed=keyed))
    return "\n".join(lines)


def _flatten(value: object, key: str | None = None, *, keyed: bool = False) -> list[str]:
    if isinstance(value, str):
        lines = value.splitlines()
        # Quoted forms such as {"exit_signal": "true"} keep their key for the gate.
        if keyed and key and len(lines) == 1:
            return [f"{key}: {lines[0]}", lines[0]]
        return lines
    if isinstance(value, bool):
        return [f"{key}: {str(value).lower()}"] if key else []
    if isinstance(value, dict):
        return [line for k, v in value.items() for line in _flatten(v, str(k), keyed=keyed)]
    if isinstance(value, list):
        return [line for item in value for line in _flatten(item, key, keyed=keyed)]
    return []


def _json_events(output: str) -> list[object]:
    events: list[object] = []
    for line in output.splitlines():
        payload = _parse_json_line(line)
        if payload is not None:
            events.append(payload)
    return events


def _parse_json_line(line: str) -> object | None:
    stripped = line.strip()
    if not stripped.startswith(("{", "[")):
        return None
    try:
        return json.loads(stripped)
    except json.JSONDecodeError:
        return None


def _has_error_key(value: object) -> bool:
    if isinstance(value, dict):
        return "error" in value or any(_has_error_key(item) for item in value.values())
    if isinstance(value, list):
        return any(_has_error_key(item) for item in value)
    return False


def _find_session_id(value: object) -> str | None:
    if isinstance(value, dict):
        for key in _SESSION_KEYS:
            candidate = value.get(key)
            if isinstance(candidate, str) and candidate.strip():
                return candidate.strip()
        for nested in value.values():
            found = _find_session_id(nested)
            if found:
                return found
    elif isinstance(value, list):
        for item in value:
            found = _find_session_id(item)
            if found:
                return found
    return None
