"""Best-effort structured extraction from free-text AI responses.

Fallback ladder, first success wins:

1. parse the whole text
2. strip markdown code fences and parse
3. cut out the first balanced ``{...}`` or ``[...]`` block and parse
4. repair smart quotes and trailing commas in that block and parse
5. give up with an error describing the last failure
"""
import json
import re
from dataclasses import dataclass
from typing import Any, Optional

_FENCE = re.compile(r"```(?:json|JSON)?\s*(.*?)```", re.DOTALL)
_TRAILING_COMMA = re.compile(r",\s*([}\]])")
_SMART_QUOTES = {
    "“": '"',
    "”": '"',
    "„": '"',
    "‘": "'",
    "’": "'",
}


@dataclass
class ExtractionResult:
    ok: bool
    value: Any = None
    error: Optional[str] = None
    strategy: Optional[str] = None


def _try(text: str) -> Any:
    return json.loads(text)


def strip_fences(text: str) -> str:
    match = _FENCE.search(text)
    return match.group(1).strip() if match else text.strip()


def find_balanced_block(text: str) -> Optional[str]:
    """First balanced object or array, ignoring brackets inside string literals."""
    start = None
    for i, ch in enumerate(text):
        if ch in "{[":
            start = i
            break
    if start is None:
        return None

    stack = []
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in "{[":
            stack.append("}" if ch == "{" else "]")
        elif ch in "}]":
            if not stack or stack.pop() != ch:
                return None
            if not stack:
                return text[start:i + 1]
    return None


def repair_json(text: str) -> str:
    for smart, plain in _SMART_QUOTES.items():
        text = text.replace(smart, plain)
    return _TRAILING_COMMA.sub(r"\1", text)


def extract_json(text: Optional[str]) -> ExtractionResult:
    """Recover one JSON value from an AI response without raising."""
    if not text or not text.strip():
        return ExtractionResult(ok=False, error="empty response")

    last_error = None
    candidates = [("direct", text.strip())]
    unfenced = strip_fences(text)
    candidates.append(("fences", unfenced))
    block = find_balanced_block(unfenced) or find_balanced_block(repair_json(unfenced))
    if block:
        candidates.append(("balanced", block))
        candidates.append(("repaired", repair_json(block)))

    for strategy, candidate in candidates:
        try:
            return ExtractionResult(ok=True, value=_try(candidate), strategy=strategy)
        except json.JSONDecodeError as e:
            last_error = str(e)

    return ExtractionResult(ok=False, error=last_error or "no JSON block found")
