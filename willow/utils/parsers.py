"""Parsing utilities for directive blocks embedded in streamed replies."""
import json
import logging
import re
from typing import NamedTuple

from pydantic import ValidationError

from willow.models import Directive

logger = logging.getLogger(__name__)

DIRECTIVE_BEGIN = "<extract>"
DIRECTIVE_END = "</extract>"

# Complete, closed directive region (non-greedy: first region only)
DIRECTIVE_PATTERN = re.compile(
    re.escape(DIRECTIVE_BEGIN) + r"(.*?)" + re.escape(DIRECTIVE_END),
    re.DOTALL,
)

_CODE_FENCE_PATTERN = re.compile(r"```(?:json)?\s*\n?(.*?)```", re.DOTALL)
_BRACE_PATTERN = re.compile(r"\{.*\}", re.DOTALL)


class ParsedReply(NamedTuple):
    display_text: str
    directive: Directive | None


def parse_reply(text: str) -> ParsedReply:
    """Split accumulated reply text into user-visible text and its directive.

    Safe on every partial chunk of a still-streaming buffer: an unclosed
    region or a half-typed begin marker at the tail is hidden from the
    display text and yields no directive.
    """
    match = DIRECTIVE_PATTERN.search(text)
    directive = parse_directive(match.group(1)) if match else None
    return ParsedReply(strip_directive(text), directive)


def parse_directive(block_text: str) -> Directive | None:
    """Parse the contents of one directive region. Returns None when malformed."""
    try:
        data = json.loads(block_text.strip())
    except (json.JSONDecodeError, ValueError) as e:
        logger.warning(f"[Parser] Directive is not valid JSON: {e}")
        return None
    if not isinstance(data, dict):
        logger.warning(f"[Parser] Directive is not an object: {type(data).__name__}")
        return None
    try:
        return Directive.model_validate(data)
    except ValidationError as e:
        logger.warning(f"[Parser] Directive failed validation: {e.error_count()} error(s)")
        return None


def strip_directive(text: str) -> str:
    """Remove directive regions from reply text before showing it to the user."""
    cleaned = DIRECTIVE_PATTERN.sub("", text)
    # Unclosed region still streaming in
    open_idx = cleaned.find(DIRECTIVE_BEGIN)
    if open_idx != -1:
        cleaned = cleaned[:open_idx]
    partial = _partial_begin_marker(cleaned)
    if partial:
        cleaned = cleaned[:-partial]
    return cleaned.strip()


def _partial_begin_marker(text: str) -> int:
    """Return the length of a potential partial <extract> marker at the end of text.

    Returns 0 if the tail cannot be a prefix of the marker.
    """
    for size in range(len(DIRECTIVE_BEGIN) - 1, 0, -1):
        if text.endswith(DIRECTIVE_BEGIN[:size]):
            return size
    return 0


def parse_json_object(text: str) -> dict | None:
    """Recover a JSON object from a model reply.

    Tries a direct parse, then a fenced code block, then the outermost
    ``{...}`` span. Returns None when no object can be recovered.
    """
    text = text.strip()
    candidates = [text]
    fence = _CODE_FENCE_PATTERN.search(text)
    if fence:
        candidates.append(fence.group(1).strip())
    brace = _BRACE_PATTERN.search(text)
    if brace:
        candidates.append(brace.group(0))

    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except (json.JSONDecodeError, ValueError):
            continue
        if isinstance(parsed, dict):
            return parsed
    logger.warning(f"[Parser] No JSON object recoverable from: {text[:200]}")
    return None


def format_transcript(messages: list[dict]) -> str:
    """Render a transcript as plain text for full-transcript extraction."""
    return "\n\n".join(
        f"{'Caregiver' if m['role'] == 'user' else 'Willow'}: {m['content']}"
        for m in messages
    )
