"""Incremental extraction of <tool>...</tool> blocks from streamed model output.

The extractor is a two-state machine (OUTSIDE_BLOCK, INSIDE_BLOCK):

- OUTSIDE_BLOCK: text before an opening tag is emitted. When no opening
  tag is found, the last len(OPEN_TAG) - 1 characters are withheld since
  they may be the start of a tag split across fragments.
- INSIDE_BLOCK: everything is accumulated (never emitted) until the
  closing tag appears in the accumulated block. Text after the closing tag
  goes back to the outer buffer and scanning continues in the same call.

Block body format::

    name: knowledge_search
    parameters: {"query": "return policy"}
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from enum import Enum

from lens.agent.models import ToolCall

logger = logging.getLogger(__name__)

OPEN_TAG = "<tool>"
CLOSE_TAG = "</tool>"

_NAME_RE = re.compile(r"name:\s*(.+?)(?:\n|$)")
_PARAMS_RE = re.compile(r"parameters:\s*(\{[\s\S]*\})")


class _State(Enum):
    OUTSIDE_BLOCK = "outside"
    INSIDE_BLOCK = "inside"


@dataclass
class ExtractResult:
    """Output of one add_fragment() call."""

    text: str
    tool_calls: list[ToolCall] | None = None


def parse_tool_block(content: str) -> ToolCall | None:
    """Parse the body of one tool block.

    Returns None when no name line is present. Parameters that are not
    valid JSON are kept verbatim under {"raw": ...}.
    """
    name_match = _NAME_RE.search(content)
    if not name_match:
        logger.warning("Tool block without a name line, skipping: %r", content[:200])
        return None

    name = name_match.group(1).strip()
    parameters: dict = {}

    params_match = _PARAMS_RE.search(content)
    if params_match:
        raw = params_match.group(1)
        try:
            parsed = json.loads(raw.strip())
        except json.JSONDecodeError:
            logger.warning("Malformed parameters for tool %s, keeping raw text", name)
            parsed = {"raw": raw}
        parameters = parsed if isinstance(parsed, dict) else {"raw": raw}

    return ToolCall(name=name, parameters=parameters)


class ToolCallExtractor:
    """Stateful parser fed one fragment at a time.

    One instance per model stream; call flush() at end of stream.
    """

    def __init__(self) -> None:
        self._state = _State.OUTSIDE_BLOCK
        self._buffer = ""
        self._block = ""

    @property
    def in_block(self) -> bool:
        return self._state is _State.INSIDE_BLOCK

    def add_fragment(self, fragment: str) -> ExtractResult:
        """Feed a fragment; return resolved plain text and newly completed calls."""
        self._buffer += fragment
        text_parts: list[str] = []
        tool_calls: list[ToolCall] = []
        lookback = len(OPEN_TAG) - 1

        while self._buffer:
            if self._state is _State.OUTSIDE_BLOCK:
                start = self._buffer.find(OPEN_TAG)
                if start == -1:
                    if len(self._buffer) > lookback:
                        text_parts.append(self._buffer[:-lookback])
                        self._buffer = self._buffer[-lookback:]
                    break
                text_parts.append(self._buffer[:start])
                self._buffer = self._buffer[start + len(OPEN_TAG):]
                self._state = _State.INSIDE_BLOCK
                self._block = ""
            else:
                self._block += self._buffer
                self._buffer = ""
                end = self._block.find(CLOSE_TAG)
                if end == -1:
                    break
                body = self._block[:end]
                self._buffer = self._block[end + len(CLOSE_TAG):]
                self._block = ""
                self._state = _State.OUTSIDE_BLOCK
                call = parse_tool_block(body)
                if call is not None:
                    tool_calls.append(call)

        return ExtractResult(
            text="".join(text_parts),
            tool_calls=tool_calls or None,
        )

    def flush(self) -> str:
        """Drain withheld plain text and discard any unterminated block."""
        remaining = self._buffer
        if self._state is _State.INSIDE_BLOCK:
            logger.warning("Stream ended inside an unterminated tool block, discarding %d chars", len(self._block))
        self._buffer = ""
        self._block = ""
        self._state = _State.OUTSIDE_BLOCK
        return remaining
