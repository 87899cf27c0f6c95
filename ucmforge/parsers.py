"""
Forge Output Parsers

Line-delimited stream-json scanning for agent stdout and JSON extraction
from free-form model text.
"""
from __future__ import annotations

import codecs
import json
import logging
import re
from typing import Any, Callable, Dict, List, Optional

from .errors import JsonExtractionError
from .models import TokenUsage
from .utils import first_string_value

logger = logging.getLogger("forge")

FENCED_JSON = re.compile(r"```(?:json)?\s*\n?(.*?)\n?```", re.DOTALL)


def extract_json(text: str) -> Any:
    """Recover one JSON value from model output.

    Tried in order: fenced code block, the whole trimmed text, then the
    outermost bracketed slice starting at whichever of '{' or '[' opens first.
    """
    if text is None:
        raise JsonExtractionError("")
    match = FENCED_JSON.search(text)
    if match:
        try:
            return json.loads(match.group(1).strip())
        except json.JSONDecodeError:
            pass

    trimmed = text.strip()
    if trimmed[:1] in ("{", "["):
        try:
            return json.loads(trimmed)
        except json.JSONDecodeError:
            pass

    candidates = []
    for open_ch, close_ch in (("{", "}"), ("[", "]")):
        start, end = text.find(open_ch), text.rfind(close_ch)
        if start != -1 and end > start:
            candidates.append((start, text[start:end + 1]))
    for _, candidate in sorted(candidates):
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            continue

    raise JsonExtractionError(text)


# =============================================================================
# Stream-json scanning
# =============================================================================

def describe_tool_use(name: str, tool_input: Dict[str, Any]) -> str:
    """Short human detail for a tool_use block."""
    if not isinstance(tool_input, dict):
        return ""
    if name in ("Read", "Write", "Edit"):
        return str(tool_input.get("file_path", ""))
    if name in ("Glob", "Grep"):
        return str(tool_input.get("pattern", ""))
    if name == "Bash":
        return str(tool_input.get("command", ""))[:120]
    if name == "Task":
        return str(tool_input.get("description", ""))
    return first_string_value(tool_input)[:80]


def _count(value: Any) -> int:
    try:
        return max(int(value or 0), 0)
    except (TypeError, ValueError, OverflowError):
        return 0


def _usage_from(usage: Dict[str, Any]) -> TokenUsage:
    """Token counts from a result event; non-numeric counts read as 0."""
    return TokenUsage(input=_count(usage.get("input_tokens")), output=_count(usage.get("output_tokens")))


class StreamScanner:
    """Incremental parser for line-delimited JSON events.

    Chunks may split lines and UTF-8 sequences anywhere. Assistant text is
    kept apart from the final `result` event so live progress never
    overwrites the authoritative answer.
    """

    def __init__(
        self,
        on_text: Optional[Callable[[str], None]] = None,
        on_tool_use: Optional[Callable[[str, Dict[str, Any]], None]] = None,
    ):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._on_text = on_text
        self._on_tool_use = on_tool_use
        self.assistant_text: List[str] = []
        self.final_text: Optional[str] = None
        self.token_usage = TokenUsage()
        self.events = 0

    @property
    def result_text(self) -> str:
        if self.final_text:
            return self.final_text
        return "".join(self.assistant_text)

    def feed(self, chunk: bytes) -> None:
        self._buffer += self._decoder.decode(chunk)
        *lines, self._buffer = self._buffer.split("\n")
        for line in lines:
            self._handle_line(line)

    def close(self) -> None:
        self._buffer += self._decoder.decode(b"", final=True)
        if self._buffer.strip():
            self._handle_line(self._buffer)
        self._buffer = ""

    def _handle_line(self, line: str) -> None:
        line = line.strip()
        if not line:
            return
        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            return
        if not isinstance(event, dict):
            return
        self.events += 1
        kind = event.get("type")
        if kind == "assistant":
            message = event.get("message")
            if isinstance(message, dict):
                self._handle_assistant(message)
        elif kind == "result":
            result = event.get("result")
            if isinstance(result, str):
                self.final_text = result
            usage = event.get("usage")
            if isinstance(usage, dict):
                self.token_usage.add(_usage_from(usage))

    def _handle_assistant(self, message: Dict[str, Any]) -> None:
        content = message.get("content")
        if not isinstance(content, list):
            return
        for block in content:
            if not isinstance(block, dict):
                continue
            text = block.get("text")
            if block.get("type") == "text" and isinstance(text, str) and text:
                self.assistant_text.append(text)
                if self._on_text:
                    self._on_text(text)
            elif block.get("type") == "tool_use" and self._on_tool_use:
                tool_input = block.get("input")
                self._on_tool_use(str(block.get("name", "?")), tool_input if isinstance(tool_input, dict) else {})
