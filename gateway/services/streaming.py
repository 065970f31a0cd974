"""
Stream Usage Tracking - Observe SSE bytes to extract token usage.

Trackers only read the bytes being forwarded; they never alter them. Lines
that are not complete JSON `data:` payloads are skipped.
"""

import codecs
import json
from typing import Any

from gateway.models.domain import TokenUsage


class StreamUsageTracker:
    """
    Base SSE line parser.

    Subclasses implement `_handle_event` for their provider's event shapes.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._text_parts: list[str] = []
        self.input_tokens: int | None = None
        self.output_tokens: int | None = None
        self.events_seen = 0

    def feed(self, chunk: bytes) -> None:
        """Consume one raw chunk exactly as it was forwarded."""
        self._buffer += self._decoder.decode(chunk)
        *lines, self._buffer = self._buffer.split("\n")
        for line in lines:
            self._handle_line(line)

    def finish(self) -> None:
        """Flush a trailing line that had no newline."""
        self._buffer += self._decoder.decode(b"", final=True)
        if self._buffer:
            line, self._buffer = self._buffer, ""
            self._handle_line(line)

    @property
    def usage(self) -> TokenUsage:
        return TokenUsage(input_tokens=self.input_tokens, output_tokens=self.output_tokens)

    @property
    def text(self) -> str:
        return "".join(self._text_parts)

    def _handle_line(self, line: str) -> None:
        line = line.rstrip("\r")
        if not line.startswith("data:"):
            return
        payload = line[5:].strip()
        if not payload or payload == "[DONE]":
            return
        try:
            event = json.loads(payload)
        except ValueError:
            return
        if isinstance(event, dict):
            self.events_seen += 1
            self._handle_event(event)

    def _handle_event(self, event: dict[str, Any]) -> None:
        raise NotImplementedError


def _int_or_none(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


class OpenAIStreamTracker(StreamUsageTracker):
    """Chat completions stream: one `usage` object near the end, text in choice deltas."""

    def _handle_event(self, event: dict[str, Any]) -> None:
        usage = event.get("usage")
        if isinstance(usage, dict):
            prompt = _int_or_none(usage.get("prompt_tokens"))
            completion = _int_or_none(usage.get("completion_tokens"))
            if prompt is not None:
                self.input_tokens = prompt
            if completion is not None:
                self.output_tokens = completion

        choices = event.get("choices")
        if isinstance(choices, list) and choices and isinstance(choices[0], dict):
            delta = choices[0].get("delta")
            if isinstance(delta, dict) and isinstance(delta.get("content"), str):
                self._text_parts.append(delta["content"])


class AnthropicStreamTracker(StreamUsageTracker):
    """
    Messages stream: input tokens arrive in `message_start`, cumulative output
    tokens in `message_delta`, text in `content_block_delta`.
    """

    def _handle_event(self, event: dict[str, Any]) -> None:
        event_type = event.get("type")

        if event_type == "message_start":
            message = event.get("message")
            usage = message.get("usage") if isinstance(message, dict) else None
            if isinstance(usage, dict):
                input_tokens = _int_or_none(usage.get("input_tokens"))
                if input_tokens is not None:
                    self.input_tokens = input_tokens

        elif event_type == "message_delta":
            usage = event.get("usage")
            if isinstance(usage, dict):
                output_tokens = _int_or_none(usage.get("output_tokens"))
                if output_tokens is not None:
                    self.output_tokens = output_tokens
                input_tokens = _int_or_none(usage.get("input_tokens"))
                if input_tokens is not None and self.input_tokens is None:
                    self.input_tokens = input_tokens

        elif event_type == "content_block_delta":
            delta = event.get("delta")
            if isinstance(delta, dict) and isinstance(delta.get("text"), str):
                self._text_parts.append(delta["text"])
