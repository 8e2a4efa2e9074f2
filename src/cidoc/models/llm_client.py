"""Client base class shared by every oracle transport.

Transports only move text: subclasses implement :meth:`LLMClient._raw_invoke`
and the base class reduces whatever came back to a single JSON object.  Schema
validation lives with the caller so that a response is never silently patched
into shape.
"""

from __future__ import annotations

import ast
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

__all__ = [
    "LLMClient",
    "LLMClientError",
    "LLMRequest",
    "LLMResponseFormatError",
    "LLMTransportError",
]

LOGGER = logging.getLogger(__name__)


class LLMClientError(RuntimeError):
    """Base error raised for LLM client failures."""


class LLMTransportError(LLMClientError):
    """Raised when the underlying transport fails to return a response."""


class LLMResponseFormatError(LLMClientError):
    """Raised when the model returns a payload that holds no JSON object."""

    def __init__(self, message: str, *, raw: str | None = None) -> None:
        super().__init__(message)
        self.raw = raw


@dataclass(slots=True)
class LLMRequest:
    """Prompt payload sent to a transport."""

    prompt: str
    model: Optional[str] = None
    system_prompt: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_payload(self, default_model: str) -> Dict[str, Any]:
        """Render a transport-ready payload for the JSON Responses API."""

        def _message(role: str, text: str) -> Dict[str, Any]:
            return {"role": role, "content": [{"type": "input_text", "text": text}]}

        messages: list[Dict[str, Any]] = []
        if self.system_prompt:
            messages.append(_message("system", self.system_prompt))
        messages.append(_message("user", self.prompt))

        payload: Dict[str, Any] = {
            "model": self.model or default_model,
            "input": messages,
            "text": {"format": {"type": "json_object"}},
        }
        if self.metadata:
            max_metadata_len = 512
            serialised_metadata: Dict[str, str] = {}
            for key, value in self.metadata.items():
                formatted = value if isinstance(value, str) else json.dumps(value, separators=(",", ":"), sort_keys=True)
                if len(formatted) > max_metadata_len:
                    formatted = f"{formatted[: max_metadata_len - 3]}..."
                serialised_metadata[key] = formatted
            payload["metadata"] = serialised_metadata
        return payload


class LLMClient:
    """Send one prompt, return one decoded JSON object.

    There are no retries: a failed call is reported to the caller exactly once.
    """

    def __init__(self, model: str) -> None:
        self._model = model

    @property
    def model(self) -> str:
        """Return the default model name configured for this client."""
        return self._model

    def complete(self, request: LLMRequest | str) -> str:
        """Return the raw text produced for ``request``."""
        if isinstance(request, str):
            request = LLMRequest(prompt=request)
        raw = self._raw_invoke(request.to_payload(self._model))
        if not raw or not raw.strip():
            raise LLMResponseFormatError("Model returned an empty response.", raw=raw)
        return raw

    def invoke_json(self, request: LLMRequest | str) -> tuple[Dict[str, Any], str]:
        """Return the decoded JSON object and the raw text it was taken from."""
        raw = self.complete(request)
        data = self.parse_json(raw)
        if not isinstance(data, dict):
            raise LLMResponseFormatError("Model response is not a JSON object.", raw=raw)
        return data, raw

    def _raw_invoke(self, payload: Dict[str, Any]) -> str:
        """Perform the transport call. Subclasses must implement."""
        raise NotImplementedError("Subclasses must implement _raw_invoke().")

    @staticmethod
    def parse_json(raw_response: str) -> Any:
        """Parse JSON payloads and normalize errors."""
        text = (raw_response or "").strip()
        if not text:
            raise LLMResponseFormatError("Model returned an empty response.", raw=raw_response)

        text = _normalise_json_string(text)
        candidates = [text]
        repaired = _repair_json_payload(text)
        if repaired and repaired not in candidates:
            candidates.append(_normalise_json_string(repaired))

        for candidate in candidates:
            try:
                return json.loads(candidate)
            except json.JSONDecodeError:
                pythonic = _coerce_python_literal(candidate)
                if pythonic is not None:
                    return pythonic

        snippet = text[:200]
        LOGGER.debug("Unparseable model output: %s", snippet)
        raise LLMResponseFormatError(f"Model returned invalid JSON: {snippet}", raw=raw_response)


_FENCE_RE = re.compile(r"```(?:json)?\s*\n?(.*?)\n?```", re.IGNORECASE | re.DOTALL)


def _strip_code_fence(payload: str) -> str:
    """Return the body of the first Markdown code fence, or ``payload`` unchanged."""
    match = _FENCE_RE.search(payload)
    if not match:
        return payload
    return match.group(1).strip()


def _normalise_json_string(payload: str) -> str:
    """Normalise typographic characters that models emit in place of JSON ones."""
    if not payload:
        return payload
    translation = {
        0x201C: '"',
        0x201D: '"',
        0x2018: "'",
        0x2019: "'",
        0xFF07: "'",
        0x00A0: " ",
        0xFEFF: "",
    }
    return payload.translate(str.maketrans(translation))


def _strip_trailing_commas(payload: str) -> str:
    """Remove trailing commas before closing braces/brackets."""
    if not payload:
        return payload
    return re.sub(r",(\s*[}\]])", r"\1", payload)


def _repair_json_payload(raw: str) -> str | None:
    """Salvage the first balanced JSON object embedded in noisy output."""
    stripped = _strip_code_fence(raw.strip())
    if not stripped:
        return None

    try:
        json.loads(stripped)
    except json.JSONDecodeError:
        pass
    else:
        return stripped

    opening_idx = None
    depth = 0
    in_string = False
    escaped = False
    for index, char in enumerate(stripped):
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"' and opening_idx is not None:
            in_string = True
        elif char == "{":
            if opening_idx is None:
                opening_idx = index
            depth += 1
        elif char == "}" and opening_idx is not None:
            depth -= 1
            if depth == 0:
                return _strip_trailing_commas(stripped[opening_idx : index + 1].strip())
    return None


def _coerce_python_literal(candidate: str) -> Any | None:
    """Fall back to Python literal parsing when JSON decoding fails."""
    try:
        literal = ast.literal_eval(candidate)
    except (SyntaxError, ValueError, MemoryError, RecursionError):
        return None
    return _normalise_literal(literal)


def _normalise_literal(value: Any) -> Any:
    """Convert Python literals into JSON-compatible structures recursively."""
    if isinstance(value, dict):
        return {str(key): _normalise_literal(sub) for key, sub in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_normalise_literal(item) for item in value]
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return str(value)
