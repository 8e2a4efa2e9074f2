"""Oracle transport that speaks the OpenAI-style JSON Responses API."""

from __future__ import annotations

import json
import logging
import os
from typing import Any, Callable, Dict, Optional

from .llm_client import LLMClient, LLMResponseFormatError, LLMTransportError

__all__ = ["ResponsesAPIClient"]

LOGGER = logging.getLogger(__name__)

Transport = Callable[[Dict[str, Any]], str]


class ResponsesAPIClient(LLMClient):
    """Thin adapter around an HTTP Responses endpoint."""

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        base_url: str = "https://api.openai.com/v1/responses",
        model: str = "gpt-5-mini",
        transport: Optional[Transport] = None,
        timeout: float = 180.0,
    ) -> None:
        super().__init__(model=model)
        self._api_key = api_key or os.getenv("CIDOC_API_KEY") or os.getenv("OPENAI_API_KEY")
        self._base_url = base_url
        timeout_override = os.getenv("CIDOC_ORACLE_TIMEOUT")
        if timeout_override:
            try:
                parsed = float(timeout_override)
                if parsed > 0:
                    timeout = parsed
            except ValueError:
                LOGGER.warning("Ignoring non-numeric CIDOC_ORACLE_TIMEOUT=%r", timeout_override)
        self._timeout = timeout
        self._transport = transport or self._http_transport

        if transport is None and not self._api_key:
            raise ValueError("An API key is required when using the default transport.")

    def _raw_invoke(self, payload: Dict[str, Any]) -> str:
        """Send the request over the configured transport."""
        try:
            raw_response = self._transport(payload)
        except LLMTransportError:
            raise
        except Exception as error:
            raise LLMTransportError(f"Transport rejected the request: {error}") from error

        normalised = self._extract_model_payload(raw_response)
        if normalised is None:
            raise LLMResponseFormatError("Response did not contain output text.", raw=raw_response)
        return normalised

    def _http_transport(self, payload: Dict[str, Any]) -> str:
        """Default HTTP transport that targets the Responses API."""
        import urllib.error
        import urllib.request

        LOGGER.debug("POST %s model=%s", self._base_url, payload.get("model"))
        data = json.dumps(payload).encode("utf-8")
        request = urllib.request.Request(
            self._base_url,
            data=data,
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {self._api_key}",
                "User-Agent": "ci-doctor/0.1",
            },
            method="POST",
        )

        try:
            with urllib.request.urlopen(request, timeout=self._timeout) as response:
                raw = response.read()
                status = getattr(response, "status", 200)
        except TimeoutError as error:  # pragma: no cover - network-dependent
            raise LLMTransportError("Responses API request timed out.") from error
        except urllib.error.HTTPError as error:  # pragma: no cover - network-dependent
            message = error.read().decode("utf-8", errors="ignore")
            raise LLMTransportError(f"HTTP {error.code}: {message}") from error
        except urllib.error.URLError as error:  # pragma: no cover - network-dependent
            raise LLMTransportError(f"Failed to reach Responses endpoint: {error.reason}") from error

        if status >= 400:
            raise LLMTransportError(f"Unexpected HTTP status {status}")

        return raw.decode("utf-8")

    def _extract_model_payload(self, raw_response: str) -> Optional[str]:
        """Extract the text content returned by the Responses API."""
        if not raw_response:
            return None

        try:
            data = json.loads(raw_response)
        except json.JSONDecodeError:
            return raw_response

        if isinstance(data, dict):
            text_payload = self._first_text_content(data.get("output") or data.get("outputs"))
            if text_payload:
                return text_payload

            candidate = data.get("content") or data.get("choices")
            text_payload = self._first_text_content(candidate)
            if text_payload:
                return text_payload

        return raw_response

    @staticmethod
    def _first_text_content(container: Any) -> Optional[str]:
        """Return the first text field found within the responses container."""
        if not container:
            return None
        if isinstance(container, dict):
            container = [container]

        for item in container:
            if not isinstance(item, dict):
                continue

            contents = item.get("content")
            if isinstance(contents, list):
                for content_item in contents:
                    if not isinstance(content_item, dict):
                        continue
                    json_payload = content_item.get("json")
                    if isinstance(json_payload, dict):
                        return json.dumps(json_payload)
                    text = content_item.get("text")
                    if isinstance(text, str) and text.strip():
                        return text

            text_value = item.get("text")
            if isinstance(text_value, str) and text_value.strip():
                return text_value

            # chat-completions style
            message = item.get("message") if isinstance(item.get("message"), dict) else None
            if message:
                text = message.get("content") or message.get("text")
                if isinstance(text, str) and text.strip():
                    return text

        return None
