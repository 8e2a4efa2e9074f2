"""Request validated diagnostic records for an evidence bundle."""

from __future__ import annotations

import logging
from typing import Optional

from ..cache import RAW_OUTPUT_FILE, ResultCache
from ..evidence.bundle import EvidenceBundle
from ..evidence.redact import redact
from ..models.llm_client import LLMClient, LLMClientError, LLMRequest, LLMResponseFormatError
from ..prompts import render_prompt
from .contract import DiagnosticMode, DiagnosticRecord, OracleError, validate_response

LOGGER = logging.getLogger(__name__)


class OracleInvocationError(OracleError):
    """Raised when the oracle could not be reached or returned no JSON object."""


class OracleClient:
    """Render a prompt, call the transport once and validate the answer."""

    def __init__(self, llm: LLMClient, *, cache: Optional[ResultCache] = None) -> None:
        self._llm = llm
        self._cache = cache

    def request(self, bundle: EvidenceBundle, mode: DiagnosticMode | str) -> DiagnosticRecord:
        """Return a record for ``bundle`` in ``mode``.

        Raises :class:`OracleInvocationError` for transport or extraction
        failures and ``ContractViolation`` when the answer breaks the contract.
        """

        resolved = DiagnosticMode.parse(mode)
        prompt = render_prompt(resolved, bundle)
        LOGGER.info("Requesting %s diagnosis (%d evidence items)", resolved.value, len(bundle))
        try:
            payload, _raw = self._llm.invoke_json(
                LLMRequest(prompt=prompt, metadata={"mode": resolved.value})
            )
        except LLMResponseFormatError as error:
            hint = self._dump_raw_output(error.raw)
            raise OracleInvocationError(f"{error}{hint}") from error
        except LLMClientError as error:
            raise OracleInvocationError(str(error)) from error

        return validate_response(payload, resolved, evidence_ids=bundle.ids())

    def _dump_raw_output(self, raw: str | None) -> str:
        if self._cache is None or not raw:
            return ""
        try:
            target = self._cache.write_text(RAW_OUTPUT_FILE, redact(raw))
        except OSError as error:
            LOGGER.warning("Could not save raw oracle output: %s", error)
            return ""
        return f" (raw output saved to {target})"


__all__ = ["OracleClient", "OracleInvocationError"]
