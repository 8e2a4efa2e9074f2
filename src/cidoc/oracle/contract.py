"""Response contract for the diagnostic oracle.

Every oracle answer must be a ``CI_DOCTOR_RESPONSE_V1`` object for the mode
that was requested.  Validation is fail-closed: anything that does not satisfy
the rules for its mode raises :class:`ContractViolation` and never reaches the
gate.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Annotated, Collection, Mapping, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, StrictInt, ValidationError, field_validator

RESPONSE_VERSION = "CI_DOCTOR_RESPONSE_V1"

Confidence = Annotated[StrictInt, Field(ge=0, le=100)]


class OracleError(RuntimeError):
    """Base class for failures while obtaining a diagnostic record."""


class ContractViolation(OracleError):
    """Raised when an oracle response does not satisfy the response contract."""


class DiagnosticMode(str, Enum):
    """Kinds of answer the oracle can be asked for."""

    HYPOTHESES = "hypotheses"
    EXPLAIN = "explain"
    PATCH = "patch"
    COMBINED = "combined"

    @classmethod
    def parse(cls, value: "DiagnosticMode | str") -> "DiagnosticMode":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError as error:
            allowed = ", ".join(mode.value for mode in cls)
            raise ValueError(f"Unknown mode {value!r}; expected one of: {allowed}") from error


class RiskLevel(str, Enum):
    """Risk the oracle attaches to a proposed fix."""

    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class ContractModel(BaseModel):
    """Base model for validated oracle payloads."""

    model_config = ConfigDict(extra="ignore", frozen=True)


class Hypothesis(ContractModel):
    """One ranked explanation of the failure."""

    rank: Optional[StrictInt] = None
    title: str = Field(min_length=1)
    confidence: Confidence
    explanation: str = ""
    evidence_refs: Tuple[str, ...]
    next_check: Optional[str] = None


class DiagnosticRecord(ContractModel):
    """Validated oracle answer for one evidence bundle."""

    version: str
    mode: DiagnosticMode
    hypotheses: Tuple[Hypothesis, ...] = ()
    confidence: Optional[Confidence] = None
    summary: Optional[str] = None
    explanation: Optional[str] = None
    patch: Optional[str] = None
    description: Optional[str] = None
    risk: Optional[RiskLevel] = None
    warnings: Tuple[str, ...] = ()
    evidence_refs: Tuple[str, ...] = ()
    plain_english: Union[str, Tuple[str, ...], None] = None
    why_local_differs: Optional[str] = None
    what_changed: Optional[str] = None

    @field_validator("risk", mode="before")
    @classmethod
    def _normalise_risk(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @property
    def top_hypothesis(self) -> Hypothesis | None:
        if not self.hypotheses:
            return None
        ranked = [item for item in self.hypotheses if item.rank is not None]
        if ranked:
            return min(ranked, key=lambda item: item.rank)
        return self.hypotheses[0]

    @property
    def effective_confidence(self) -> int | None:
        """Top-level confidence, else the top-ranked hypothesis confidence."""
        if self.confidence is not None:
            return self.confidence
        top = self.top_hypothesis
        return top.confidence if top is not None else None

    def referenced_evidence(self) -> frozenset[str]:
        refs = set(self.evidence_refs)
        for hypothesis in self.hypotheses:
            refs.update(hypothesis.evidence_refs)
        return frozenset(refs)


# ------------------------------------------------------------------ validation
def _is_confidence(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and 0 <= value <= 100


def _non_empty_string(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


def _check_hypotheses(payload: Mapping[str, Any]) -> None:
    hypotheses = payload.get("hypotheses")
    if not isinstance(hypotheses, list) or not hypotheses:
        raise ContractViolation("Hypotheses response must contain a non-empty hypotheses array.")
    for index, hypothesis in enumerate(hypotheses, start=1):
        if not isinstance(hypothesis, Mapping):
            raise ContractViolation(f"Hypothesis #{index} is not an object.")
        if not _is_confidence(hypothesis.get("confidence")):
            raise ContractViolation(
                f"Hypothesis #{index} has invalid confidence {hypothesis.get('confidence')!r}; "
                "expected an integer between 0 and 100."
            )
        if not _non_empty_string(hypothesis.get("title")):
            raise ContractViolation(f"Hypothesis #{index} must have a title string.")
        if not isinstance(hypothesis.get("evidence_refs"), list):
            raise ContractViolation(f"Hypothesis #{index} must have an evidence_refs array.")


def _check_confidence(payload: Mapping[str, Any], label: str) -> None:
    if not _is_confidence(payload.get("confidence")):
        raise ContractViolation(
            f"{label} response must include an integer confidence between 0 and 100, "
            f"got {payload.get('confidence')!r}."
        )


def _check_explain(payload: Mapping[str, Any]) -> None:
    _check_confidence(payload, "Explain")
    if not _non_empty_string(payload.get("summary")):
        raise ContractViolation("Explain response must include a summary string.")
    if not _non_empty_string(payload.get("explanation")):
        raise ContractViolation("Explain response must include an explanation string.")


def _check_patch(payload: Mapping[str, Any]) -> None:
    _check_confidence(payload, "Patch")
    if not _non_empty_string(payload.get("patch")):
        raise ContractViolation("Patch response must include a unified diff string.")
    if not _non_empty_string(payload.get("description")):
        raise ContractViolation("Patch response must include a description string.")


_MODES_BY_VALUE = {mode.value: mode for mode in DiagnosticMode}

_MODE_RULES = {
    DiagnosticMode.HYPOTHESES: (_check_hypotheses,),
    DiagnosticMode.EXPLAIN: (_check_explain,),
    DiagnosticMode.PATCH: (_check_patch,),
    DiagnosticMode.COMBINED: (_check_hypotheses, _check_explain, _check_patch),
}


def validate_response(
    payload: Any,
    expected_mode: DiagnosticMode | str,
    *,
    evidence_ids: Collection[str],
) -> DiagnosticRecord:
    """Validate ``payload`` for ``expected_mode`` and return a frozen record.

    ``evidence_ids`` is the id set of the bundle the response was produced
    for; any reference outside it is a violation.
    """

    mode = DiagnosticMode.parse(expected_mode)
    if not isinstance(payload, Mapping):
        raise ContractViolation("Oracle response is not a JSON object.")

    version = payload.get("version")
    if version != RESPONSE_VERSION:
        raise ContractViolation(f"Invalid response version: expected {RESPONSE_VERSION!r}, got {version!r}.")

    raw_mode = payload.get("mode")
    received = _MODES_BY_VALUE.get(raw_mode) if isinstance(raw_mode, str) else None
    if received is None:
        allowed = ", ".join(item.value for item in DiagnosticMode)
        raise ContractViolation(f"Invalid response mode {raw_mode!r}; must be one of: {allowed}.")
    if received is not mode:
        raise ContractViolation(f"Response mode mismatch: expected {mode.value!r}, got {received.value!r}.")

    for rule in _MODE_RULES[mode]:
        rule(payload)

    risk = payload.get("risk")
    if risk is not None:
        if not isinstance(risk, str) or risk.strip().upper() not in RiskLevel.__members__:
            raise ContractViolation(f"Unsupported risk level {risk!r}; expected LOW, MEDIUM or HIGH.")

    try:
        record = DiagnosticRecord.model_validate(dict(payload))
    except ValidationError as error:
        raise ContractViolation(f"Oracle response failed schema validation: {error}") from error

    unknown = sorted(record.referenced_evidence() - frozenset(evidence_ids))
    if unknown:
        raise ContractViolation(f"Response references unknown evidence ids: {', '.join(unknown)}.")
    return record


__all__ = [
    "RESPONSE_VERSION",
    "ContractViolation",
    "DiagnosticMode",
    "DiagnosticRecord",
    "Hypothesis",
    "OracleError",
    "RiskLevel",
    "validate_response",
]
