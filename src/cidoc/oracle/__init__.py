"""Oracle response contract; the requesting client lives in :mod:`cidoc.oracle.client`."""

from .contract import (
    RESPONSE_VERSION,
    ContractViolation,
    DiagnosticMode,
    DiagnosticRecord,
    Hypothesis,
    OracleError,
    RiskLevel,
    validate_response,
)

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
