"""Prompt templates for each diagnostic mode."""

from __future__ import annotations

from .evidence.bundle import EvidenceBundle
from .oracle.contract import RESPONSE_VERSION, DiagnosticMode

EVIDENCE_PLACEHOLDER = "{{EVIDENCE_BUNDLE_JSON}}"

JSON_RESPONSE_INSTRUCTION = (
    "Return only JSON. Emit a single JSON object that satisfies the response schema below. "
    "Do not include markdown fences, explanations, or trailing text. "
    "Use double-quoted keys and strings. Confidence values are integers from 0 to 100."
)

_PREAMBLE = (
    "You are CI Doctor, a careful assistant that diagnoses failing GitHub Actions runs.\n"
    "The evidence bundle below describes one failed run. Each item has an id (E1, E2, ...). "
    "Ground every claim in the evidence and cite the ids you relied on in `evidence_refs`. "
    "Never cite an id that is not in the bundle."
)

_HYPOTHESES_SCHEMA = f"""{{
  "version": "{RESPONSE_VERSION}",
  "mode": "hypotheses",
  "hypotheses": [
    {{
      "rank": 1,
      "title": "short name of the suspected cause",
      "confidence": 0,
      "explanation": "why the evidence points here",
      "evidence_refs": ["E4"],
      "next_check": "what to look at to confirm"
    }}
  ],
  "evidence_refs": ["E2", "E4"]
}}"""

_EXPLAIN_SCHEMA = f"""{{
  "version": "{RESPONSE_VERSION}",
  "mode": "explain",
  "confidence": 0,
  "summary": "one sentence describing the failure",
  "explanation": "technical explanation of the root cause",
  "plain_english": ["the same explanation for a non-specialist, one short bullet per entry"],
  "why_local_differs": "why this may pass locally but fail in CI",
  "what_changed": "the change most likely responsible",
  "evidence_refs": ["E4", "E5"]
}}"""

_PATCH_SCHEMA = f"""{{
  "version": "{RESPONSE_VERSION}",
  "mode": "patch",
  "confidence": 0,
  "description": "one line describing the fix",
  "patch": "unified diff with a/ and b/ prefixes, relative to the repository root",
  "risk": "LOW | MEDIUM | HIGH",
  "warnings": [],
  "evidence_refs": ["E4"]
}}"""

_COMBINED_SCHEMA = f"""{{
  "version": "{RESPONSE_VERSION}",
  "mode": "combined",
  "hypotheses": [{{"rank": 1, "title": "...", "confidence": 0, "explanation": "...", "evidence_refs": ["E4"]}}],
  "confidence": 0,
  "summary": "...",
  "explanation": "...",
  "description": "...",
  "patch": "unified diff",
  "risk": "LOW | MEDIUM | HIGH",
  "warnings": [],
  "evidence_refs": ["E4"]
}}"""

_TASKS = {
    DiagnosticMode.HYPOTHESES: (
        "Rank up to three hypotheses for why this run failed, most likely first.",
        _HYPOTHESES_SCHEMA,
    ),
    DiagnosticMode.EXPLAIN: (
        "Explain the root cause of this failure.",
        _EXPLAIN_SCHEMA,
    ),
    DiagnosticMode.PATCH: (
        "Propose the smallest unified diff that fixes this failure. Keep hunk headers accurate, "
        "change only what the fix needs, and rate the risk of the change. Set a low confidence "
        "when the evidence does not identify the cause.",
        _PATCH_SCHEMA,
    ),
    DiagnosticMode.COMBINED: (
        "Rank hypotheses for the failure, explain the most likely root cause, and propose the "
        "smallest unified diff that fixes it.",
        _COMBINED_SCHEMA,
    ),
}


def prompt_template(mode: DiagnosticMode | str) -> str:
    """Return the raw template for ``mode`` with the evidence placeholder intact."""
    task, schema = _TASKS[DiagnosticMode.parse(mode)]
    return (
        f"{_PREAMBLE}\n\n"
        f"## Task\n{task}\n\n"
        f"## Response schema\n{schema}\n\n"
        f"{JSON_RESPONSE_INSTRUCTION}\n\n"
        f"## Evidence bundle\n{EVIDENCE_PLACEHOLDER}\n"
    )


def render_prompt(mode: DiagnosticMode | str, bundle: EvidenceBundle) -> str:
    """Render the prompt for ``mode`` with ``bundle`` injected as JSON."""
    return prompt_template(mode).replace(EVIDENCE_PLACEHOLDER, bundle.to_json(indent=2))


__all__ = ["EVIDENCE_PLACEHOLDER", "JSON_RESPONSE_INSTRUCTION", "prompt_template", "render_prompt"]
