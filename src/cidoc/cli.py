"""CLI commands for diagnosing and fixing failing GitHub Actions runs."""

from __future__ import annotations

import copy
import json
import logging
import time
from pathlib import Path
from typing import Any, Dict, List, NoReturn, Optional

import typer
import yaml

from .cache import EVIDENCE_FILE, PATCH_FILE, ResultCache, result_file
from .controller import ControllerSettings, ConvergenceController, IterationHistory, IterationOutcome, IterationRecord
from .evidence.bundle import EvidenceBundle, EvidenceKind
from .evidence.github import EvidenceError, GithubEvidenceCollector
from .gate import GateState, SafeApplyGate
from .models import CopilotCliClient, LLMClient, ResponsesAPIClient
from .oracle.client import OracleClient
from .oracle.contract import DiagnosticMode, DiagnosticRecord, OracleError
from .pipeline.poller import RunPoller
from .pipeline.runs import GhRunProvider, PipelineError
from .tools.vcs import GitError, GitRepository

APP_HELP = "Diagnose GitHub Actions CI failures and apply verified fixes on isolated branches."
DEFAULT_CONFIG_NAME = "ci-doctor.yaml"
MAX_DIFF_LINES = 400

DEFAULT_CONFIG_TEMPLATE: Dict[str, Any] = {
    "oracle": {
        "backend": "copilot",
        "model": "gpt-5-mini",
        "timeout": 180,
        "base_url": "https://api.openai.com/v1/responses",
        "mode": "combined",
    },
    "policy": {
        "interactive_min_confidence": 60,
        "unattended_min_confidence": 80,
    },
    "watch": {
        "max_iterations": 5,
        "poll_interval": 10,
        "poll_timeout": 180,
    },
    "git": {
        "remote": "origin",
        "branch_prefix": "ci-fix",
        "commit_prefix": "CI Doctor:",
    },
    "evidence": {
        "log_tail_lines": 200,
    },
    "paths": {
        "cache": ".ci-doctor/cache",
    },
}

OUTCOME_REASONS = {
    IterationOutcome.LOW_CONFIDENCE: "confidence too low",
    IterationOutcome.APPLY_FAILED: "apply failed",
    IterationOutcome.PUSH_FAILED: "push failed",
    IterationOutcome.TIMEOUT: "timed out",
    IterationOutcome.MAX_ITERATIONS: "max iterations reached",
}

app = typer.Typer(help=APP_HELP)

ConfigOption = typer.Option(
    DEFAULT_CONFIG_NAME,
    "--config",
    "-c",
    help="Path to the ci-doctor configuration file (optional).",
)


# ------------------------------------------------------------------ config
def _copy_config_template() -> Dict[str, Any]:
    """Return a deep copy of the default configuration template."""
    return copy.deepcopy(DEFAULT_CONFIG_TEMPLATE)


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _merge(base[key], value)
        else:
            base[key] = value
    return base


def load_config(config_path: Path) -> Dict[str, Any]:
    """Load YAML configuration from disk and merge it over the defaults."""
    config = _copy_config_template()
    if not config_path.exists():
        return config

    try:
        with config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as error:
        typer.echo(f"Failed to parse config: {error}")
        raise typer.Exit(code=1) from error

    if not isinstance(data, dict):
        typer.echo("Configuration must be a mapping at the top level.")
        raise typer.Exit(code=1)

    return _merge(config, data)


def _write_config(config_path: Path, config_data: Dict[str, Any]) -> None:
    """Persist configuration data to disk with stable formatting."""
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(config_data, handle, sort_keys=False)


# ----------------------------------------------------------------- wiring
def _fail(label: str, error: object) -> NoReturn:
    typer.secho(f"{label} failed: {error}", fg=typer.colors.RED, err=True)
    raise typer.Exit(code=1)


def _discover_repo(label: str) -> GitRepository:
    try:
        return GitRepository.discover(Path.cwd())
    except GitError as error:
        _fail(label, error)


def _cache_for(config: Dict[str, Any], repo: GitRepository) -> ResultCache:
    relative = (config.get("paths") or {}).get("cache") or DEFAULT_CONFIG_TEMPLATE["paths"]["cache"]
    return ResultCache.for_repo(repo.root, relative)


def _build_llm(config: Dict[str, Any]) -> LLMClient:
    """Select the oracle transport named by ``oracle.backend``."""
    oracle_cfg = config.get("oracle") or {}
    backend = str(oracle_cfg.get("backend", "copilot")).strip().lower()
    model_name = str(oracle_cfg.get("model", "gpt-5-mini"))
    client_kwargs: Dict[str, Any] = {}
    timeout_value = oracle_cfg.get("timeout")
    if isinstance(timeout_value, (int, float)) and timeout_value > 0:
        client_kwargs["timeout"] = float(timeout_value)

    if backend == "copilot":
        return CopilotCliClient(**client_kwargs)

    if backend in {"responses", "openai"}:
        base_url_value = oracle_cfg.get("base_url")
        if isinstance(base_url_value, str) and base_url_value.strip():
            client_kwargs["base_url"] = base_url_value.strip()
        try:
            return ResponsesAPIClient(model=model_name, **client_kwargs)
        except ValueError as error:
            if "api key" in str(error).lower():
                typer.echo("No API key given. Set OPENAI_API_KEY or CIDOC_API_KEY.")
            else:
                typer.echo(f"Failed to initialise Responses client: {error}")
            raise typer.Exit(code=1)

    typer.echo(f"Unknown oracle backend '{backend}'. Use 'copilot' or 'responses'.")
    raise typer.Exit(code=1)


def _build_gate(config: Dict[str, Any], repo: GitRepository, cache: ResultCache) -> SafeApplyGate:
    git_cfg = config.get("git") or {}
    return SafeApplyGate(
        repo,
        branch_prefix=str(git_cfg.get("branch_prefix", "ci-fix")),
        commit_prefix=str(git_cfg.get("commit_prefix", "CI Doctor:")),
        cache=cache,
    )


def _collector(config: Dict[str, Any], repo: GitRepository) -> GithubEvidenceCollector:
    evidence_cfg = config.get("evidence") or {}
    return GithubEvidenceCollector(repo.root, log_tail_lines=int(evidence_cfg.get("log_tail_lines", 200)))


def _load_cached_bundle(cache: ResultCache) -> EvidenceBundle:
    data = cache.read_json(EVIDENCE_FILE)
    if not isinstance(data, dict):
        typer.echo("No cached evidence bundle found.")
        typer.echo("Run `ci-doctor analyze` first to collect evidence.")
        raise typer.Exit(code=1)
    try:
        bundle = EvidenceBundle.from_dict(data)
    except ValueError as error:
        _fail("Loading evidence", error)
    typer.echo("Using cached evidence bundle.")
    return bundle


def _ask(label: str, oracle: OracleClient, bundle: EvidenceBundle, mode: DiagnosticMode) -> DiagnosticRecord:
    typer.echo(f"Asking the oracle ({mode.value})...")
    try:
        return oracle.request(bundle, mode)
    except OracleError as error:
        _fail(label, error)


# --------------------------------------------------------------- rendering
def _render_evidence(bundle: EvidenceBundle, max_entries: int = 6) -> None:
    typer.echo("Evidence pack:")
    for item in bundle.items[:max_entries]:
        payload = item.payload if isinstance(item.payload, str) else json.dumps(item.payload, default=str)
        excerpt = " ".join(str(payload).split())
        if len(excerpt) > 120:
            excerpt = excerpt[:120] + "..."
        typer.echo(f"  {item.id} [{item.kind.value}]: {excerpt}")
    if len(bundle) > max_entries:
        typer.echo(f"  ... and {len(bundle) - max_entries} more entries")
    typer.echo("")


def _refs(refs: tuple[str, ...]) -> str:
    return ", ".join(refs) if refs else "none"


def _render_hypotheses(record: DiagnosticRecord) -> None:
    typer.echo("Root-cause hypotheses:")
    for position, hypothesis in enumerate(record.hypotheses, start=1):
        rank = hypothesis.rank if hypothesis.rank is not None else position
        typer.echo(f"  #{rank} {hypothesis.title} [{hypothesis.confidence}%]")
        if hypothesis.explanation:
            typer.echo(f"     {hypothesis.explanation}")
        if hypothesis.next_check:
            typer.echo(f"     Next check: {hypothesis.next_check}")
        typer.echo(f"     Evidence: {_refs(hypothesis.evidence_refs)}")


def _render_explanation(record: DiagnosticRecord) -> None:
    typer.echo("Failure explanation:")
    typer.echo(f"  Summary: {record.summary}")
    typer.echo(f"  Confidence: {record.confidence}%")
    typer.echo(f"\n  {record.explanation}")
    if record.plain_english:
        bullets = [record.plain_english] if isinstance(record.plain_english, str) else list(record.plain_english)
        typer.echo("\n  Plain English:")
        for bullet in bullets:
            typer.echo(f"    - {bullet}")
    if record.why_local_differs:
        typer.echo(f"\n  Why local differs: {record.why_local_differs}")
    if record.what_changed:
        typer.echo(f"  What changed: {record.what_changed}")
    typer.echo(f"\n  Evidence: {_refs(record.evidence_refs)}")


def _render_patch(record: DiagnosticRecord) -> None:
    typer.echo("Proposed fix:")
    typer.echo(f"  Description: {record.description}")
    typer.echo(f"  Confidence: {record.confidence}%")
    typer.echo(f"  Risk: {record.risk.value if record.risk else 'unspecified'}")
    typer.echo(f"  Evidence: {_refs(record.evidence_refs)}")
    if record.warnings:
        typer.echo("  Warnings:")
        for warning in record.warnings:
            typer.echo(f"    ! {warning}")


def _render_diff(patch_text: str, cache: ResultCache) -> None:
    lines = patch_text.split("\n")
    typer.echo("\n--- Diff ---\n")
    for line in lines[:MAX_DIFF_LINES]:
        if line.startswith("+") and not line.startswith("+++"):
            typer.secho(line, fg=typer.colors.GREEN)
        elif line.startswith("-") and not line.startswith("---"):
            typer.secho(line, fg=typer.colors.RED)
        elif line.startswith("@@"):
            typer.secho(line, fg=typer.colors.CYAN)
        else:
            typer.echo(line)
    if len(lines) > MAX_DIFF_LINES:
        typer.echo(f"\n... diff truncated ({len(lines)} lines total, showing first {MAX_DIFF_LINES})")
        typer.echo(f"Full patch: {cache.path(PATCH_FILE)}")


def _render_record(record: IterationRecord) -> None:
    parts = [f"[{record.label}] {record.outcome.value}"]
    if record.confidence is not None:
        parts.append(f"confidence {record.confidence}%")
    if record.branch:
        parts.append(f"branch {record.branch}")
    typer.echo(" | ".join(parts))
    if record.reason:
        typer.echo(f"    {record.reason}")


def render_scoreboard(
    history: IterationHistory,
    record: Optional[DiagnosticRecord],
    elapsed: float,
) -> List[str]:
    """Return the watch-mode scoreboard lines for ``history``."""
    lines = ["--- Scoreboard ---", ""]
    if record is not None:
        top = record.top_hypothesis
        if top is not None:
            lines.append(f"  Top hypothesis: {top.title} [{top.confidence}%]")
        if record.summary:
            lines.append(f"  Explanation: {record.summary}")
        if record.patch:
            lines.append(f"  Fix confidence: {record.effective_confidence}%")
            lines.append(f"  Fix: {record.description}")
            files_changed = sum(1 for line in record.patch.splitlines() if line.startswith("--- a/"))
            lines.append(f"  Files changed: {files_changed}")

    lines.append("")
    lines.append(f"  Iterations: {history.iterations}")
    lines.append(f"  Total time: {elapsed:.1f}s")

    terminal = history.terminal_record
    if terminal is not None and terminal.outcome is IterationOutcome.SUCCESS:
        lines.append("")
        lines.append("  CI before: FAILED -> after fix: PASSING")
    else:
        outcome = terminal.outcome if terminal is not None else IterationOutcome.MAX_ITERATIONS
        reason = OUTCOME_REASONS.get(outcome, outcome.value)
        lines.append("")
        lines.append(f"  CI before: FAILED -> after fix: {reason.upper()}")
        if terminal is not None and terminal.reason:
            lines.append(f"  Reason: {terminal.reason}")
    return lines


# ---------------------------------------------------------------- commands
@app.callback()
def main(
    log_level: str = typer.Option(
        "WARNING",
        "--log-level",
        help="Logging level for diagnostics and telemetry (DEBUG, INFO, WARNING, ...).",
    ),
) -> None:
    """Diagnose GitHub Actions CI failures."""
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        raise typer.BadParameter(f"Unknown log level: {log_level}", param_hint="--log-level")
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


@app.command()
def init(
    config: str = ConfigOption,
    force: bool = typer.Option(False, "--force", help="Overwrite an existing configuration file."),
) -> None:
    """Write the default configuration file."""
    config_path = Path(config)
    if config_path.exists() and not force:
        typer.echo(f"Configuration already exists at {config_path}; use --force to overwrite.")
        raise typer.Exit(code=1)
    _write_config(config_path, _copy_config_template())
    typer.echo(f"Created configuration at {config_path}.")


@app.command()
def analyze(config: str = ConfigOption) -> None:
    """Collect evidence for the latest failed run and rank root-cause hypotheses."""
    config_data = load_config(Path(config))
    repo = _discover_repo("Analyze")
    cache = _cache_for(config_data, repo)

    try:
        bundle = _collector(config_data, repo).collect()
    except EvidenceError as error:
        _fail("Analyze", error)
    cache.write_json(EVIDENCE_FILE, bundle.to_dict())
    _render_evidence(bundle)

    oracle = OracleClient(_build_llm(config_data), cache=cache)
    record = _ask("Analyze", oracle, bundle, DiagnosticMode.HYPOTHESES)
    cache.write_json(result_file(DiagnosticMode.HYPOTHESES.value), record.model_dump(mode="json"))
    _render_hypotheses(record)
    typer.echo("\nTip: run `ci-doctor explain` for a plain-English breakdown.")


@app.command()
def explain(config: str = ConfigOption) -> None:
    """Explain the latest failure using the cached evidence bundle."""
    config_data = load_config(Path(config))
    repo = _discover_repo("Explain")
    cache = _cache_for(config_data, repo)
    bundle = _load_cached_bundle(cache)

    oracle = OracleClient(_build_llm(config_data), cache=cache)
    record = _ask("Explain", oracle, bundle, DiagnosticMode.EXPLAIN)
    cache.write_json(result_file(DiagnosticMode.EXPLAIN.value), record.model_dump(mode="json"))
    _render_explanation(record)
    typer.echo("\nTip: run `ci-doctor fix` to generate a patch.")


@app.command()
def fix(
    config: str = ConfigOption,
    yes: bool = typer.Option(False, "--yes", "-y", help="Apply without asking for confirmation."),
    auto: bool = typer.Option(
        False,
        "--auto",
        help="Iterate diagnose, fix and push until CI passes (same as `watch`).",
    ),
) -> None:
    """Propose a patch for the cached failure and commit it on a new branch."""
    if auto:
        watch(config=config)
        return

    config_data = load_config(Path(config))
    repo = _discover_repo("Fix")
    cache = _cache_for(config_data, repo)
    bundle = _load_cached_bundle(cache)

    oracle = OracleClient(_build_llm(config_data), cache=cache)
    record = _ask("Fix", oracle, bundle, DiagnosticMode.PATCH)
    cache.write_json(result_file(DiagnosticMode.PATCH.value), record.model_dump(mode="json"))
    _render_patch(record)

    gate = _build_gate(config_data, repo, cache)
    threshold = int((config_data.get("policy") or {}).get("interactive_min_confidence", 60))
    decision = gate.check_policy(record, threshold)
    if not decision.allowed:
        typer.secho(f"\n{decision.reason}", fg=typer.colors.RED)
        typer.echo(f"Review the patch manually: {cache.path(result_file(DiagnosticMode.PATCH.value))}")
        return

    _render_diff(record.patch or "", cache)
    if yes:
        typer.echo("Auto-confirmed (--yes).")
    elif not typer.confirm("Apply this patch on a new branch?", default=False):
        typer.echo("Patch not applied.")
        return

    try:
        result = gate.run(record, threshold)
    except GitError as error:
        _fail("Fix", error)
    if result.state is not GateState.COMMITTED:
        typer.secho(f"\n{result.reason}", fg=typer.colors.RED, err=True)
        typer.echo(f"Try manually: git apply --3way {cache.path(PATCH_FILE)}")
        raise typer.Exit(code=1)

    remote = str((config_data.get("git") or {}).get("remote", "origin"))
    typer.secho("\nPatch applied and committed.", fg=typer.colors.GREEN)
    typer.echo(f"Branch: {result.branch}")
    typer.echo(f"Commit: {result.commit}")
    typer.echo(f"Push when ready: git push -u {remote} {result.branch}")


@app.command()
def watch(config: str = ConfigOption) -> None:
    """Diagnose, fix and push until CI passes or a stop condition is reached."""
    config_data = load_config(Path(config))
    repo = _discover_repo("Watch")
    cache = _cache_for(config_data, repo)
    try:
        settings = ControllerSettings.from_config(config_data)
    except ValueError as error:
        _fail("Watch", error)

    remote = str((config_data.get("git") or {}).get("remote", "origin"))

    def push_branch(branch: str) -> None:
        typer.echo(f"Pushing fix branch {branch} to {remote}...")
        repo.push(remote, branch, set_upstream=True)

    collector = _collector(config_data, repo)

    def collect_evidence(run_id: int) -> EvidenceBundle:
        bundle = collector.collect(run_id=run_id)
        cache.write_json(EVIDENCE_FILE, bundle.to_dict())
        return bundle

    controller = ConvergenceController(
        poller=RunPoller(GhRunProvider(repo.root)),
        collect_evidence=collect_evidence,
        oracle=OracleClient(_build_llm(config_data), cache=cache),
        gate=_build_gate(config_data, repo, cache),
        push_branch=push_branch,
        settings=settings,
        cache=cache,
        on_record=_render_record,
    )

    typer.echo("Monitoring CI: diagnose, fix and push until the pipeline passes.")
    typer.echo(
        f"Minimum fix confidence: {settings.min_confidence}% | Max iterations: {settings.max_iterations}\n"
    )
    started = time.monotonic()
    history = controller.run()
    typer.echo("")
    for line in render_scoreboard(history, controller.current_record, time.monotonic() - started):
        typer.echo(line)

    if history.final_outcome is not IterationOutcome.SUCCESS:
        raise typer.Exit(code=1)


@app.command()
def retry(config: str = ConfigOption) -> None:
    """Re-run the failed jobs of the most recent failed workflow run."""
    config_data = load_config(Path(config))
    repo = _discover_repo("Retry")
    cache = _cache_for(config_data, repo)
    provider = GhRunProvider(repo.root)

    run_id: Optional[int] = None
    workflow: Optional[str] = None
    cached = cache.read_json(EVIDENCE_FILE)
    if isinstance(cached, dict):
        try:
            failed_run = EvidenceBundle.from_dict(cached).first_of(EvidenceKind.FAILED_RUN)
        except ValueError:
            failed_run = None
        if failed_run is not None and isinstance(failed_run.payload, dict):
            run_id = failed_run.payload.get("runId")
            workflow = failed_run.payload.get("workflow")

    try:
        if run_id is None:
            run_id = provider.latest_failed_run_id()
        if run_id is None:
            typer.echo("No failed runs found to retry.")
            return
        typer.echo(f"Re-running: {workflow or 'workflow'} (#{run_id})")
        provider.rerun_failed(int(run_id))
    except PipelineError as error:
        _fail("Retry", error)

    typer.secho("Re-run triggered.", fg=typer.colors.GREEN)
    typer.echo(f"Watch progress with: gh run watch {run_id}")


if __name__ == "__main__":
    app()
