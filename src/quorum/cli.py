"""Click CLI for Quorum, the deliberation orchestration engine."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path

import click
from pydantic import ValidationError
from rich.logging import RichHandler

from quorum.attestation import (
    AttestationFormatError,
    export_attestation_binary,
    export_attestation_json,
    import_attestation_binary,
    verify_attestation_chain,
)
from quorum.config import AppConfig, load_quorum_config
from quorum.deliberation.engine import DeliberationEngine, DeliberationError
from quorum.display.renderer import Renderer
from quorum.models import (
    COUNCIL_PHASES,
    AdaptivePreset,
    AttestationChain,
    ChallengeStyle,
    DeliberationConfig,
    Profile,
    TopologyConfig,
    TopologyName,
    Verbosity,
    VotingMethod,
)
from quorum.output.reader import (
    build_canonical_record,
    load_attestation,
    load_hash_chain,
    load_index,
    resolve_session,
    verify_session,
)
from quorum.output.store import SessionStore
from quorum.providers.registry import AVAILABLE_PROVIDERS, build_providers, parse_provider_spec
from quorum.topology import TopologyError, list_topologies, validate_topology_config


def _resolve_value(value: str) -> str:
    """If value starts with @, read the file; otherwise return as-is."""
    if value.startswith("@"):
        path = Path(value[1:])
        if not path.is_file():
            raise click.BadParameter(f"File not found: {path}")
        return path.read_text(encoding="utf-8").strip()
    return value


def _parse_pairs(values: tuple[str, ...], option: str) -> dict[str, str]:
    pairs: dict[str, str] = {}
    for v in values:
        key, sep, val = v.partition("=")
        if not sep or not key.strip() or not val.strip():
            raise click.BadParameter(f"Expected NAME=VALUE, got '{v}'", param_hint=option)
        pairs[key.strip()] = val.strip()
    return pairs


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
        force=True,
    )


@click.group(epilog="""\b
Examples:
  quorum ask "Should we adopt Rust?" -p openai -p anthropic -p google
  quorum ask @question.txt -p openai -p anthropic -p google --topology tournament
  quorum topologies
  quorum sessions            # list past deliberations
  quorum verify              # check the most recent session's hash chain
  quorum attest export --format binary -o session.qatt
""")
@click.option(
    "--log-level",
    type=click.Choice(["debug", "info", "warning", "error"]),
    default="warning",
    show_default=True,
    help="Logging level.",
)
def main(log_level: str) -> None:
    """Quorum: deliberation orchestration engine.

    Several AI providers answer a question, critique and revise each
    other's positions, vote, and a synthesizer merges the result. Every
    phase is recorded in a tamper-evident hash chain.
    """
    _setup_logging(log_level)
    load_quorum_config()


@main.command(epilog="""\b
Examples:
  quorum ask "Compare React vs Vue" -p openai -p anthropic -p google
  quorum ask "Best approach?" -p openai -p anthropic --phases gather,debate,vote
  quorum ask "Is X safe?" -p a=openai:gpt-4o -p b=openai:gpt-4o-mini --topology star --hub a
  quorum ask "Topic" -p openai -p anthropic -p google --adaptive balanced --voting condorcet
""")
@click.argument("question")
@click.option(
    "-p",
    "--provider",
    multiple=True,
    help=(
        "Provider, provider:model or name=provider:model (repeatable). "
        f"Available: {', '.join(AVAILABLE_PROVIDERS)}"
    ),
)
@click.option(
    "--topology",
    type=click.Choice([t.value for t in TopologyName]),
    default=TopologyName.MESH.value,
    show_default=True,
    help="Deliberation shape.",
)
@click.option("-r", "--rounds", type=int, default=1, show_default=True, help="Debate rounds (mesh).")
@click.option(
    "--phases",
    default=",".join(COUNCIL_PHASES),
    show_default=True,
    help="Comma-separated council phases (mesh). Gather always runs first.",
)
@click.option("--focus", multiple=True, help="Focus area for the council (repeatable).")
@click.option(
    "--challenge-style",
    type=click.Choice([c.value for c in ChallengeStyle]),
    default=ChallengeStyle.ADVERSARIAL.value,
    show_default=True,
)
@click.option(
    "--voting",
    type=click.Choice([v.value for v in VotingMethod]),
    default=VotingMethod.BORDA.value,
    show_default=True,
    help="Vote tallying method.",
)
@click.option("--approval-k", type=int, default=None, help="Approvals per ballot (approval voting).")
@click.option(
    "--adaptive",
    type=click.Choice([a.value for a in AdaptivePreset]),
    default=AdaptivePreset.OFF.value,
    show_default=True,
    help="Entropy-driven phase skipping and extra rounds.",
)
@click.option(
    "--threshold", type=float, default=0.85, show_default=True,
    help="Convergence similarity threshold for skipping rebuttal (0.0-1.0).",
)
@click.option("--weight", multiple=True, help="Vote weight NAME=FLOAT (repeatable).")
@click.option("--role", multiple=True, help="Role NAME=ROLE, e.g. anthropic=security reviewer (repeatable).")
@click.option("--devils-advocate", is_flag=True, help="Make the last provider argue against consensus.")
@click.option("--no-what-would-change", is_flag=True, help="Skip the what-would-change follow-up.")
@click.option("--hub", default=None, help="Hub provider (star).")
@click.option("--moderator", default=None, help="Moderator provider (panel).")
@click.option(
    "--bracket-seed", type=click.Choice(["random", "ranked"]), default="random",
    show_default=True, help="Bracket seeding (tournament).",
)
@click.option("--sub-questions", type=int, default=None, help="Sub-question count (map_reduce).")
@click.option("--seed", type=int, default=None, help="Random seed for tournament brackets.")
@click.option("--memory", default=None, help="Prior context text or @file, added to the first phase.")
@click.option("--stream", is_flag=True, help="Use provider streaming where supported.")
@click.option("--timeout", type=float, default=None, help="Per-call timeout in seconds.")
@click.option("-v", "--verbose", is_flag=True, help="Show every response in full.")
@click.option("-o", "--sessions-dir", default=None, help="Session store directory.")
def ask(
    question: str,
    provider: tuple[str, ...],
    topology: str,
    rounds: int,
    phases: str,
    focus: tuple[str, ...],
    challenge_style: str,
    voting: str,
    approval_k: int | None,
    adaptive: str,
    threshold: float,
    weight: tuple[str, ...],
    role: tuple[str, ...],
    devils_advocate: bool,
    no_what_would_change: bool,
    hub: str | None,
    moderator: str | None,
    bracket_seed: str,
    sub_questions: int | None,
    seed: int | None,
    memory: str | None,
    stream: bool,
    timeout: float | None,
    verbose: bool,
    sessions_dir: str | None,
) -> None:
    """Deliberate on QUESTION with several providers.

    QUESTION is the question or task. Use @file to read it from a file.

    The mesh topology (default) runs the full council: gather, plan,
    formulate, debate, adjust, rebuttal and vote, then a synthesizer
    merges the best thinking. Other topologies trade depth for speed
    or structure; see `quorum topologies`.

    Each session is written to its own directory under the session
    store, with a hash chain that `quorum verify` can check.
    """
    app_config = AppConfig()
    call_timeout = timeout or app_config.provider_timeout
    try:
        specs = [parse_provider_spec(p, call_timeout) for p in provider] or [
            parse_provider_spec(p, call_timeout) for p in app_config.get_default_providers()
        ]
        weights = {k: float(v) for k, v in _parse_pairs(weight, "--weight").items()}
        profile = Profile(
            rounds=rounds,
            phases=[p for p in phases.split(",") if p.strip()],
            challenge_style=ChallengeStyle(challenge_style),
            voting_method=VotingMethod(voting),
            approval_k=approval_k,
            adaptive=AdaptivePreset(adaptive),
            convergence_threshold=threshold,
            weights=weights,
            roles=_parse_pairs(role, "--role"),
            devils_advocate=devils_advocate,
            what_would_change=not no_what_would_change,
            **({"focus": list(focus)} if focus else {}),
        )
        config = DeliberationConfig(
            input=_resolve_value(question),
            providers=specs,
            profile=profile,
            topology=TopologyName(topology),
            topology_config=TopologyConfig(
                hub=hub,
                moderator=moderator,
                bracket_seed=bracket_seed,
                sub_questions=sub_questions,
                seed=seed,
            ),
            sessions_dir=sessions_dir or app_config.sessions_dir,
            streaming=stream,
            verbosity=Verbosity.VERBOSE if verbose else Verbosity.QUIET,
            max_retries=app_config.max_retries,
            retry_delay=app_config.retry_delay,
            memory_context=_resolve_value(memory) if memory else None,
        )
    except (ValueError, ValidationError) as e:
        raise click.BadParameter(str(e)) from e

    error = validate_topology_config(config.topology, config.provider_names, config.topology_config)
    if error:
        raise click.ClickException(error)

    engine = DeliberationEngine(
        config,
        build_providers(config.providers, app_config),
        Renderer(config.verbosity),
        SessionStore(config.sessions_dir),
        stats_path=app_config.stats_path,
    )
    try:
        asyncio.run(engine.run())
    except (TopologyError, DeliberationError) as e:
        raise click.ClickException(str(e)) from e


@main.command("providers")
def list_providers() -> None:
    """List available providers and their configuration status.

    Keys come from ~/.quorum/config, .env, or QUORUM_*_API_KEY env vars.
    """
    app_config = AppConfig()
    for name in AVAILABLE_PROVIDERS:
        status = "configured" if app_config.get_api_key(name) else "not configured"
        if name == "ollama":
            status = f"url: {app_config.ollama_base_url}"
        model = app_config.get_default_model(name)
        click.echo(f"  {name:15s}  model: {model:30s}  ({status})")


@main.command()
def topologies() -> None:
    """List deliberation topologies and what each is best for."""
    Renderer().show_topologies(list_topologies())


_SESSION_ARGUMENT = click.argument("session", required=False)
_SESSIONS_DIR_OPTION = click.option(
    "-o", "--sessions-dir", default=None, help="Session store directory.",
)


def _sessions_root(sessions_dir: str | None) -> str:
    return sessions_dir or AppConfig().sessions_dir


@main.command(epilog="""\b
Examples:
  quorum sessions        # list all sessions
  quorum sessions -n 5   # last 5 sessions
""")
@click.option("-n", "--limit", type=int, default=None, help="Show only the last N sessions.")
@_SESSIONS_DIR_OPTION
def sessions(limit: int | None, sessions_dir: str | None) -> None:
    """List past deliberations, most recent first."""
    root = _sessions_root(sessions_dir)
    entries = sorted(load_index(root), key=lambda e: e.timestamp, reverse=True)
    if not entries:
        raise click.ClickException(f"No sessions found in {root}")
    if limit is not None:
        entries = entries[:limit]
    Renderer().show_sessions(entries)


@main.command(epilog="""\b
Examples:
  quorum verify                                   # most recent session
  quorum verify 2026-10-18T09-12-44_my-topic_a1b2c3
""")
@_SESSION_ARGUMENT
@_SESSIONS_DIR_OPTION
def verify(session: str | None, sessions_dir: str | None) -> None:
    """Verify a stored session's hash chain and attestation records.

    Exits non-zero when any phase file, chain entry or attestation
    record fails to match.
    """
    session_dir = resolve_session(session, _sessions_root(sessions_dir))
    renderer = Renderer()
    result = verify_session(session_dir)
    renderer.show_verification(session_dir.name, result)

    attestation = load_attestation(session_dir)
    if attestation is not None:
        att_result = verify_attestation_chain(attestation, load_hash_chain(session_dir))
        if att_result.valid:
            click.echo(f"  attestation: {len(attestation.records)} record(s) verified")
        else:
            click.echo(f"  attestation: {att_result.kind} at {att_result.broken_at}: {att_result.details}")
            result = att_result
    if not result.valid:
        raise click.ClickException("Session failed verification")


@main.command()
@_SESSION_ARGUMENT
@_SESSIONS_DIR_OPTION
@click.option("--output", "output_path", type=click.Path(dir_okay=False), default=None,
              help="Write to a file instead of stdout.")
def export(session: str | None, sessions_dir: str | None, output_path: str | None) -> None:
    """Export a session as one self-describing JSON record, integrity status included."""
    record = build_canonical_record(resolve_session(session, _sessions_root(sessions_dir)))
    text = record.model_dump_json(indent=2)
    if output_path:
        Path(output_path).write_text(text + "\n", encoding="utf-8")
        click.echo(f"Wrote {output_path}")
    else:
        click.echo(text)


@main.group()
def attest() -> None:
    """Export, import and verify attestation chains."""


@attest.command("export")
@_SESSION_ARGUMENT
@_SESSIONS_DIR_OPTION
@click.option("--format", "fmt", type=click.Choice(["json", "binary"]), default="json", show_default=True)
@click.option("--output", "output_path", type=click.Path(dir_okay=False), default=None,
              help="Output file (required for binary).")
def attest_export(session: str | None, sessions_dir: str | None, fmt: str, output_path: str | None) -> None:
    """Export a session's attestation chain as JSON or the QATT binary format."""
    session_dir = resolve_session(session, _sessions_root(sessions_dir))
    chain = load_attestation(session_dir)
    if chain is None:
        raise click.ClickException(f"No attestation chain found in {session_dir}")
    if fmt == "binary":
        if not output_path:
            raise click.UsageError("--output is required for binary export")
        Path(output_path).write_bytes(export_attestation_binary(chain))
        click.echo(f"Wrote {output_path}")
    elif output_path:
        Path(output_path).write_text(export_attestation_json(chain), encoding="utf-8")
        click.echo(f"Wrote {output_path}")
    else:
        click.echo(export_attestation_json(chain))


@attest.command("verify")
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
def attest_verify(path: str) -> None:
    """Verify an exported attestation chain (JSON or binary)."""
    data = Path(path).read_bytes()
    try:
        if data.lstrip()[:1] == b"{":
            chain = AttestationChain.model_validate(json.loads(data.decode("utf-8")))
        else:
            chain = import_attestation_binary(data)
    except (AttestationFormatError, ValueError) as e:
        raise click.ClickException(f"Cannot read attestation: {e}") from e
    result = verify_attestation_chain(chain)
    Renderer().show_verification(chain.session_id, result)
    if not result.valid:
        raise click.ClickException("Attestation chain failed verification")
