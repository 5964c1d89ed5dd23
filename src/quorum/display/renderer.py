"""Rich terminal output renderer."""

from __future__ import annotations

from collections.abc import Sequence

from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.status import Status
from rich.table import Table

from quorum.models import (
    AdaptiveAction,
    AdaptiveDecision,
    SessionIndexEntry,
    Synthesis,
    VerificationResult,
    Verbosity,
    VoteResult,
)


class Renderer:
    """Progress and results on the terminal.

    Verbose mode prints every response (streamed where possible); quiet mode
    keeps to a spinner and one line per participant.
    """

    def __init__(self, verbosity: Verbosity = Verbosity.QUIET, console: Console | None = None) -> None:
        self.console = console or Console()
        self.verbose = verbosity == Verbosity.VERBOSE
        self._status: Status | None = None

    def start_session(self, question: str, providers: Sequence[str], topology: str) -> None:
        table = Table(title="Deliberation", show_header=False)
        table.add_column("Key", style="bold cyan")
        table.add_column("Value")
        table.add_row("Question", question[:120] + ("..." if len(question) > 120 else ""))
        table.add_row("Topology", topology)
        table.add_row("Providers", ", ".join(providers))
        self.console.print(table)
        self.console.print()

    def start_phase(self, name: str) -> None:
        self.console.rule(f"[bold blue]{name}[/bold blue]")

    def start_work(self, providers: Sequence[str], phase: str) -> None:
        """Show a spinner while a parallel phase runs."""
        if self.console.is_terminal:
            label = f"[bold blue]{phase}[/bold blue]: {', '.join(providers)}"
            self._status = self.console.status(label, spinner="dots")
            self._status.start()

    def stop_work(self) -> None:
        if self._status:
            self._status.stop()
            self._status = None

    def start_provider_stream(self, provider: str) -> None:
        if self.verbose:
            self.console.print(f"\n[bold green]{provider}[/bold green]:")

    def stream_chunk(self, chunk: str) -> None:
        if self.verbose:
            self.console.print(chunk, end="", highlight=False)

    def end_provider_stream(self) -> None:
        if self.verbose:
            self.console.print()

    def show_response(self, provider: str, content: str) -> None:
        if self.verbose:
            self.console.print(
                Panel(Markdown(content), title=f"[bold]{provider}[/bold]", border_style="green")
            )
        else:
            self.console.print(f"  [green]✓[/green] {provider} [dim]({len(content):,} chars)[/dim]")

    def show_error(self, provider: str, error: str) -> None:
        self.console.print(f"[bold red]Error from {provider}:[/bold red] {error}")

    def show_skip(self, phase: str, reason: str) -> None:
        self.console.print(f"[yellow]Skipping {phase}:[/yellow] {reason}")

    def show_decision(self, decision: AdaptiveDecision) -> None:
        if decision.action == AdaptiveAction.CONTINUE and not self.verbose:
            return
        self.console.print(
            Panel(decision.reason, title=f"Adaptive: {decision.action.value}", border_style="yellow")
        )

    def show_votes(self, votes: VoteResult) -> None:
        self.console.print()
        self.console.rule(f"[bold cyan]Votes ({votes.method.value})[/bold cyan]")
        table = Table(show_header=True, header_style="bold")
        table.add_column("#", justify="right")
        table.add_column("Provider", style="bold green")
        table.add_column("Score", justify="right")
        for i, r in enumerate(votes.rankings, 1):
            table.add_row(str(i), r.provider, f"{r.score:g}")
        self.console.print(table)
        flag = "  [yellow](controversial)[/yellow]" if votes.controversial else ""
        self.console.print(f"[dim]{votes.details}[/dim]{flag}")

    def show_synthesis(self, synthesis: Synthesis) -> None:
        self.console.print()
        self.console.rule("[bold magenta]Synthesis[/bold magenta]")
        self.console.print(
            Panel(
                Markdown(synthesis.content),
                title=f"Synthesized by {synthesis.synthesizer}",
                border_style="magenta",
            )
        )
        self.console.print(
            f"[dim]Consensus: {synthesis.consensus_score:.2f}  |  "
            f"Confidence: {synthesis.confidence_score:.2f}[/dim]"
        )
        if synthesis.what_would_change:
            self.console.print(
                Panel(Markdown(synthesis.what_would_change), title="What would change this", border_style="dim")
            )

    def show_verification(self, session: str, result: VerificationResult) -> None:
        if result.valid:
            self.console.print(f"[bold green]✓ Integrity verified[/bold green] {session}")
            return
        self.console.print(f"[bold red]✗ Integrity check failed[/bold red] {session}")
        self.console.print(f"  kind: {result.kind}  phase: {result.broken_at or '-'}")
        if result.details:
            self.console.print(f"  {result.details}")

    def show_topologies(self, topologies: Sequence[dict[str, str]]) -> None:
        table = Table(title="Topologies", show_header=True, header_style="bold")
        table.add_column("Name", style="bold green")
        table.add_column("Description")
        table.add_column("Best for", style="dim")
        for t in topologies:
            table.add_row(t["name"], t["description"], t["best_for"])
        self.console.print(table)

    def show_sessions(self, entries: Sequence[SessionIndexEntry]) -> None:
        table = Table(title="Sessions", show_header=True, header_style="bold")
        table.add_column("Session", style="bold")
        table.add_column("Question")
        table.add_column("Winner", style="green")
        table.add_column("Duration", justify="right")
        for e in entries:
            question = e.question[:60] + ("..." if len(e.question) > 60 else "")
            table.add_row(e.session_id, question, e.winner, f"{e.duration / 1000:.1f}s")
        self.console.print(table)

    def show_output_path(self, path: str) -> None:
        self.console.print(f"\n[dim]Session written to: {path}[/dim]")
