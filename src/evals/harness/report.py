"""Harness reports: JSON, a rich console table, and the PR comment markdown."""

from __future__ import annotations

import json

from rich.console import Console
from rich.table import Table

from src.evals.harness.runner import AgentResult, HarnessResult

COMMENT_MARKER = "<!-- persona-evaluation-report -->"

console = Console()


def generate_json_report(result: HarnessResult) -> str:
    return json.dumps(result.to_json_dict(), indent=2)


def _dimension_names(result: HarnessResult) -> list[str]:
    return sorted({dim for agent in result.agents.values() for dim in agent.dimensions})


def _fmt_overall(agent: AgentResult) -> str:
    return f"{agent.overall:.1f}" if agent.overall is not None else "-"


def _fmt_delta(delta: float) -> str:
    if delta == 0:
        return "="
    return f"{delta:+.1f}"


def _cell(agent: AgentResult, dimension: str, with_delta: bool = True) -> str:
    outcome = agent.dimensions.get(dimension)
    if outcome is None:
        return "-"
    if outcome.count is not None:
        return str(outcome.count)
    if outcome.score is None:
        return "-"
    text = f"{outcome.score:.1f}"
    delta = (agent.baseline_delta or {}).get(dimension)
    if with_delta and delta is not None:
        text += f" ({_fmt_delta(delta)})"
    return text


# ---------------------------------------------------------------------------
# Console report
# ---------------------------------------------------------------------------


def format_human_report(result: HarnessResult) -> str:
    """Plain-text report, one line per agent."""
    lines = [
        "=== Evaluation Harness Report ===",
        f"Timestamp: {result.timestamp}",
        "",
        "Agent Results:",
        "-" * 80,
    ]
    for agent_id, agent in result.agents.items():
        status = "PASS" if agent.passed else "FAIL"
        dims = " | ".join(f"{dim}: {_cell(agent, dim, with_delta=False)}" for dim in agent.dimensions)
        line = f"  {agent_id:<12} {status:<6} overall: {_fmt_overall(agent)}  {dims}"
        if agent.error:
            line += f"  error: {agent.error}"
        lines.append(line.rstrip())
    lines.append("-" * 80)
    summary = result.summary
    lines.append(f"Summary: {summary.passed}/{summary.total} passed, {summary.failed} failed")
    if summary.failed_agents:
        lines.append(f"Failed: {', '.join(summary.failed_agents)}")
    return "\n".join(lines)


def print_human_report(result: HarnessResult, out: Console | None = None) -> None:
    """Print the harness results as a rich table plus a summary."""
    out = out or console
    dimensions = _dimension_names(result)

    table = Table(title="Persona Evaluation Results", show_lines=True)
    table.add_column("Agent", style="cyan")
    for dim in dimensions:
        table.add_column(dim, justify="center")
    table.add_column("Overall", justify="center")
    table.add_column("Status", justify="center")

    for agent_id, agent in result.agents.items():
        status = "[green]PASS[/green]" if agent.passed else "[red]FAIL[/red]"
        table.add_row(
            agent_id,
            *(_cell(agent, dim) for dim in dimensions),
            _fmt_overall(agent),
            status,
        )

    out.print(table)
    summary = result.summary
    out.print(f"\n[bold]Summary:[/bold] {summary.passed}/{summary.total} passed, {summary.failed} failed")
    if summary.failed_agents:
        out.print(f"[red]Failed:[/red] {', '.join(summary.failed_agents)}")
    for agent_id, agent in result.agents.items():
        for reg in agent.regressions or []:
            out.print(
                f"[yellow]Regression:[/yellow] {agent_id} {reg.dimension} "
                f"{reg.baseline:.1f} -> {reg.current:.1f} ({reg.delta:+.1f})"
            )


# ---------------------------------------------------------------------------
# PR comment
# ---------------------------------------------------------------------------


def format_pr_comment(result: HarnessResult) -> str:
    """Markdown for the CI pull-request comment.

    Starts with ``COMMENT_MARKER`` so CI can find and update its previous
    comment instead of posting a new one.
    """
    dimensions = _dimension_names(result)
    header = ["Agent", *(d.capitalize() for d in dimensions), "Overall", "Status"]
    lines = [
        COMMENT_MARKER,
        "## Persona Evaluation Report",
        "",
        f"| {' | '.join(header)} |",
        f"| {' | '.join('---' for _ in header)} |",
    ]
    for agent_id, agent in result.agents.items():
        cols = [
            agent_id,
            *(_cell(agent, dim) for dim in dimensions),
            _fmt_overall(agent),
            "PASS" if agent.passed else "FAIL",
        ]
        lines.append(f"| {' | '.join(cols)} |")
    lines.append("")

    details = [
        f"{agent_id.capitalize()}'s {reg.dimension} dropped {abs(reg.delta):.1f} points "
        f"({reg.baseline:.1f} → {reg.current:.1f})"
        for agent_id, agent in result.agents.items()
        for reg in agent.regressions or []
    ]
    summary = result.summary
    if not details:
        if summary.failed == 0:
            lines.append(f"**Result**: All {summary.total} agents passed. No regressions detected.")
        else:
            lines.append(
                f"**Result**: {summary.passed}/{summary.total} agents passed. No regressions detected."
            )
    else:
        plural = "s" if len(details) > 1 else ""
        lines.append(f"**Result**: {len(details)} regression{plural} detected. {'. '.join(details)}.")
    return "\n".join(lines)
