#!/usr/bin/env python3
"""Evaluation harness CLI: score agent personas and gate CI on the result.

Usage:
    # Evaluate every agent with the live judge
    python eval.py

    # Deterministic CI run for two agents, writing the PR comment
    python eval.py --agents michael,dwight --mock-judge --pr-comment comment.md

    # Refresh the golden baselines from the current scores
    python eval.py --mock-judge --update-baseline

Exit code is 1 when any agent fails (below threshold or regressed).
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

from rich.console import Console

console = Console()


def _csv(value: str) -> list[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Persona evaluation harness: proposition-based LLM-as-a-judge scoring"
    )
    parser.add_argument(
        "--agents",
        type=str,
        default="all",
        help="Comma-separated agent ids, or 'all' (default)",
    )
    parser.add_argument(
        "--dimensions",
        type=str,
        default="adherence",
        help="Comma-separated dimensions (default: adherence)",
    )
    parser.add_argument(
        "--threshold",
        type=float,
        default=5.0,
        help="Minimum overall score (0-9) for an agent to pass (default: 5.0)",
    )
    parser.add_argument(
        "--mock-judge",
        action="store_true",
        help="Use the deterministic mock judge (no API calls)",
    )
    parser.add_argument(
        "--update-baseline",
        action="store_true",
        help="Write the current scores as the golden baselines",
    )
    parser.add_argument(
        "--regression-delta",
        type=float,
        default=1.0,
        help="Score drop that counts as a regression (default: 1.0)",
    )
    parser.add_argument(
        "--output",
        type=str,
        default=None,
        help="Write the JSON report to this path",
    )
    parser.add_argument(
        "--pr-comment",
        type=str,
        default=None,
        help="Write the PR comment markdown to this path",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    from src.config import get_settings
    from src.evals.errors import EvaluationError
    from src.evals.harness.report import (
        format_pr_comment,
        generate_json_report,
        print_human_report,
    )
    from src.evals.harness.runner import run_evaluation
    from src.logging_config import setup_logging

    settings = get_settings()
    setup_logging(settings.log_level, json_logs=settings.json_logs)

    agents = _csv(args.agents)
    dimensions = _csv(args.dimensions)

    if not 0 <= args.threshold <= 9:
        console.print("[red]--threshold must be between 0 and 9[/red]")
        return 2
    if args.regression_delta < 0:
        console.print("[red]--regression-delta must be non-negative[/red]")
        return 2

    mode = "mock" if args.mock_judge else "live"
    console.print("\n[bold]Persona Evaluation Harness[/bold]")
    console.print(
        f"Agents: {args.agents} | Dimensions: {', '.join(dimensions)} | "
        f"Threshold: {args.threshold} | Judge: {mode}\n"
    )

    try:
        result = asyncio.run(
            run_evaluation(
                agents,
                dimensions,
                args.threshold,
                mock_judge=args.mock_judge,
                update_baseline=args.update_baseline,
                regression_delta=args.regression_delta,
            )
        )
    except EvaluationError as exc:
        console.print(f"[red]Evaluation failed: {exc}[/red]")
        return 2

    print_human_report(result, console)

    if args.output:
        Path(args.output).write_text(generate_json_report(result) + "\n", encoding="utf-8")
        console.print(f"JSON report written to {args.output}")
    if args.pr_comment:
        Path(args.pr_comment).write_text(format_pr_comment(result) + "\n", encoding="utf-8")
        console.print(f"PR comment written to {args.pr_comment}")
    if args.update_baseline:
        console.print(f"[green]Golden baselines updated for {result.summary.total} agent(s).[/green]")

    return 1 if result.summary.failed > 0 else 0


if __name__ == "__main__":
    sys.exit(main())
