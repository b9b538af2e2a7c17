"""
PlanAdvisor CLI - cost-based query plan advisor.

Reads a workload file (table statistics plus normalized queries), plans
each query and reports what to change.

Usage:
    planadvisor analyze workload.yaml
    planadvisor analyze workload.yaml --query pending_orders --format json
    planadvisor classify workload.yaml --query pending_orders
    planadvisor rules

Exit codes:
    0  no critical findings
    1  at least one critical finding
    2  invalid input (workload, config, unknown table or column)
"""

from __future__ import annotations

import logging
from enum import Enum
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from planadvisor import __version__
from planadvisor.advisor import AdvisorReport, QueryAdvisor, Severity, get_registry
from planadvisor.config import AdvisorConfig, get_config, load_config_from_file
from planadvisor.exceptions import PlanAdvisorError
from planadvisor.output import OutputFormat, render, render_many
from planadvisor.planner.classifier import NonSargable, PredicateClassifier
from planadvisor.query.loader import Workload, load_workload


class Format(str, Enum):
    """Output formats accepted on the command line."""
    text = "text"
    json = "json"
    markdown = "markdown"


app = typer.Typer(
    name="planadvisor",
    help="Cost-based query plan advisor (PostgreSQL-style cost model)",
    no_args_is_help=True,
)

console = Console(soft_wrap=True)
error_console = Console(stderr=True)

EXIT_CRITICAL = 1
EXIT_INPUT_ERROR = 2

_SEVERITY_STYLES = {
    Severity.CRITICAL: "red bold",
    Severity.WARNING: "yellow",
    Severity.INFO: "blue",
}


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"PlanAdvisor version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        Optional[bool],
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit.",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """PlanAdvisor - cost-based query plan advisor."""
    pass


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=error_console, show_path=False)],
        force=True,
    )


def _fail(error: PlanAdvisorError) -> typer.Exit:
    error_console.print(f"[red]Error:[/red] {escape(error.message)}")
    return typer.Exit(code=EXIT_INPUT_ERROR)


def _load(workload_file: Path, config_file: Path | None) -> tuple[Workload, AdvisorConfig]:
    workload = load_workload(workload_file)
    config = load_config_from_file(config_file) if config_file else get_config()
    return workload, config


def _print_report(report: AdvisorReport) -> None:
    """Coloured terminal rendering of one report."""
    console.print(Panel(
        report.plan_text,
        title=f"{report.query}: cost {report.total_cost:,.2f}, ~{report.estimated_rows:,.0f} rows",
        border_style="cyan",
    ))
    if report.alternatives:
        console.print("[bold]Candidates considered:[/bold]")
        for alt in report.alternatives:
            console.print(f"   [dim]{escape(alt)}[/dim]", highlight=False)
        console.print()

    if not report.findings:
        console.print("[green]No issues found.[/green]\n")
    else:
        console.print(f"[bold]Found {len(report.findings)} issue(s):[/bold]\n")

    for finding in report.findings:
        style = _SEVERITY_STYLES[finding.severity]
        confidence = " [dim](low confidence)[/dim]" if finding.low_confidence else ""
        console.print(
            f"[{style}][{finding.severity.value.upper()}][/{style}] {escape(finding.title)}{confidence}",
            highlight=False,
        )
        console.print(f"   [dim]{finding.kind.value}[/dim]")
        console.print(f"   {finding.rationale}", markup=False, highlight=False)
        if finding.remediation:
            console.print("\n   [bold]Fix:[/bold]")
            for line in finding.remediation.split("\n"):
                console.print(f"   [green]{escape(line)}[/green]", highlight=False)
        console.print()

    for error in report.errors:
        error_console.print(f"[red]Rule failed:[/red] {escape(error['message'])}")

    meta = report.metadata
    console.print(
        f"[dim]{meta.node_count} plan nodes, {meta.enumeration_steps} join candidates, "
        f"{meta.rules_run} rule(s) run[/dim]\n"
    )


@app.command()
def analyze(
    workload_file: Annotated[
        Path,
        typer.Argument(
            help="Workload file (YAML or JSON) with table statistics and queries",
            exists=True,
            readable=True,
            resolve_path=True,
        ),
    ],
    query: Annotated[
        Optional[str],
        typer.Option("--query", "-q", help="Analyze only this query (default: all)"),
    ] = None,
    output_format: Annotated[
        Format,
        typer.Option("--format", "-f", help="Output format"),
    ] = Format.text,
    explain: Annotated[
        bool,
        typer.Option("--explain", "-e", help="Show every candidate plan considered"),
    ] = False,
    config_file: Annotated[
        Optional[Path],
        typer.Option("--config", "-c", help="Config file (JSON or YAML)"),
    ] = None,
    strict: Annotated[
        bool,
        typer.Option("--strict", help="Fail when a join has no feasible strategy"),
    ] = False,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Debug logging to stderr"),
    ] = False,
) -> None:
    """
    Plan the workload's queries and report on each plan.

    Examples:

        $ planadvisor analyze workload.yaml

        $ planadvisor analyze workload.yaml -q pending_orders -f markdown
    """
    _configure_logging(verbose)
    try:
        workload, config = _load(workload_file, config_file)
        if strict:
            config = config.model_copy(update={"strict_planning": True})
        advisor = QueryAdvisor(workload.store(), config)

        if query is not None:
            reports = [advisor.analyze(workload.query(query), explain=explain)]
            errors = {}
        elif explain:
            reports = [advisor.analyze(q, explain=True) for q in workload.queries]
            errors = {}
        else:
            batch = advisor.analyze_many(list(workload.queries))
            reports, errors = batch.reports, batch.errors
    except PlanAdvisorError as e:
        raise _fail(e) from e

    fmt = OutputFormat(output_format.value)
    if fmt is OutputFormat.TEXT:
        for report in reports:
            _print_report(report)
    elif len(reports) == 1 and query is not None:
        typer.echo(render(reports[0], fmt))
    else:
        typer.echo(render_many(reports, fmt))

    for name, error in errors.items():
        error_console.print(f"[red]Error in {name}:[/red] {escape(error.message)}")
    if errors:
        raise typer.Exit(code=EXIT_INPUT_ERROR)
    if any(r.has_critical for r in reports):
        raise typer.Exit(code=EXIT_CRITICAL)


@app.command()
def classify(
    workload_file: Annotated[
        Path,
        typer.Argument(
            help="Workload file (YAML or JSON)",
            exists=True,
            readable=True,
            resolve_path=True,
        ),
    ],
    query: Annotated[
        str,
        typer.Option("--query", "-q", help="Query to classify"),
    ],
) -> None:
    """
    Show how each relation's predicates match each of its indexes.
    """
    try:
        workload = load_workload(workload_file)
        spec = workload.query(query)
        snapshot = workload.store().snapshot()
        rows = []
        for key in spec.relation_keys:
            table = snapshot.get_table(spec.relation(key).table)
            classifier = PredicateClassifier(table, key)
            predicates = spec.local_predicates(key)
            for index in table.indexes:
                result = classifier.classify(predicates, index)
                if isinstance(result, NonSargable):
                    rows.append((key, index.name, "[red]non-sargable[/red]", escape(result.detail)))
                else:
                    rows.append((
                        key,
                        index.name,
                        "[green]sargable[/green]",
                        escape(f"{result.access_kind.value}, prefix {result.key_prefix_length}"
                        f" ({', '.join(result.bound_columns)})"),
                    ))
            for found in classifier.non_sargable(predicates):
                rows.append((key, "(any)", "[red]non-sargable[/red]", escape(found.detail)))
    except PlanAdvisorError as e:
        raise _fail(e) from e

    table_view = Table(title=f"Predicate classification: {query}")
    table_view.add_column("Relation", style="cyan")
    table_view.add_column("Index")
    table_view.add_column("Result")
    table_view.add_column("Detail")
    for row in rows:
        table_view.add_row(*row)
    console.print(table_view)


@app.command()
def rules() -> None:
    """
    List all available report rules.

    Shows rule IDs, default severities and descriptions.
    """
    table = Table()
    table.add_column("Rule ID", style="cyan")
    table.add_column("Severity")
    table.add_column("Description")

    for rule_cls in sorted(get_registry().all(), key=lambda r: r.rule_id):
        style = _SEVERITY_STYLES[rule_cls.severity]
        severity = rule_cls.severity.value.upper()
        table.add_row(rule_cls.rule_id, f"[{style}]{severity}[/{style}]", rule_cls.description)

    console.print(table)


if __name__ == "__main__":
    app()
