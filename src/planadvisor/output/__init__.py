"""
Output module - Separates rendering from analysis.

Provides multiple output formats:
- render_text: terminal output for the CLI
- render_json: stable JSON schema for CI and tooling
- render_markdown: pull request and issue friendly

Usage:
    from planadvisor.output import render, OutputFormat

    report = advisor.analyze(query)
    print(render(report, OutputFormat.MARKDOWN))
"""

from planadvisor.output.renderers import (
    OutputFormat,
    render,
    render_json,
    render_many,
    render_markdown,
    render_text,
)
from planadvisor.output.schema import (
    SCHEMA_VERSION,
    AdvisorReportSchema,
    FindingSchema,
    get_json_schema,
)

__all__ = [
    "OutputFormat",
    "render",
    "render_many",
    "render_text",
    "render_json",
    "render_markdown",
    "SCHEMA_VERSION",
    "AdvisorReportSchema",
    "FindingSchema",
    "get_json_schema",
]
