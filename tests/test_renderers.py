"""Tests for the text, JSON and Markdown renderers."""

import json

import pytest

from planadvisor.advisor import QueryAdvisor
from planadvisor.config import AdvisorConfig
from planadvisor.output import (
    SCHEMA_VERSION,
    OutputFormat,
    get_json_schema,
    render,
    render_json,
    render_many,
    render_markdown,
    render_text,
)
from planadvisor.query.spec import QuerySpec

from conftest import NOW

PENDING = {"kind": "comparison", "column": "status", "operator": "=", "value": "pending"}


@pytest.fixture
def report(store):
    advisor = QueryAdvisor(store, AdvisorConfig(), clock=lambda: NOW)
    spec = QuerySpec.model_validate({"name": "pending_orders", "relations": ["orders"], "where": PENDING})
    return advisor.analyze(spec)


@pytest.fixture
def quiet_report(store):
    advisor = QueryAdvisor(store, AdvisorConfig(), include_rules={"OFFSET_PAGINATION"}, clock=lambda: NOW)
    return advisor.analyze(QuerySpec.model_validate({"name": "all_orders", "relations": ["orders"]}))


class TestJson:
    """Stable JSON output."""

    def test_structure(self, report):
        """The JSON document follows the report schema."""
        data = json.loads(render_json(report))
        assert data["version"] == SCHEMA_VERSION
        assert data["query"] == "pending_orders"
        assert data["sql"] == report.sql
        assert data["plan"]["total_cost"] == 10157.0
        assert data["plan"]["text"].startswith("Seq Scan on orders")
        assert data["summary"]["total"] == len(report.findings)
        assert data["metadata"]["node_count"] == 1

    def test_findings(self, report):
        """Findings carry kind, severity, remediation and node path."""
        data = json.loads(render_json(report))
        missing = [f for f in data["findings"] if f["kind"] == "MISSING_INDEX"]
        assert len(missing) == 1
        assert missing[0]["severity"] == "warning"
        assert missing[0]["remediation"] == "CREATE INDEX ix_orders_status ON orders (status);"
        assert missing[0]["node_path"] == ["Plan"]
        assert missing[0]["impact_band"] == "MEDIUM"

    def test_rule_runs(self, report):
        """Every rule run is listed with its status."""
        data = json.loads(render_json(report))
        assert {r["status"] for r in data["rule_runs"]} == {"pass"}
        assert len(data["rule_runs"]) == len(report.rule_runs)

    def test_render_many_is_an_array(self, report, quiet_report):
        """Several reports render as one JSON array."""
        data = json.loads(render_many([report, quiet_report], OutputFormat.JSON))
        assert [d["query"] for d in data] == ["pending_orders", "all_orders"]

    def test_json_schema(self):
        """The published schema describes the report."""
        schema = get_json_schema()
        assert {"query", "summary", "plan", "findings", "rule_runs"} <= set(schema["properties"])


class TestText:
    """Terminal text output."""

    def test_header_and_findings(self, report):
        """The text report names the query, the plan and each finding."""
        text = render_text(report)
        assert "PlanAdvisor Report: pending_orders" in text
        assert "Chosen plan (total cost 10,157.00):" in text
        assert "FINDINGS" in text
        assert "CREATE INDEX ix_orders_status ON orders (status);" in text

    def test_no_findings(self, quiet_report):
        """A clean report says so."""
        text = render_text(quiet_report)
        assert "No issues found" in text
        assert "Total Findings: 0" in text


class TestMarkdown:
    """Markdown output."""

    def test_sections(self, report):
        """Summary table, plan block and findings."""
        md = render_markdown(report)
        assert md.startswith("# PlanAdvisor Report: `pending_orders`")
        assert "🟡 **Warnings found**" in md
        assert "| Plan Cost | 10,157.00 |" in md
        assert "## Findings" in md
        assert "```sql" in md
        assert "<summary>Rule Execution Details</summary>" in md

    def test_clean_report(self, quiet_report):
        """No findings, no findings section."""
        md = render_markdown(quiet_report)
        assert "✅ **No issues found**" in md
        assert "## Findings" not in md


class TestDispatch:
    """render() by format."""

    def test_render_by_name(self, report):
        """Format names and enum members both work."""
        assert render(report, "json") == render_json(report)
        assert render(report, OutputFormat.MARKDOWN) == render_markdown(report)

    def test_unknown_format(self, report):
        """Unknown formats are rejected."""
        with pytest.raises(ValueError):
            render(report, "html")

    def test_render_many_text(self, report, quiet_report):
        """Text reports are separated by a blank line."""
        text = render_many([report, quiet_report])
        assert text.count("PlanAdvisor Report:") == 2
