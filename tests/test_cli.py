"""Tests for the planadvisor command line."""

import json
import os

import pytest
from typer.testing import CliRunner

from planadvisor import __version__
from planadvisor.cli.main import app
from planadvisor.config import reset_config

from conftest import FIXTURES_DIR

SHOP = str(FIXTURES_DIR / "shop.yaml")

runner = CliRunner()


@pytest.fixture(autouse=True)
def default_config(monkeypatch):
    for key in list(os.environ):
        if key.startswith("PLANADVISOR_"):
            monkeypatch.delenv(key)
    reset_config()
    yield
    reset_config()


class TestVersionAndRules:
    def test_version(self):
        """--version prints the package version."""
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert f"PlanAdvisor version {__version__}" in result.stdout

    def test_rules(self):
        """rules lists the built-in rules."""
        result = runner.invoke(app, ["rules"])
        assert result.exit_code == 0
        assert "MISSING_INDEX" in result.stdout
        assert "SUBQUERY_REWRITE" in result.stdout


class TestAnalyze:
    """The analyze command."""

    def test_single_query_json(self):
        """-q with -f json prints one report object."""
        result = runner.invoke(app, ["analyze", SHOP, "-q", "pending_orders", "-f", "json"])
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["query"] == "pending_orders"
        assert data["plan"]["total_cost"] == 10157.0
        assert "MISSING_INDEX" in {f["kind"] for f in data["findings"]}

    def test_all_queries_json(self):
        """Without -q every query is reported, as a JSON array."""
        result = runner.invoke(app, ["analyze", SHOP, "-f", "json"])
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert [d["query"] for d in data] == [
            "pending_orders",
            "customer_orders",
            "email_lookup",
            "recent_page",
        ]

    def test_text_output(self):
        """Text output shows the plan and the findings."""
        result = runner.invoke(app, ["analyze", SHOP, "-q", "recent_page"])
        assert result.exit_code == 0
        assert "recent_page" in result.stdout
        assert "OFFSET 5,000" in result.stdout

    def test_markdown_with_explain(self):
        """Explain mode lists candidate plans."""
        result = runner.invoke(
            app, ["analyze", SHOP, "-q", "customer_orders", "-f", "markdown", "--explain"]
        )
        assert result.exit_code == 0
        assert result.stdout.startswith("# PlanAdvisor Report: `customer_orders`")

    def test_unknown_query(self):
        """An unknown query name is an input error."""
        result = runner.invoke(app, ["analyze", SHOP, "-q", "nope"])
        assert result.exit_code == 2

    def test_unknown_table_in_workload(self, tmp_path):
        """A query over a table without statistics exits with 2."""
        path = tmp_path / "bad.yaml"
        path.write_text(
            "tables:\n"
            "  - name: orders\n"
            "    row_count: 10\n"
            "    columns: [{name: id}]\n"
            "queries:\n"
            "  - name: ok\n"
            "    relations: [orders]\n"
            "  - name: broken\n"
            "    relations: [invoices]\n"
        )
        result = runner.invoke(app, ["analyze", str(path), "-f", "json"])
        assert result.exit_code == 2

    def test_config_file(self, tmp_path):
        """--config applies rule settings."""
        config = tmp_path / "advisor.yaml"
        config.write_text("rules:\n  MISSING_INDEX:\n    enabled: false\n")
        result = runner.invoke(
            app, ["analyze", SHOP, "-q", "pending_orders", "-f", "json", "-c", str(config)]
        )
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert "MISSING_INDEX" not in {f["kind"] for f in data["findings"]}
        skipped = [r for r in data["rule_runs"] if r["status"] == "skip"]
        assert [r["rule_id"] for r in skipped] == ["MISSING_INDEX"]

    def test_missing_config_file(self, tmp_path):
        """A missing config file is an input error."""
        result = runner.invoke(app, ["analyze", SHOP, "-c", str(tmp_path / "nope.yaml")])
        assert result.exit_code == 2


class TestClassify:
    def test_classify(self):
        """classify prints one row per relation and index."""
        result = runner.invoke(app, ["classify", SHOP, "-q", "pending_orders"])
        assert result.exit_code == 0
        assert "pending_orders" in result.stdout

    def test_classify_unknown_query(self):
        """Unknown query names exit with 2."""
        result = runner.invoke(app, ["classify", SHOP, "-q", "nope"])
        assert result.exit_code == 2
