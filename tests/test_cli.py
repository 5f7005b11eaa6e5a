"""
Tests for the command line, run against a SQLite file.

Commands print JSON on stdout; exit code 1 means per-item failures or
an unhealthy ledger, 2 means bad input.
"""

import json
from decimal import Decimal
from uuid import uuid4

import pytest
from typer.testing import CliRunner

from conftest import make_template
from expense_engine.cli import app
from expense_engine.db import create_db_engine, init_db
from expense_engine.services.storage import SqlExpenseStorage


runner = CliRunner()


@pytest.fixture
def database_url(tmp_path, run):
    url = f"sqlite:///{tmp_path / 'ledger.db'}"
    engine = create_db_engine(url, echo=False)
    init_db(engine)
    storage = SqlExpenseStorage(engine)
    run(storage.save_template(make_template(vendor="Netflix", amount=Decimal("15.99"), due_day=5)))
    run(storage.save_template(make_template(vendor="Rent", amount=Decimal("3000.00"), due_day=20)))
    engine.dispose()
    return url


@pytest.fixture
def roster_file(tmp_path):
    path = tmp_path / "roster.json"
    path.write_text(json.dumps([
        {"id": "u1", "name": "Alex"},
        {"id": "u2", "name": "Blake"},
        {"id": "u3", "name": "Casey"},
    ]))
    return path


@pytest.fixture
def cli(database_url, roster_file):
    def invoke(*args):
        return runner.invoke(app, [
            "--database-url", database_url,
            "--roster", str(roster_file),
            "--today", "2024-03-15",
            *args,
        ])
    return invoke


def output(result):
    return json.loads(result.stdout)


class TestGenerate:
    """generate is safe to run from cron repeatedly."""

    def test_generate_then_rerun(self, cli):
        first = cli("generate", "--months-back", "0", "--months-forward", "1")
        second = cli("generate", "--months-back", "0", "--months-forward", "1")

        assert first.exit_code == 0, first.output
        assert output(first)["created"] == 4
        assert output(first)["periods"] == ["2024-03", "2024-04"]
        assert second.exit_code == 0
        assert output(second)["created"] == 0
        assert output(second)["skipped_existing"] == 4

    def test_unknown_template_is_bad_input(self, cli):
        result = cli("generate", "--template-id", str(uuid4()))
        assert result.exit_code == 2


class TestReports:
    """Read commands after a generation run."""

    @pytest.fixture(autouse=True)
    def generated(self, cli):
        result = cli("generate", "--months-back", "0", "--months-forward", "0")
        assert result.exit_code == 0, result.output

    def test_overdue_bills(self, cli):
        result = cli("bills", "--period", "2024-03", "--status", "OVERDUE")

        assert result.exit_code == 0, result.output
        bills = output(result)
        assert [b["instance"]["vendor"] for b in bills] == ["Netflix"]
        assert bills[0]["effective_status"] == "OVERDUE"

    def test_upcoming_bills(self, cli):
        result = cli("bills", "--upcoming")
        assert [b["instance"]["vendor"] for b in output(result)] == ["Rent"]

    def test_invalid_period_is_bad_input(self, cli):
        assert cli("bills", "--period", "March").exit_code == 2

    def test_balances(self, cli):
        result = cli("balances")

        assert result.exit_code == 0, result.output
        balances = output(result)
        assert [b["founder"]["id"] for b in balances] == ["u1", "u2", "u3"]
        assert balances[0]["owes_for"] == ["Netflix", "Rent"]

    def test_check_healthy(self, cli):
        result = cli("check")
        assert result.exit_code == 0, result.output
        assert output(result)["issues"] == []


class TestConsolidate:
    """preview has no side effects; consolidate reports what it did."""

    def test_preview_and_consolidate(self, cli, database_url, run):
        engine = create_db_engine(database_url, echo=False)
        storage = SqlExpenseStorage(engine)
        run(storage.save_template(make_template(vendor="Netflix Inc", amount=Decimal("15.99"))))
        engine.dispose()

        preview = cli("preview", "--scope", "bills")
        result = cli("consolidate", "--scope", "bills")
        rerun = cli("consolidate", "--scope", "bills")

        assert preview.exit_code == 0, preview.output
        assert len(output(preview)["template_groups"]) == 1
        assert result.exit_code == 0, result.output
        assert output(result)["groups_merged"] == 1
        assert output(rerun)["groups_merged"] == 0

    def test_fix_orphans_with_nothing_to_do(self, cli):
        result = cli("fix-orphans")
        assert result.exit_code == 0, result.output
        assert output(result) == {"linked": 0, "ambiguous": [], "failures": []}


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
