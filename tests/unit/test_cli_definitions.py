import asyncio

import pytest
from typer.testing import CliRunner

import procflow.persistence as persistence
from procflow.cli import app
from procflow.persistence import InMemoryProcessRepository

INVOICE_YAML = """
name: Invoice Approval Process
version: "1.2"
category: Finance
definition:
  nodes:
    - {id: start_1, type: start, name: Start, connections: [finance_review]}
    - {id: finance_review, type: task, name: Finance Review, connections: [end_1]}
    - {id: end_1, type: end, name: End}
"""

BROKEN_YAML = """
name: Broken Process
nodes:
  - {id: review, type: task, name: Review, connections: [ghost]}
"""


@pytest.fixture(autouse=True)
def _isolated_config(tmp_path, monkeypatch):
    monkeypatch.setenv("PROCFLOW_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.delenv("PROCFLOW_TOKEN", raising=False)
    monkeypatch.delenv("PROCFLOW_ACTOR", raising=False)


def _setup_repo() -> InMemoryProcessRepository:
    repo = InMemoryProcessRepository()
    persistence._repository_instance = repo
    return repo


def test_import_list_and_show(tmp_path):
    repo = _setup_repo()
    path = tmp_path / "invoice.yaml"
    path.write_text(INVOICE_YAML)

    runner = CliRunner()
    result = runner.invoke(app, ["--actor", "alice", "definition", "import", str(path)])
    assert result.exit_code == 0, f"Command failed. Output: {result.output}"

    (definition,) = asyncio.run(repo.list_definitions())
    assert definition.created_by == "alice"
    assert definition.id in result.output

    result = runner.invoke(app, ["definition", "list", "--category", "finance"])
    assert result.exit_code == 0, f"Command failed. Output: {result.output}"
    assert "Invoice Approval Process" in result.output
    assert "active" in result.output

    result = runner.invoke(app, ["definition", "show", definition.id])
    assert result.exit_code == 0, f"Command failed. Output: {result.output}"
    assert "finance_review [task] Finance Review -> end_1" in result.output
    assert "end_1 [end] End -> (end)" in result.output


def test_list_without_definitions():
    _setup_repo()
    result = CliRunner().invoke(app, ["definition", "list"])
    assert result.exit_code == 0
    assert "No process definitions found" in result.output


def test_validate_reports_problems(tmp_path):
    _setup_repo()
    good = tmp_path / "good.yaml"
    good.write_text(INVOICE_YAML)
    bad = tmp_path / "bad.yaml"
    bad.write_text(BROKEN_YAML)

    runner = CliRunner()
    result = runner.invoke(app, ["definition", "validate", str(good)])
    assert result.exit_code == 0
    assert "Invoice Approval Process 1.2: OK" in result.output

    result = runner.invoke(app, ["definition", "validate", str(bad)])
    assert result.exit_code == 1
    assert "no start node" in result.output
    assert "'ghost'" in result.output


def test_import_rejects_invalid_definition(tmp_path):
    repo = _setup_repo()
    bad = tmp_path / "bad.yaml"
    bad.write_text(BROKEN_YAML)

    result = CliRunner().invoke(app, ["definition", "import", str(bad)])
    assert result.exit_code == 1
    assert asyncio.run(repo.list_definitions()) == []

    result = CliRunner().invoke(app, ["definition", "import", str(tmp_path / "nope.yaml")])
    assert result.exit_code == 1
    assert "does not exist" in result.output


def test_activate_deactivate_and_delete(tmp_path):
    repo = _setup_repo()
    path = tmp_path / "invoice.yaml"
    path.write_text(INVOICE_YAML)
    runner = CliRunner()
    runner.invoke(app, ["definition", "import", str(path)])
    (definition,) = asyncio.run(repo.list_definitions())

    result = runner.invoke(app, ["definition", "deactivate", definition.id])
    assert result.exit_code == 0, f"Command failed. Output: {result.output}"
    assert asyncio.run(repo.load_definition(definition.id)).is_active is False

    result = runner.invoke(app, ["instance", "start", definition.id])
    assert result.exit_code == 1
    assert "cannot be started" in result.output

    result = runner.invoke(app, ["definition", "activate", definition.id])
    assert result.exit_code == 0
    result = runner.invoke(app, ["instance", "start", definition.id])
    assert result.exit_code == 0, f"Command failed. Output: {result.output}"

    result = runner.invoke(app, ["definition", "delete", definition.id])
    assert result.exit_code == 1
    assert "active instance" in result.output

    result = runner.invoke(app, ["definition", "show", "missing-id"])
    assert result.exit_code == 1
    assert "not found" in result.output
