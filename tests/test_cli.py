import re

import pytest
from typer.testing import CliRunner

from universal_escrow.cli import app as cli_app
from universal_escrow.cli.app import app

runner = CliRunner()

ID_RE = re.compile(r"\b(?:FR|CUSTOM)-[0-9A-Z]+\b")


@pytest.fixture(autouse=True)
def wide_terminal(monkeypatch):
    # Rich wraps table cells at the 80-column default.
    monkeypatch.setattr(cli_app.console, "width", 200)


@pytest.fixture
def desk(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    result = runner.invoke(app, ["init", "--name", "Test Desk"])
    assert result.exit_code == 0, result.output
    return tmp_path


def _create_milestone(extra=()):
    result = runner.invoke(
        app,
        [
            "create", "project_milestone", "1000",
            "--party", "client:Carol:0xC4401",
            "--party", "freelancer:Dave:0xDA7E",
            *extra,
        ],
    )
    assert result.exit_code == 0, result.output
    return ID_RE.search(result.output).group(0)


def test_init_writes_profile(desk):
    assert (desk / ".universal-escrow" / "default" / "config.yaml").exists()
    assert (desk / ".universal-escrow" / "default" / "escrow.db").exists()


def test_init_twice_fails(desk):
    result = runner.invoke(app, ["init"])
    assert result.exit_code == 1


def test_commands_need_init(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    result = runner.invoke(app, ["list"])
    assert result.exit_code == 1
    assert "init" in result.output


def test_templates_lists_catalog(desk):
    result = runner.invoke(app, ["templates"])
    assert result.exit_code == 0
    assert "project_milestone" in result.output


def test_create_fund_and_show(desk):
    escrow_id = _create_milestone()

    result = runner.invoke(app, ["fund", escrow_id, "--ref", "0xfund"])
    assert result.exit_code == 0, result.output
    assert "funded" in result.output

    result = runner.invoke(app, ["show", escrow_id])
    assert result.exit_code == 0
    assert escrow_id in result.output
    assert "https://basescan.org/tx/0xfund" in result.output

    result = runner.invoke(app, ["list", "--status", "funded"])
    assert result.exit_code == 0
    assert escrow_id in result.output


def test_engine_errors_exit_nonzero(desk):
    escrow_id = _create_milestone()

    result = runner.invoke(app, ["release", escrow_id, "--to", "0xDA7E", "--ref", "0xtx"])
    assert result.exit_code == 1
    assert "Cannot release" in result.output

    result = runner.invoke(app, ["show", "FR-MISSING"])
    assert result.exit_code == 1
    assert "not found" in result.output


def test_create_custom_milestones(desk):
    result = runner.invoke(
        app,
        [
            "create-custom", "500",
            "--party", "depositor:Dee:0xDEE",
            "--party", "recipient:Rae:0x4AE",
            "--milestone", "Draft:40%",
            "--milestone", "Final:300",
            "--policy", "any_party",
        ],
    )
    assert result.exit_code == 0, result.output
    escrow_id = ID_RE.search(result.output).group(0)
    assert escrow_id.startswith("CUSTOM-")


def test_create_custom_rejects_bad_policy(desk):
    result = runner.invoke(
        app,
        ["create-custom", "500", "--party", "depositor:Dee", "--policy", "whenever"],
    )
    assert result.exit_code == 1


def test_create_custom_rejects_mismatched_milestones(desk):
    result = runner.invoke(
        app,
        [
            "create-custom", "500",
            "--party", "depositor:Dee:0xDEE",
            "--milestone", "Draft:40%",
            "--milestone", "Final:40%",
        ],
    )
    assert result.exit_code == 1
    assert "match total" in result.output


def test_bad_party_spec(desk):
    result = runner.invoke(app, ["create", "project_milestone", "10", "--party", "client"])
    assert result.exit_code == 1


def test_dispute_and_resolve(desk):
    result = runner.invoke(
        app,
        ["create-custom", "90", "--party", "buyer:Alice:0xA11CE", "--party", "seller:Bob:0xB0B",
         "--condition", "delivery:Parcel delivered"],
    )
    escrow_id = ID_RE.search(result.output).group(0)
    assert runner.invoke(app, ["fund", escrow_id, "--ref", "0xfund"]).exit_code == 0

    result = runner.invoke(app, ["dispute", escrow_id, "--by", "buyer", "--reason", "Never arrived"])
    assert result.exit_code == 0, result.output

    result = runner.invoke(
        app,
        ["resolve", escrow_id, "--outcome", "refund", "--resolution", "No tracking", "--ref", "0xback"],
    )
    assert result.exit_code == 0, result.output
    assert "refunded" in result.output


def test_separate_profiles(desk):
    result = runner.invoke(app, ["--profile", "second", "list"])
    assert result.exit_code == 1

    assert runner.invoke(app, ["--profile", "second", "init"]).exit_code == 0
    result = runner.invoke(app, ["--profile", "second", "list"])
    assert result.exit_code == 0
    assert "No escrows" in result.output
