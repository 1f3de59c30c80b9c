"""Tests for the remedy command-line interface."""

import pytest
import yaml
from click.testing import CliRunner

from remedy.plans.models import PlanStatus
from remedy.ui.cli import cli


@pytest.fixture
def invoke(manager, tmp_path):
    """Invoke the CLI against the in-memory plan manager."""
    runner = CliRunner()

    def _invoke(*args):
        return runner.invoke(
            cli,
            list(args),
            obj={"manager": manager, "settings_dir": str(tmp_path / "settings")},
        )

    return _invoke


@pytest.fixture
def request_file(tmp_path):
    path = tmp_path / "request.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "target_asset": "customers",
                "target_column": "email",
                "kind": "format_standardization",
                "description": "Lowercase customer emails",
                "requested_by": "alice",
                "risk_level": "low",
                "parameters": {"target_format": "lowercase"},
            }
        )
    )
    return path


def test_create_from_request_file(invoke, manager, request_file):
    result = invoke("create", str(request_file))

    assert result.exit_code == 0, result.output
    assert "Created plan" in result.output
    [plan] = manager.ledger.list_plans().plans
    assert plan.status == PlanStatus.DRAFT
    assert plan.requested_by == "alice"


def test_create_overrides_requester(invoke, manager, request_file):
    result = invoke("create", str(request_file), "--requested-by", "erin")

    assert result.exit_code == 0, result.output
    [plan] = manager.ledger.list_plans().plans
    assert plan.requested_by == "erin"


def test_create_rejects_bad_request(invoke, tmp_path):
    path = tmp_path / "broken.yaml"
    path.write_text("- just\n- a list\n")

    result = invoke("create", str(path))

    assert result.exit_code == 1
    assert "must contain a mapping" in result.output


def test_run_and_execute(invoke, manager, make_plan):
    plan = make_plan()

    result = invoke("run", plan.plan_id)
    assert result.exit_code == 0, result.output
    assert manager.ledger.get_plan(plan.plan_id).status == PlanStatus.APPROVED

    result = invoke("execute", plan.plan_id, "--by", "bob")
    assert result.exit_code == 0, result.output
    assert "100 row(s) succeeded" in result.output
    assert manager.ledger.get_plan(plan.plan_id).status == PlanStatus.COMPLETED


def test_reject_requires_reason(invoke):
    result = invoke("reject", "some-approval", "--reviewer", "bob")

    assert result.exit_code == 2
    assert "--reason" in result.output


def test_list_shows_counts(invoke, make_plan):
    make_plan()
    make_plan(target_asset="orders", target_column="status")

    result = invoke("list")

    assert result.exit_code == 0, result.output
    assert "2 plan(s): draft=2" in result.output


def test_show_as_json(invoke, make_plan):
    plan = make_plan()

    result = invoke("show", plan.plan_id, "--json")

    assert result.exit_code == 0, result.output
    assert plan.plan_id in result.output
    assert '"status": "draft"' in result.output


def test_unknown_approval_exits_with_error(invoke):
    result = invoke("approval", "missing")

    assert result.exit_code == 1
    assert "Not found" in result.output


def test_config_sets_and_masks_api_key(invoke):
    result = invoke("config", "apiKey", "sk-test-secret-key")
    assert result.exit_code == 0, result.output

    result = invoke("config")
    assert result.exit_code == 0, result.output
    assert "sk-test-secret-key" not in result.output
    assert "********" in result.output


def test_config_rejects_non_integer(invoke):
    result = invoke("config", "maxIterations", "many")

    assert result.exit_code == 2
    assert "maxIterations must be an integer" in result.output
