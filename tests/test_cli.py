"""Tests for CLI commands."""

import functools
import json
import logging

import pytest
from typer.testing import CliRunner

from groundwork import __version__
from groundwork.cli import app
from groundwork.core.engine import Engine
from groundwork.core.state import StateStore
from groundwork.errors import ProviderError


@pytest.fixture
def cli_runner():
    """Return a CLI test runner."""
    return CliRunner()


@pytest.fixture(autouse=True)
def cli_environment(tmp_path, monkeypatch, registry):
    """Point settings at a temp dir and make the CLI use the fake provider."""
    config_dir = tmp_path / "cli-config"
    config_dir.mkdir()
    (config_dir / "settings.json").write_text(json.dumps({
        "retry": {"default": {"delay": 0, "max_delay": 0}},
    }))
    monkeypatch.setenv("GROUNDWORK_CONFIG_DIR", str(config_dir))
    monkeypatch.setattr("groundwork.cli.Engine", functools.partial(Engine, registry=registry, environ={}))

    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


def _run(cli_runner, project, *args, **kwargs):
    return cli_runner.invoke(app, ["-C", str(project), *args], **kwargs)


# ---------------------------------------------------------------------------
# plan
# ---------------------------------------------------------------------------

class TestPlanCommand:

    def test_plan_with_changes_exits_2(self, cli_runner, key_instance_project, cloud):
        result = _run(cli_runner, key_instance_project, "plan")

        assert result.exit_code == 2
        assert "+ fake_key.k1 (create)" in result.output
        assert "Plan: 2 to add, 0 to change, 0 to replace, 0 to destroy." in result.output
        assert cloud.calls_for("create") == []

    def test_plan_without_changes_exits_0(self, cli_runner, key_instance_project):
        _run(cli_runner, key_instance_project, "apply", "--auto-approve")

        result = _run(cli_runner, key_instance_project, "plan")

        assert result.exit_code == 0
        assert "No changes." in result.output

    def test_plan_with_var_flag(self, cli_runner, key_instance_project):
        _run(cli_runner, key_instance_project, "apply", "--auto-approve")

        result = _run(cli_runner, key_instance_project, "plan", "--var", "instance_type=t3.large")

        assert result.exit_code == 2
        assert "~ fake_instance.i1 (update)" in result.output
        assert '"t3.micro" -> "t3.large"' in result.output

    def test_plan_invalid_configuration_exits_1(self, cli_runner, project):
        (project / "main.tf").write_text('''
resource "fake_group" "a" {
  name = "a"
  peer = fake_group.b.arn
}

resource "fake_group" "b" {
  name = "b"
  peer = fake_group.a.arn
}
''')
        result = _run(cli_runner, project, "plan")

        assert result.exit_code == 1
        assert "Dependency cycle" in result.output

    def test_plan_without_tf_files(self, cli_runner, project):
        result = _run(cli_runner, project, "plan")

        assert result.exit_code == 1
        assert "No .tf files" in result.output

    def test_plan_locked_state(self, cli_runner, key_instance_project):
        info = StateStore(str(key_instance_project / "groundwork.tfstate")).lock("apply")

        result = _run(cli_runner, key_instance_project, "plan")

        assert result.exit_code == 1
        assert "State is locked" in result.output
        assert f"groundwork force-unlock {info['id']}" in result.output

    def test_saved_plan_round_trip(self, cli_runner, key_instance_project, tmp_path, cloud):
        plan_file = tmp_path / "out.plan"

        planned = _run(cli_runner, key_instance_project, "plan", "--out", str(plan_file))
        applied = _run(cli_runner, key_instance_project, "apply", str(plan_file))

        assert planned.exit_code == 2
        assert applied.exit_code == 0
        assert cloud.names() == ["deploy-key", "web"]

    def test_stale_saved_plan(self, cli_runner, key_instance_project, tmp_path):
        plan_file = tmp_path / "out.plan"
        _run(cli_runner, key_instance_project, "plan", "--out", str(plan_file))
        _run(cli_runner, key_instance_project, "apply", "--auto-approve")

        result = _run(cli_runner, key_instance_project, "apply", str(plan_file))

        assert result.exit_code == 1
        assert "stale" in result.output
        assert "different state" not in result.output


# ---------------------------------------------------------------------------
# apply / destroy
# ---------------------------------------------------------------------------

class TestApplyCommand:

    def test_apply_requires_yes(self, cli_runner, key_instance_project, cloud):
        result = _run(cli_runner, key_instance_project, "apply", input="y\n")

        assert result.exit_code == 1
        assert "Apply cancelled." in result.output
        assert cloud.calls == []

    def test_apply_confirmed(self, cli_runner, key_instance_project, cloud):
        result = _run(cli_runner, key_instance_project, "apply", input="yes\n")

        assert result.exit_code == 0
        assert "Apply complete!" in result.output
        assert "2 added" in result.output
        assert cloud.names() == ["deploy-key", "web"]

    def test_apply_failure_exits_1(self, cli_runner, key_instance_project, cloud):
        cloud.fail_on("create", "deploy-key", ProviderError("InvalidKeyPair.Duplicate"))

        result = _run(cli_runner, key_instance_project, "apply", "--auto-approve")

        assert result.exit_code == 1
        assert "fake_key.k1: InvalidKeyPair.Duplicate" in result.output
        assert "Dependency fake_key.k1 failed" in result.output
        assert "Apply incomplete." in result.output

    def test_destroy(self, cli_runner, key_instance_project, cloud):
        _run(cli_runner, key_instance_project, "apply", "--auto-approve")

        result = _run(cli_runner, key_instance_project, "destroy", "--auto-approve")

        assert result.exit_code == 0
        assert "2 destroyed" in result.output
        assert cloud.objects == {}

    def test_destroy_declined(self, cli_runner, key_instance_project, cloud):
        _run(cli_runner, key_instance_project, "apply", "--auto-approve")

        result = _run(cli_runner, key_instance_project, "destroy", input="no\n")

        assert result.exit_code == 1
        assert cloud.names() == ["deploy-key", "web"]


# ---------------------------------------------------------------------------
# state / output / validate / force-unlock
# ---------------------------------------------------------------------------

class TestInspectionCommands:

    @pytest.fixture
    def applied(self, cli_runner, key_instance_project):
        result = _run(cli_runner, key_instance_project, "apply", "--auto-approve")
        assert result.exit_code == 0
        return key_instance_project

    def test_state_list(self, cli_runner, applied):
        result = _run(cli_runner, applied, "state", "list")

        assert result.exit_code == 0
        assert "fake_instance.i1" in result.output
        assert "fake_key.k1" in result.output

    def test_state_show(self, cli_runner, applied):
        result = _run(cli_runner, applied, "state", "show", "fake_key.k1")

        assert result.exit_code == 0
        assert 'name = "deploy-key"' in result.output

    def test_state_show_hides_sensitive_attributes(self, cli_runner, applied):
        result = _run(cli_runner, applied, "state", "show", "fake_key.k1")

        assert result.exit_code == 0
        assert "private_key = (sensitive)" in result.output
        assert "private_key-key-" not in result.output
        assert 'fingerprint = "fingerprint-key-' in result.output

    def test_state_show_missing(self, cli_runner, applied):
        result = _run(cli_runner, applied, "state", "show", "fake_key.nope")

        assert result.exit_code == 1
        assert "No resource fake_key.nope in state" in result.output

    def test_state_rm(self, cli_runner, applied, cloud):
        result = _run(cli_runner, applied, "state", "rm", "fake_instance.i1")

        assert result.exit_code == 0
        assert "fake_instance.i1" not in StateStore(str(applied / "groundwork.tfstate")).load()
        assert cloud.by_name("web") is not None

    def test_output_all(self, cli_runner, applied):
        result = _run(cli_runner, applied, "output")

        assert result.exit_code == 0
        assert 'instance_ip = "public_ip-' in result.output

    def test_output_single_value(self, cli_runner, applied):
        result = _run(cli_runner, applied, "output", "instance_ip")

        assert result.exit_code == 0
        assert any(line.startswith("public_ip-") for line in result.output.splitlines())

    def test_output_missing(self, cli_runner, applied):
        result = _run(cli_runner, applied, "output", "nope")

        assert result.exit_code == 1

    def test_validate(self, cli_runner, key_instance_project):
        result = _run(cli_runner, key_instance_project, "validate")

        assert result.exit_code == 0
        assert "Success!" in result.output
        assert "2 resources" in result.output

    def test_force_unlock(self, cli_runner, key_instance_project):
        store = StateStore(str(key_instance_project / "groundwork.tfstate"))
        info = store.lock("apply")

        result = _run(cli_runner, key_instance_project, "force-unlock", info["id"], "--force")

        assert result.exit_code == 0
        assert store.lock_info() is None

    def test_force_unlock_wrong_id(self, cli_runner, key_instance_project):
        StateStore(str(key_instance_project / "groundwork.tfstate")).lock("apply")

        result = _run(cli_runner, key_instance_project, "force-unlock", "wrong", "--force")

        assert result.exit_code == 1
        assert "mismatch" in result.output


def test_version(cli_runner):
    result = cli_runner.invoke(app, ["--version"])

    assert result.exit_code == 0
    assert __version__ in result.output
