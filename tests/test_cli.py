"""Tests for CLI commands."""

import json

import pytest

from edgedeploy import __version__
from edgedeploy.cli import cli
from edgedeploy.core.exceptions import StateNotFound
from edgedeploy.core.output import OutputFormat
from edgedeploy.state.models import DeploymentScope, DeploymentState, TargetState, TargetStatus
from edgedeploy.state.versioning import phases_for

A, B = "a.example.com", "b.example.com"


@pytest.fixture
def invoke(cli_runner, make_service, make_context):
    """Invoke the CLI against a service built from the given registry."""

    def _invoke(args, registry=None, output_format=OutputFormat.JSON, quiet=True):
        service = make_service(registry)
        return cli_runner.invoke(cli, args, obj=make_context(service, output_format=output_format, quiet=quiet))

    return _invoke


class TestCLIBasics:
    """Basic CLI tests."""

    def test_help(self, cli_runner):
        result = cli_runner.invoke(cli, ["--help"])
        assert result.exit_code == 0
        assert "crash-safe" in result.output
        for command in ("run", "status", "history", "cancel", "recover", "list", "config"):
            assert command in result.output

    def test_version(self, cli_runner):
        result = cli_runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_invalid_output_format(self, cli_runner):
        result = cli_runner.invoke(cli, ["-o", "xml", "list"])
        assert result.exit_code == 2
        assert "Invalid format" in result.output

    def test_run_help(self, cli_runner):
        result = cli_runner.invoke(cli, ["run", "--help"])
        assert result.exit_code == 0
        assert "--scope" in result.output
        assert "enterprise" in result.output


class TestRunCommand:
    """Tests for the run command."""

    def test_successful_run(self, invoke, calls):
        result = invoke(["run", "rel-1", "--scope", "portfolio", "-t", A, "-t", B])

        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["status"] == "success"
        assert data["scope"] == "portfolio"
        assert [t["target"] for t in data["targets"]] == [A, B]
        assert calls.count("coordinate_secrets") == 2

    def test_failed_run_exits_non_zero(self, invoke, make_registry, scripted):
        registry = make_registry(deploy_artifact=scripted("deploy_artifact", critical=True, always_fail={A}))

        result = invoke(["run", "rel-1", "-t", A], registry=registry)

        assert result.exit_code == 2
        assert "rolled_back" in result.output

    def test_deployment_config_passed_to_capabilities(self, invoke, make_registry, scripted, tmp_path):
        seen = {}

        def capture(target, context):
            seen.update(context.config)

        vars_file = tmp_path / "vars.yaml"
        vars_file.write_text("region: eu-west\nreplicas: 3\n")
        registry = make_registry(validate_config=scripted("validate_config", on_execute=capture))

        result = invoke(
            ["run", "rel-1", "-t", A, "--vars-file", str(vars_file), "--var", "region=us-east"],
            registry=registry,
        )

        assert result.exit_code == 0
        assert seen == {"region": "us-east", "replicas": 3}

    def test_malformed_var(self, invoke):
        result = invoke(["run", "rel-1", "-t", A, "--var", "novalue"])
        assert result.exit_code == 2
        assert "KEY=VALUE" in result.output

    def test_unknown_scope(self, invoke):
        result = invoke(["run", "rel-1", "--scope", "galaxy", "-t", A])
        assert result.exit_code == 2

    def test_table_output(self, invoke):
        result = invoke(["run", "rel-1", "-t", A], output_format=OutputFormat.TABLE, quiet=False)

        assert result.exit_code == 0
        assert A in result.output
        assert "completed" in result.output
        assert "Deployment rel-1 succeeded" in result.output


class TestStatusCommand:
    """Tests for the status command."""

    def test_status(self, invoke, make_service):
        make_service().execute("rel-1", "single", [A])

        result = invoke(["status", "rel-1"])

        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["status"] == "success"
        assert data["targets"][0]["status"] == "completed"

    def test_status_table(self, invoke, make_service):
        make_service().execute("rel-1", "single", [A])

        result = invoke(["status", "rel-1"], output_format=OutputFormat.TABLE)

        assert result.exit_code == 0
        assert "Deployment rel-1" in result.output
        assert "Targets" in result.output

    def test_unknown_deployment(self, invoke):
        result = invoke(["status", "nope"])
        assert result.exit_code == 1
        assert isinstance(result.exception, StateNotFound)


class TestCancelCommand:
    """Tests for the cancel command."""

    def test_cancel_not_started(self, invoke, store):
        result = invoke(["cancel", "rel-1"], quiet=False)
        assert result.exit_code == 0
        assert "Cancellation requested" in result.output
        assert store.is_cancel_requested("rel-1")

    def test_cancel_finished(self, invoke, make_service):
        make_service().execute("rel-1", "single", [A])
        result = invoke(["cancel", "rel-1"], quiet=False)
        assert result.exit_code == 0
        assert "already finished" in result.output


class TestRecoverCommands:
    """Tests for recover and history."""

    @pytest.fixture
    def interrupted(self, store):
        store.save(DeploymentState(
            deployment_id="rel-1",
            scope=DeploymentScope.SINGLE,
            targets=[A],
            phase="orchestrate",
            phases=phases_for(),
            target_states={
                A: TargetState(target=A, status=TargetStatus.RUNNING, completed_phases=["assess", "construct"]),
            },
            completed_phases=["assess", "construct"],
            run_id="dead-run",
        ))

    def test_recover_and_resume(self, invoke, interrupted, calls):
        result = invoke(["recover", "rel-1"])

        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["status"] == "success"
        assert data["recoveries"] == 1
        assert calls.executed() == ["distribute_secrets", "deploy_artifact", "health_check"]

    def test_recover_without_resume(self, invoke, interrupted, calls):
        result = invoke(["recover", "rel-1", "--no-resume"], output_format=OutputFormat.TABLE, quiet=False)

        assert result.exit_code == 0
        assert "interrupted" in result.output
        assert "rel-1-r0001" in result.output
        assert calls.calls == []

    def test_history(self, invoke, interrupted):
        invoke(["recover", "rel-1", "--no-resume"])

        result = invoke(["history", "rel-1"])

        assert result.exit_code == 0
        records = json.loads(result.output)
        assert [r["recovery_id"] for r in records] == ["rel-1-r0001"]
        assert records[0]["from_phase"] == "orchestrate"

    def test_empty_history(self, invoke, make_service):
        make_service().execute("rel-1", "single", [A])
        result = invoke(["history", "rel-1"], quiet=False)
        assert result.exit_code == 0
        assert "No recoveries recorded" in result.output


class TestListCommand:
    """Tests for the list command."""

    def test_list(self, invoke, make_service):
        service = make_service()
        service.execute("rel-1", "single", [A])
        service.execute("rel-2", "portfolio", [A, B])

        result = invoke(["list"])

        assert result.exit_code == 0
        listing = {d["deployment_id"]: d for d in json.loads(result.output)}
        assert listing["rel-2"]["targets"] == 2

    def test_list_empty(self, invoke):
        result = invoke(["list"], quiet=False)
        assert result.exit_code == 0
        assert "No deployments found" in result.output

    def test_list_with_archive(self, invoke, make_service):
        make_service().execute("rel-1", "single", [A])
        result = invoke(["list", "--archive=-1"], quiet=False)
        assert result.exit_code == 0
        assert "Archived 1 deployment(s)" in result.output
        assert "No deployments found" in result.output


class TestConfigCommand:
    """Tests for the config command."""

    def test_config_json(self, invoke):
        result = invoke(["config"])
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["retry"]["max_attempts"] == 3
        assert data["state"]["backend"] == "memory"
        assert "global" in data

    def test_config_table(self, invoke):
        result = invoke(["config"], output_format=OutputFormat.TABLE)
        assert result.exit_code == 0
        assert "Current Configuration" in result.output
        assert "memory" in result.output
