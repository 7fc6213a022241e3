"""
CLI tests.
"""

import json

import pytest
import yaml
from typer.testing import CliRunner

from conftest import FakeGarmClient, make_runner
from garm_runner_controller import cli
from garm_runner_controller.controllers.pool_controller import GarmRunnerController
from garm_runner_controller.utils.garm_client import GarmUpstreamError
from garm_runner_controller.utils.session import GarmSession

runner = CliRunner()


def write_config(path, **overrides):
    data = cli.sample_configuration()
    data["pools"] = [
        {"name": "small", "id": "pool-1", "min_idle_runners": 2},
        {"name": "large", "id": "pool-2", "min_idle_runners": 0},
    ]
    data["operator"]["enable_metrics"] = False
    for section, values in overrides.items():
        data[section].update(values)
    path.write_text(yaml.safe_dump(data))
    return str(path)


class TestConfigurationCommands:
    """Test configuration generation and validation."""

    def test_generate_then_validate(self, tmp_path):
        config_path = str(tmp_path / "config.yaml")

        result = runner.invoke(cli.app, ["generate-config", "--output", config_path])
        assert result.exit_code == 0
        assert "Sample configuration generated" in result.output

        result = runner.invoke(cli.app, ["validate", "--config", config_path])
        assert result.exit_code == 0
        assert "Configuration validation successful" in result.output
        assert "ubuntu-small" in result.output

    def test_generate_json(self, tmp_path):
        config_path = tmp_path / "config.json"

        result = runner.invoke(cli.app, ["generate-config", "-o", str(config_path), "-f", "json"])

        assert result.exit_code == 0
        assert json.loads(config_path.read_text())["garm"]["server"] == "https://garm.example.com"

    def test_missing_file(self, tmp_path):
        result = runner.invoke(cli.app, ["validate", "--config", str(tmp_path / "missing.yaml")])

        assert result.exit_code == 1
        assert "Configuration file not found" in result.output

    def test_invalid_configuration(self, tmp_path):
        config_path = write_config(tmp_path / "config.yaml", operator={"sync_runners_interval": 1})

        result = runner.invoke(cli.app, ["validate", "--config", config_path])

        assert result.exit_code == 1
        assert "operator.sync_runners_interval" in result.output

    def test_password_from_environment(self, tmp_path, monkeypatch):
        config_path = write_config(tmp_path / "config.yaml", garm={"password": ""})
        monkeypatch.setenv("GARM_PASSWORD", "from-env")

        config = cli.load_configuration(config_path)

        assert config.garm.password.get_secret_value() == "from-env"

    def test_run_dry_run(self, tmp_path):
        config_path = write_config(tmp_path / "config.yaml")

        result = runner.invoke(cli.app, ["run", "--config", config_path, "--dry-run"])

        assert result.exit_code == 0
        assert "Pools configured: 2" in result.output


class TestPoolCommands:
    """Test one-shot pool commands against an in-memory GARM."""

    @pytest.fixture(autouse=True)
    def setup_garm(self, tmp_path, monkeypatch):
        """Set up a fake GARM behind the CLI."""
        self.client = FakeGarmClient()
        self.client.pools["pool-1"] = [make_runner(f"idle-{i}", idle_minutes=60) for i in range(4)]
        self.config_path = write_config(tmp_path / "config.yaml")

        def controller_factory(config):
            session = GarmSession(self.client, username="admin", password="s3cret", email="admin@example.com")
            return GarmRunnerController(config, session=session)

        monkeypatch.setattr(cli, "GarmRunnerController", controller_factory)

    def test_align_lists_selection_by_default(self):
        result = runner.invoke(cli.app, ["align", "small", "--config", self.config_path])

        assert result.exit_code == 0
        assert "Would remove 2 runner(s)" in result.output
        assert "idle-0" in result.output
        assert self.client.deleted == []
        assert self.client.closed

    def test_align_apply(self):
        result = runner.invoke(cli.app, ["align", "pool-1", "--apply", "--config", self.config_path])

        assert result.exit_code == 0
        assert "Deleted: 2" in result.output
        assert self.client.deleted == ["idle-0", "idle-1"]

    def test_align_apply_with_failures(self):
        self.client.delete_errors["idle-1"] = GarmUpstreamError("boom", status_code=500)

        result = runner.invoke(cli.app, ["align", "small", "--apply", "--config", self.config_path])

        assert result.exit_code == 2
        assert "Failed: idle-1" in result.output

    def test_align_unknown_pool(self):
        result = runner.invoke(cli.app, ["align", "missing", "--config", self.config_path])

        assert result.exit_code == 1
        assert "Pool not found" in result.output

    def test_align_upstream_failure(self):
        self.client.list_errors["pool-1"] = GarmUpstreamError("unavailable", status_code=503)

        result = runner.invoke(cli.app, ["align", "small", "--config", self.config_path])

        assert result.exit_code == 1
        assert "Alignment failed" in result.output

    def test_runners_table(self):
        result = runner.invoke(cli.app, ["runners", "small", "--config", self.config_path])

        assert result.exit_code == 0
        assert "RUNNER STATUS" in result.output
        assert "idle-3" in result.output

    def test_runners_json(self):
        result = runner.invoke(cli.app, ["runners", "pool-1", "--format", "json", "--config", self.config_path])

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert [item["name"] for item in data] == ["idle-0", "idle-1", "idle-2", "idle-3"]
        assert data[0]["runner_status"] == "idle"
