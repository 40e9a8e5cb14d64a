"""Tests for azext_mate.config: MateConfig."""

import pytest
import yaml
from knack.util import CLIError

from azext_mate.config import DEFAULT_CONFIG, MateConfig


class TestMateConfig:
    """Test configuration management."""

    def test_defaults_without_file(self, tmp_project):
        config = MateConfig(str(tmp_project))
        loaded = config.load()

        assert loaded == DEFAULT_CONFIG
        assert config.exists() is False
        assert config.get("cloudshell.socket_timeout") == 30

    def test_load_merges_over_defaults(self, tmp_project):
        (tmp_project / "mate.yaml").write_text("deploy:\n  backend: local\n", encoding="utf-8")
        config = MateConfig(str(tmp_project))
        config.load()

        assert config.get("deploy.backend") == "local"
        assert config.get("deploy.history_limit") == 50
        assert config.get("cloudshell.shell_type") == "pwsh"

    def test_load_invalid_yaml(self, tmp_project):
        (tmp_project / "mate.yaml").write_text("deploy: [unclosed\n", encoding="utf-8")
        with pytest.raises(CLIError, match="Could not parse"):
            MateConfig(str(tmp_project)).load()

    def test_load_non_mapping(self, tmp_project):
        (tmp_project / "mate.yaml").write_text("- a\n- b\n", encoding="utf-8")
        with pytest.raises(CLIError, match="mapping"):
            MateConfig(str(tmp_project)).load()

    def test_get_missing_key(self, project_with_config):
        config = MateConfig(str(project_with_config))
        config.load()
        assert config.get("nope.nothing") is None
        assert config.get("nope.nothing", "fallback") == "fallback"

    def test_create_default_with_overrides(self, tmp_project):
        config = MateConfig(str(tmp_project))
        result = config.create_default({"deploy": {"backend": "cloudshell"}})

        assert result["deploy"]["backend"] == "cloudshell"
        assert config.exists()
        on_disk = yaml.safe_load((tmp_project / "mate.yaml").read_text(encoding="utf-8"))
        assert on_disk["deploy"]["backend"] == "cloudshell"

    def test_set_and_persist(self, project_with_config):
        config = MateConfig(str(project_with_config))
        config.load()
        config.set("cloudshell.socket_timeout", "45")

        reloaded = MateConfig(str(project_with_config))
        reloaded.load()
        assert reloaded.get("cloudshell.socket_timeout") == 45

    def test_to_dict_is_a_copy(self, project_with_config):
        config = MateConfig(str(project_with_config))
        config.load()
        data = config.to_dict()
        data["deploy"]["backend"] = "changed"
        assert config.get("deploy.backend") == "mock"


class TestSecrets:

    def test_subscription_goes_to_secrets_file(self, project_with_config):
        config = MateConfig(str(project_with_config))
        config.load()
        config.set("deploy.subscription", "11111111-2222-3333-4444-555555555555")

        main = yaml.safe_load((project_with_config / "mate.yaml").read_text(encoding="utf-8"))
        secrets = yaml.safe_load((project_with_config / "mate.secrets.yaml").read_text(encoding="utf-8"))
        assert main["deploy"]["subscription"] == ""
        assert secrets["deploy"]["subscription"] == "11111111-2222-3333-4444-555555555555"

        reloaded = MateConfig(str(project_with_config))
        reloaded.load()
        assert reloaded.get("deploy.subscription") == "11111111-2222-3333-4444-555555555555"

    def test_create_default_partitions_secrets(self, tmp_project):
        config = MateConfig(str(tmp_project))
        config.create_default({"deploy": {"backend": "local", "tenant": "contoso"}})

        main = yaml.safe_load((tmp_project / "mate.yaml").read_text(encoding="utf-8"))
        assert main["deploy"]["tenant"] == ""
        assert main["deploy"]["backend"] == "local"
        assert config.get("deploy.tenant") == "contoso"
        assert (tmp_project / "mate.secrets.yaml").exists()

    def test_no_secrets_file_without_secrets(self, tmp_project):
        MateConfig(str(tmp_project)).create_default()
        assert not (tmp_project / "mate.secrets.yaml").exists()

    @pytest.mark.parametrize("key, expected", [
        ("deploy.subscription", True),
        ("deploy.tenant", True),
        ("deploy.backend", False),
        ("deploy.subscriptions", False),
    ])
    def test_is_secret_key(self, key, expected):
        assert MateConfig.is_secret_key(key) is expected


class TestValidation:

    @pytest.mark.parametrize("value,expected", [("LOCAL", "local"), (" cloudshell ", "cloudshell"), ("mock", "mock")])
    def test_backend(self, value, expected):
        assert MateConfig.validate_value("deploy.backend", value) == expected

    def test_unknown_backend(self):
        with pytest.raises(CLIError, match="Unknown backend"):
            MateConfig.validate_value("deploy.backend", "ssh")

    def test_shell_type(self):
        assert MateConfig.validate_value("cloudshell.shell_type", "Bash") == "bash"
        with pytest.raises(CLIError, match="Unknown shell type"):
            MateConfig.validate_value("cloudshell.shell_type", "cmd")

    def test_location(self):
        assert MateConfig.validate_value("cloudshell.location", "WestEurope") == "westeurope"
        assert MateConfig.validate_value("cloudshell.location", "") == ""
        with pytest.raises(CLIError, match="Unknown Azure region"):
            MateConfig.validate_value("cloudshell.location", "moon-north")

    def test_positive_numbers(self):
        assert MateConfig.validate_value("cloudshell.poll_interval", "1.5") == 1.5
        assert MateConfig.validate_value("deploy.history_limit", 10.0) == 10
        with pytest.raises(CLIError, match="must be positive"):
            MateConfig.validate_value("cloudshell.provision_timeout", 0)
        with pytest.raises(CLIError, match="must be a number"):
            MateConfig.validate_value("cloudshell.cols", "wide")

    def test_zero_allowed_for_delays(self):
        assert MateConfig.validate_value("mock.time_scale", "0") == 0
        with pytest.raises(CLIError, match="zero or positive"):
            MateConfig.validate_value("cloudshell.command_delay", -1)

    @pytest.mark.parametrize("value,expected", [("yes", True), ("0", False), (True, True), ("FALSE", False)])
    def test_booleans(self, value, expected):
        assert MateConfig.validate_value("local.auto_install_module", value) is expected

    def test_bad_boolean(self):
        with pytest.raises(CLIError, match="true or false"):
            MateConfig.validate_value("local.auto_install_module", "maybe")

    def test_invalid_value_is_not_persisted(self, project_with_config):
        config = MateConfig(str(project_with_config))
        config.load()
        with pytest.raises(CLIError):
            config.set("deploy.backend", "ssh")

        reloaded = MateConfig(str(project_with_config))
        reloaded.load()
        assert reloaded.get("deploy.backend") == "mock"
