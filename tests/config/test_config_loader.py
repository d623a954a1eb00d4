"""
Tests for the configuration loader and get_active_config().

Covers:
- The shipped default configuration loads and matches the documented defaults
- Unknown keys / sections and out-of-range values are rejected
- Secrets come from the environment only
"""

import pytest

from fiscal_config import get_active_config
from fiscal_config.loader import load_configuration, parse_configuration
from fiscal_config.schema import DistributionApiDef, RetryPolicyDef
from fiscal_kernel.exceptions import ConfigurationError

API = {"base_url": "https://api.test", "token_url": "https://auth.test/oauth/token"}


class TestDefaultConfiguration:
    def test_default_file_loads(self):
        config = get_active_config()

        assert config.config_id == "fiscal-inbox-default"
        assert config.version == 1
        assert config.distribution_api.page_size == 50
        assert config.circuit_breaker.failure_threshold == 5
        assert config.circuit_breaker.recovery_seconds == 60
        assert config.pipeline.max_attempts == 3
        assert config.matching.fuzzy_threshold == 70
        assert config.acknowledgment.min_justification_length == 15

    def test_endpoint_overrides(self):
        retry = get_active_config().retry

        assert retry.options_for("distribution_list").max_retries == 2
        assert retry.options_for("distribution_request").max_retries == 3
        assert retry.options_for("unconfigured").max_retries == retry.max_retries
        assert set(retry.endpoint_options()) == {
            "distribution_request", "distribution_list",
            "distribution_payload", "distribution_acknowledgment",
        }

    def test_trace_logged(self, captured_logs):
        get_active_config()

        (trace,) = [r for r in captured_logs() if r["message"] == "FISCAL_CONFIG_TRACE"]
        assert trace["config_id"] == "fiscal-inbox-default"

    def test_explicit_path(self, tmp_path):
        path = tmp_path / "inbox.yaml"
        path.write_text(
            "config_id: custom\n"
            "distribution_api:\n"
            "  base_url: https://api.test\n"
            "  token_url: https://auth.test/token\n"
        )

        config = get_active_config(path)

        assert config.config_id == "custom"
        assert config.pipeline.batch_size == 50


class TestRejectedConfiguration:
    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="cannot read"):
            load_configuration(tmp_path / "absent.yaml")

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("pipeline: [unclosed\n")
        with pytest.raises(ConfigurationError, match="invalid YAML"):
            load_configuration(path)

    def test_top_level_must_be_mapping(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- one\n- two\n")
        with pytest.raises(ConfigurationError, match="mapping"):
            load_configuration(path)

    def test_unknown_section(self):
        with pytest.raises(ConfigurationError, match="unknown sections"):
            parse_configuration({"distribution_api": API, "scheduler": {}})

    def test_unknown_key(self):
        with pytest.raises(ConfigurationError, match="unknown keys"):
            parse_configuration({"distribution_api": API, "pipeline": {"batchsize": 10}})

    def test_distribution_api_required(self):
        with pytest.raises(ConfigurationError, match="distribution_api"):
            parse_configuration({})

    def test_token_url_required(self):
        with pytest.raises(ConfigurationError, match="token_url"):
            parse_configuration({"distribution_api": {"base_url": "https://api.test"}})

    @pytest.mark.parametrize("threshold", [-1, 101])
    def test_threshold_range(self, threshold):
        with pytest.raises(ConfigurationError, match="fuzzy_threshold"):
            parse_configuration(
                {"distribution_api": API, "matching": {"fuzzy_threshold": threshold}},
            )

    @pytest.mark.parametrize(
        "section,key",
        [
            ("pipeline", "max_workers"),
            ("pipeline", "batch_size"),
            ("circuit_breaker", "failure_threshold"),
            ("distribution_api", "page_size"),
        ],
    )
    def test_non_positive_rejected(self, section, key):
        data = {"distribution_api": dict(API)}
        data.setdefault(section, {})[key] = 0
        with pytest.raises(ConfigurationError, match=key):
            parse_configuration(data)

    def test_endpoint_entry_keys(self):
        with pytest.raises(ConfigurationError, match="max_retries"):
            parse_configuration({
                "distribution_api": API,
                "retry": {"endpoints": {"distribution_list": {"timeout": 3}}},
            })

    def test_error_names_source(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("distribution_api:\n  base_url: x\n  token_url: y\n  page_size: 0\n")
        with pytest.raises(ConfigurationError) as exc_info:
            load_configuration(path)
        assert str(path) in str(exc_info.value)


class TestClientSecret:
    def test_resolved_from_mapping(self):
        api = DistributionApiDef(**API, client_secret_env="INBOX_SECRET")
        assert api.resolve_client_secret({"INBOX_SECRET": "abc"}) == "abc"

    def test_resolved_from_process_environment(self, monkeypatch):
        monkeypatch.setenv("FISCAL_INBOX_CLIENT_SECRET", "from-env")
        assert DistributionApiDef(**API).resolve_client_secret() == "from-env"

    def test_empty_secret_rejected(self):
        api = DistributionApiDef(**API)
        with pytest.raises(ConfigurationError, match="FISCAL_INBOX_CLIENT_SECRET"):
            api.resolve_client_secret({"FISCAL_INBOX_CLIENT_SECRET": ""})


class TestRetryPolicy:
    def test_default_options(self):
        options = RetryPolicyDef(max_retries=4, base_delay_seconds=0.5).default_options()
        assert options.max_retries == 4
        assert options.base_delay == 0.5
