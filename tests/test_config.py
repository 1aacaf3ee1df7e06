import json

import pytest

from wizlight_protocol import COMMIT_RETRY_SCHEDULE, DEFAULT_RETRY_SCHEDULE, ConfigContext, WizConfig


class TestConfigContext:
    def test_env_variables(self):
        context = ConfigContext(os_environ={"WIZ_SOURCE_IP": "192.168.1.10"})
        assert context.render_template_str("${env:WIZ_SOURCE_IP}") == "192.168.1.10"
        assert context.render_template_str("cost: $$5") == "cost: $5"

    def test_globals(self):
        context = ConfigContext(globals={"subnet": "192.168.1"}, os_environ={})
        assert context.render_template_str("${subnet}.255") == "192.168.1.255"

    def test_undefined_variable(self):
        context = ConfigContext(os_environ={})
        with pytest.raises(ValueError):
            context.render_template_str("${env:MISSING}")

    def test_render_json_data(self):
        context = ConfigContext(os_environ={"PORT": "38900"})
        rendered = context.render_template_json_data({"a": ["${env:PORT}", 1, None], "b": {"c": "plain"}})
        assert rendered == {"a": ["38900", 1, None], "b": {"c": "plain"}}


class TestWizConfig:
    def test_defaults(self):
        config = WizConfig.loads("{}", context=ConfigContext(os_environ={}))
        assert config.device_port == 38899
        assert config.push_port == 38900
        assert config.dial_port == 38899
        assert config.source_ip is None
        assert config.broadcast_address == "255.255.255.255"
        assert config.registration_interval == 20.0
        assert config.debounce_window == 0.4
        assert config.retry == DEFAULT_RETRY_SCHEDULE
        assert config.commit_retry == COMMIT_RETRY_SCHEDULE

    def test_templated_values(self):
        context = ConfigContext(os_environ={"WIZ_SOURCE_IP": "192.168.1.10", "WIZ_PUSH_PORT": "40000"})
        config = WizConfig.from_json_data(
            {"source_ip": "${env:WIZ_SOURCE_IP}", "push_port": "${env:WIZ_PUSH_PORT}"}, context=context
        )
        assert config.source_ip == "192.168.1.10"
        assert config.push_port == 40000

    def test_retry_merges_over_defaults(self):
        config = WizConfig.from_json_data(
            {"retry": {"max_attempts": 3, "timeout": 5.0}, "commit_retry": {"timeout": 6.0}},
            context=ConfigContext(os_environ={}),
        )
        assert config.retry.max_attempts == 3
        assert config.retry.first_interval == DEFAULT_RETRY_SCHEDULE.first_interval
        assert config.retry.timeout == 5.0
        assert config.commit_retry.max_attempts == COMMIT_RETRY_SCHEDULE.max_attempts
        assert config.commit_retry.timeout == 6.0

    @pytest.mark.parametrize(
        "data",
        [
            [],
            {"device_port": True},
            {"device_port": "not a number"},
            {"debounce_window": [0.4]},
            {"source_ip": 12},
            {"retry": 5},
            {"retry": {"max_attempts": "six"}},
            {"retry": {"timeout": 1.0}},
        ],
    )
    def test_invalid(self, data):
        with pytest.raises(ValueError):
            WizConfig.from_json_data(data, context=ConfigContext(os_environ={}))

    def test_load_file(self, tmp_path):
        config_file = tmp_path / "wizlight.json"
        config_file.write_text(json.dumps({"device_port": 4000, "broadcast_address": "192.168.1.255"}))
        config = WizConfig.load_file(str(config_file), context=ConfigContext(os_environ={}))
        assert config.device_port == 4000
        assert config.broadcast_address == "192.168.1.255"
        assert WizConfig.from_json_data(config.to_json_data()).device_port == 4000
