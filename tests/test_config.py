"""
Tests for configuration loading and client construction.
"""
import dataclasses

import pytest
import yaml

from queue_master_balancer import BalancerConfig, build_client, load_config, parse_args
from rabbitmq_admin import ManagementApiClient, RabbitmqctlClient


def write_config(tmp_path, data):
    path = tmp_path / "balancer.yaml"
    path.write_text(yaml.safe_dump(data))
    return str(path)


def test_defaults(logger):
    config = load_config(None, {}, logger)

    assert config.vhost == "/"
    assert config.queue_filter == ".*"
    assert config.disable_health_check is False
    assert config.max_retries == 60
    assert config.retry_interval == 5
    assert config.lock_enabled is True


def test_yaml_sections(tmp_path, logger):
    path = write_config(tmp_path, {
        "rabbitmq": {"backend": "http", "management_url": "http://mq:15672"},
        "balancer": {"vhost": "prod", "max_retries": 10, "retry_interval": 2},
        "lock": {"enabled": False, "name": "my-lock"},
    })
    config = load_config(path, {}, logger)

    assert config.backend == "http"
    assert config.vhost == "prod"
    assert config.max_retries == 10
    assert config.retry_interval == 2
    assert config.lock_enabled is False
    assert config.lock_name == "my-lock"


def test_command_line_overrides_file(tmp_path, logger):
    path = write_config(tmp_path, {"balancer": {"vhost": "prod", "queue_filter": "^a"}})
    args = parse_args(["--config", path, "-p", "staging", "--disable-health-check"])
    config = load_config(args.config, vars(args), logger)

    assert config.vhost == "staging"
    assert config.queue_filter == "^a"
    assert config.disable_health_check is True
    assert config.lock_enabled is True


def test_config_is_immutable(logger):
    config = load_config(None, {}, logger)

    with pytest.raises(dataclasses.FrozenInstanceError):
        config.vhost = "other"


@pytest.mark.parametrize("overrides,message", [
    ({"queue_filter": "(["}, "Invalid queue filter"),
    ({"max_retries": 0}, "max_retries"),
    ({"backend": "amqp"}, "backend"),
])
def test_invalid_values(logger, overrides, message):
    with pytest.raises(ValueError, match=message):
        load_config(None, overrides, logger)


def test_unknown_option_rejected(tmp_path, logger):
    path = write_config(tmp_path, {"balancer": {"vhots": "/"}})

    with pytest.raises(ValueError, match="vhots"):
        load_config(path, {}, logger)


def test_missing_file(logger):
    with pytest.raises(FileNotFoundError):
        load_config("/nonexistent/balancer.yaml", {}, logger)


def test_build_client_backends(logger):
    assert isinstance(build_client(BalancerConfig(), logger), RabbitmqctlClient)

    client = build_client(BalancerConfig(backend="http", management_url="http://mq:15672/"), logger)
    assert isinstance(client, ManagementApiClient)
    assert client.base_url == "http://mq:15672"


def test_unknown_section_rejected(tmp_path, logger):
    path = write_config(tmp_path, {"balancr": {"vhost": "/"}})

    with pytest.raises(ValueError, match="balancr"):
        load_config(path, {}, logger)
