from __future__ import annotations

import pytest
from pydantic import ValidationError

from sparkanywhere.common.constants import ProviderType
from sparkanywhere.common.errors import ConfigurationError
from sparkanywhere.common.settings import Settings


def test_defaults():
    settings = Settings()

    assert settings.port == 1323
    assert settings.instances == 1
    assert settings.driver_timeout is None


def test_environment(monkeypatch):
    monkeypatch.setenv("SPARKANYWHERE_ECS_ENABLED", "true")
    monkeypatch.setenv("SPARKANYWHERE_ECS__CLUSTER_NAME", "spark")
    monkeypatch.setenv("SPARKANYWHERE_PORT", "8080")

    settings = Settings()

    assert settings.provider_type() == ProviderType.ECS
    assert settings.ecs.cluster_name == "spark"
    assert settings.port == 8080


def test_yaml_beats_environment(monkeypatch, tmp_path):
    monkeypatch.setenv("SPARKANYWHERE_INSTANCES", "5")
    config = tmp_path / "config.yaml"
    config.write_text("docker_enabled: true\ninstances: 3\n")

    settings = Settings.from_yaml(str(config))

    assert settings.instances == 3
    assert settings.provider_type() == ProviderType.DOCKER


def test_overrides_skip_unset_values(tmp_path):
    config = tmp_path / "config.yaml"
    config.write_text("port: 9000\n")

    settings = Settings.from_yaml(str(config), port=None, instances=2)

    assert settings.port == 9000
    assert settings.instances == 2


def test_yaml_must_be_a_mapping(tmp_path):
    config = tmp_path / "config.yaml"
    config.write_text("- docker\n")

    with pytest.raises(ConfigurationError, match="mapping"):
        Settings.from_yaml(str(config))


@pytest.mark.parametrize(
    "docker_enabled, ecs_enabled",
    [(False, False), (True, True)],
)
def test_exactly_one_provider(docker_enabled, ecs_enabled):
    settings = Settings(docker_enabled=docker_enabled, ecs_enabled=ecs_enabled)

    with pytest.raises(ConfigurationError):
        settings.provider_type()


def test_log_level_is_normalised():
    assert Settings(log_level="debug").log_level == "DEBUG"


def test_unknown_log_level_is_rejected():
    with pytest.raises(ValidationError, match="log level"):
        Settings(log_level="LOUD")
