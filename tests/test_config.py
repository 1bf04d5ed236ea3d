from __future__ import annotations

from pathlib import Path

import pytest

from georelay.config import BrokerCredentials, RelayConfig, read_env_file
from georelay.exceptions import RelayConfigError


def test_defaults_without_environment() -> None:
    config = RelayConfig.from_env(None, environ={})

    assert config.broker_url == "mqtt://iot.mongrov.net:1883"
    assert config.topic_badges == "old/assets/+/location"
    assert config.topic_geofence == "geofence/+"
    assert config.port == 3001
    assert config.credentials is None
    assert config.publish_prefix == "old"


def test_broker_built_from_parts() -> None:
    config = RelayConfig.from_env(
        None,
        environ={"MQTT_BROKER_PROTOCOL": "mqtts", "MQTT_BROKER_IN": "broker.local", "MQTT_BROKER_PORT": "8884"},
    )

    assert config.broker_url == "mqtts://broker.local:8884"


def test_credentials_need_both_values() -> None:
    assert RelayConfig.from_env(None, environ={"MQTT_USERNAME": "alice"}).credentials is None

    config = RelayConfig.from_env(None, environ={"MQTT_USERNAME": "alice", "MQTT_PASSWORD": "secret"})
    assert config.credentials == BrokerCredentials("alice", "secret")
    assert "secret" not in repr(config.credentials)


def test_env_file_is_overridden_by_process_environment(tmp_path: Path) -> None:
    env_file = tmp_path / ".env"
    env_file.write_text(
        "# broker settings\n"
        "MQTT_BROKER='mqtt://from-file:1883'\n"
        'MQTT_TOPIC_BADGES="site/assets/+/location"\n'
        "PORT=4000\n"
        "MQTT_USERNAME\n"
        "\n"
        "not a pair\n",
        encoding="utf-8",
    )

    config = RelayConfig.from_env(env_file, environ={"PORT": "5000"})

    assert config.broker_url == "mqtt://from-file:1883"
    assert config.topic_badges == "site/assets/+/location"
    assert config.port == 5000
    assert config.username is None


def test_explicit_overrides_win(tmp_path: Path) -> None:
    config = RelayConfig.from_env(tmp_path / "missing.env", environ={"PORT": "5000"}, port=6000, publish_prefix="x")

    assert config.port == 6000
    assert config.publish_prefix == "x"


@pytest.mark.parametrize(
    "environ",
    [
        {"PORT": "http"},
        {"GEORELAY_QUEUE_SIZE": "many"},
        {"GEORELAY_QUEUE_SIZE": "0"},
        {"GEORELAY_RECONNECT_PERIOD": "soon"},
    ],
)
def test_invalid_values_raise(environ: dict[str, str]) -> None:
    with pytest.raises(RelayConfigError):
        RelayConfig.from_env(None, environ=environ)


def test_read_env_file_missing(tmp_path: Path) -> None:
    assert read_env_file(tmp_path / "nope") == {}


def test_read_env_file_drops_keys_without_values(tmp_path: Path) -> None:
    env_file = tmp_path / ".env"
    env_file.write_text("export MQTT_PASSWORD=\"s3cr#t\" # trailing\nMQTT_USERNAME\n", encoding="utf-8")

    assert read_env_file(env_file) == {"MQTT_PASSWORD": "s3cr#t"}
