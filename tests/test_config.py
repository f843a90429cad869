import pytest

from shop_queue.config import Settings, load_settings
from shop_queue.push import EXPO_PUSH_URL

ENV = [
    "SHOPQUEUE_DB_PATH",
    "SHOPQUEUE_CATALOG_PATH",
    "SHOPQUEUE_MQTT_HOST",
    "SHOPQUEUE_MQTT_PORT",
    "SHOPQUEUE_NAMESPACE",
    "SHOPQUEUE_DISPATCH_WORKERS",
    "SHOPQUEUE_ALLOCATION_RETRIES",
    "SHOPQUEUE_CODE_RETRIES",
    "SHOPQUEUE_PUSH_ENABLED",
    "SHOPQUEUE_PUSH_URL",
    "SHOPQUEUE_PUSH_TIMEOUT_S",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV:
        monkeypatch.delenv(name, raising=False)


def test_defaults():
    s = load_settings()
    assert s.db_path == ":memory:"
    assert s.catalog_path is None
    assert (s.mqtt_host, s.mqtt_port) == ("127.0.0.1", 1883)
    assert s.namespace == "shopqueue/v1"
    assert (s.dispatch_workers, s.allocation_retries, s.code_retries) == (2, 3, 5)
    assert s.push_enabled is True
    assert s.push_url == EXPO_PUSH_URL
    assert s.push_timeout_s == 10.0


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("SHOPQUEUE_DB_PATH", "/tmp/q.db")
    monkeypatch.setenv("SHOPQUEUE_MQTT_PORT", "1884")
    monkeypatch.setenv("SHOPQUEUE_NAMESPACE", "demo/v2")
    monkeypatch.setenv("SHOPQUEUE_CODE_RETRIES", "9")
    monkeypatch.setenv("SHOPQUEUE_PUSH_ENABLED", "off")
    monkeypatch.setenv("SHOPQUEUE_PUSH_TIMEOUT_S", "2.5")

    s = load_settings()
    assert s.db_path == "/tmp/q.db"
    assert s.mqtt_port == 1884
    assert s.namespace == "demo/v2"
    assert s.code_retries == 9
    assert s.push_enabled is False
    assert s.push_timeout_s == 2.5


def test_unparsable_numbers_fall_back(monkeypatch):
    monkeypatch.setenv("SHOPQUEUE_MQTT_PORT", "eighteen")
    monkeypatch.setenv("SHOPQUEUE_PUSH_TIMEOUT_S", "soon")
    s = load_settings()
    assert s.mqtt_port == 1883
    assert s.push_timeout_s == 10.0


def test_out_of_range_is_rejected():
    from pydantic import ValidationError

    with pytest.raises(ValidationError):
        Settings(dispatch_workers=0)
    with pytest.raises(ValidationError):
        Settings(mqtt_port=70000)
