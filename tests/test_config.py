import json

import pytest

from busradar.config import ConfigStore
from busradar.storage import JsonDocument


def build_store(tmp_path, environ=None) -> ConfigStore:
    return ConfigStore(JsonDocument(tmp_path / "monitor_config.json"), environ=environ or {})


def test_missing_file_and_env_gives_defaults(tmp_path):
    config = build_store(tmp_path).get()

    assert config.sender_email is None
    assert config.email_service == "gmail"
    assert config.has_credentials is False


def test_environment_takes_precedence_over_file(tmp_path):
    (tmp_path / "monitor_config.json").write_text(
        json.dumps({
            "senderEmail": "file@example.com",
            "senderPassword": "file-secret",
            "notificationEmail": "alerts@example.com",
            "smtpPort": 2525,
        }),
        encoding="utf-8",
    )
    store = build_store(tmp_path, environ={
        "SENDER_EMAIL": "env@example.com",
        "EMAIL_SERVICE": "outlook",
    })

    config = store.get()

    assert config.sender_email == "env@example.com"
    assert config.sender_password == "file-secret"
    assert config.notification_email == "alerts@example.com"
    assert config.email_service == "outlook"
    assert config.smtp_port == 2525


def test_set_merges_partial_updates(tmp_path):
    store = build_store(tmp_path)
    store.set(sender_email="me@example.com", sender_password="secret")
    store.set(notification_email="alerts@example.com", sender_password="")

    persisted = json.loads((tmp_path / "monitor_config.json").read_text(encoding="utf-8"))
    assert persisted == {
        "senderEmail": "me@example.com",
        "senderPassword": "secret",
        "notificationEmail": "alerts@example.com",
    }


def test_set_rejects_unknown_fields(tmp_path):
    with pytest.raises(ValueError):
        build_store(tmp_path).set(api_key="nope")


def test_public_view_hides_password(tmp_path):
    store = build_store(tmp_path)
    store.set(sender_email="me@example.com", sender_password="secret")

    view = store.public_view()

    assert view["sender_email"] == "me@example.com"
    assert "sender_password" not in view
    assert "secret" not in view.values()


def test_invalid_port_is_ignored(tmp_path):
    store = build_store(tmp_path, environ={"SMTP_PORT": "not-a-port"})
    assert store.get().smtp_port is None


def test_uses_process_environment_by_default(tmp_path, monkeypatch):
    monkeypatch.setenv("NOTIFICATION_EMAIL", "env-alerts@example.com")
    store = ConfigStore(JsonDocument(tmp_path / "monitor_config.json"))
    assert store.get().notification_email == "env-alerts@example.com"
