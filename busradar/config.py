"""Notification settings resolved from the environment and a persisted file."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Dict, Mapping, Optional

from .models import MonitorConfig
from .storage import CONFIG_FILE, JsonDocument

logger = logging.getLogger(__name__)

# MonitorConfig field -> (environment variable, key in the persisted file)
FIELD_SOURCES = {
    "sender_email": ("SENDER_EMAIL", "senderEmail"),
    "sender_password": ("SENDER_PASSWORD", "senderPassword"),
    "notification_email": ("NOTIFICATION_EMAIL", "notificationEmail"),
    "email_service": ("EMAIL_SERVICE", "emailService"),
    "smtp_host": ("SMTP_HOST", "smtpHost"),
    "smtp_port": ("SMTP_PORT", "smtpPort"),
}

SECRET_FIELDS = frozenset({"sender_password"})


def _parse_port(value) -> Optional[int]:
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        logger.warning("Ignoring invalid SMTP port %r", value)
        return None


@dataclass
class ConfigStore:
    """Environment values win; the JSON file fills whatever is unset."""

    document: JsonDocument
    environ: Optional[Mapping[str, str]] = None

    @classmethod
    def in_dir(cls, data_dir: Path) -> "ConfigStore":
        return cls(JsonDocument(data_dir / CONFIG_FILE))

    def _persisted(self) -> Dict[str, object]:
        raw = self.document.read(default={})
        return raw if isinstance(raw, dict) else {}

    def get(self) -> MonitorConfig:
        environ = os.environ if self.environ is None else self.environ
        persisted = self._persisted()
        values: Dict[str, object] = {}
        for attr, (env_key, file_key) in FIELD_SOURCES.items():
            value = (environ.get(env_key) or "").strip() or persisted.get(file_key)
            if value not in (None, ""):
                values[attr] = value

        if "smtp_port" in values:
            values["smtp_port"] = _parse_port(values["smtp_port"])
        config = MonitorConfig(**values)
        if not config.email_service:
            config.email_service = "gmail"
        return config

    def set(self, **partial: object) -> MonitorConfig:
        """Merge the provided non-empty values into the persisted file."""
        unknown = set(partial) - set(FIELD_SOURCES)
        if unknown:
            raise ValueError(f"unknown config fields: {', '.join(sorted(unknown))}")

        persisted = self._persisted()
        for attr, value in partial.items():
            if value in (None, ""):
                continue
            persisted[FIELD_SOURCES[attr][1]] = value
        self.document.write(persisted)
        logger.info("Updated monitor configuration (%s)",
                    ", ".join(sorted(k for k, v in partial.items() if v not in (None, ""))))
        return self.get()

    def public_view(self) -> Dict[str, object]:
        """Resolved configuration with secret fields removed."""
        config = self.get()
        return {
            field.name: getattr(config, field.name)
            for field in fields(config)
            if field.name not in SECRET_FIELDS
        }
