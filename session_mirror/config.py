"""
Settings for session storage and Drive sync.

Configuration in ~/.session-mirror/settings.yaml:

```yaml
storage_dir: ~/.session-mirror
push_delay_ms: 3000
oauth:
  client_id: "1234-abc.apps.googleusercontent.com"
  client_secret: "GOCSPX-..."
  redirect_port: 9876
```

Environment variables override the file:
SESSION_MIRROR_HOME, SESSION_MIRROR_CLIENT_ID, SESSION_MIRROR_CLIENT_SECRET,
SESSION_MIRROR_REDIRECT_PORT.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

DEFAULT_HOME = Path.home() / ".session-mirror"

GOOGLE_AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
DRIVE_APPDATA_SCOPE = "https://www.googleapis.com/auth/drive.appdata"


@dataclass
class OAuthConfig:
    """OAuth2 client settings for the loopback authorization-code flow."""

    client_id: str | None = None
    client_secret: str | None = None
    authorize_url: str = GOOGLE_AUTHORIZE_URL
    token_url: str = GOOGLE_TOKEN_URL
    userinfo_url: str = GOOGLE_USERINFO_URL
    scopes: list[str] = field(default_factory=lambda: [DRIVE_APPDATA_SCOPE])
    redirect_host: str = "127.0.0.1"
    redirect_port: int = 9876
    redirect_path: str = "/callback"
    callback_timeout_s: float = 300.0
    http_timeout_s: float = 30.0

    @property
    def redirect_uri(self) -> str:
        return f"http://localhost:{self.redirect_port}{self.redirect_path}"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> OAuthConfig:
        config = cls()
        for key in (
            "client_id",
            "client_secret",
            "authorize_url",
            "token_url",
            "userinfo_url",
            "redirect_host",
            "redirect_path",
        ):
            if data.get(key):
                setattr(config, key, str(data[key]))
        if data.get("scopes"):
            config.scopes = list(data["scopes"])
        if data.get("redirect_port"):
            config.redirect_port = int(data["redirect_port"])
        if data.get("callback_timeout_s"):
            config.callback_timeout_s = float(data["callback_timeout_s"])
        if data.get("http_timeout_s"):
            config.http_timeout_s = float(data["http_timeout_s"])
        return config


@dataclass
class Settings:
    """Top-level settings."""

    storage_dir: Path = DEFAULT_HOME
    oauth: OAuthConfig = field(default_factory=OAuthConfig)
    push_delay_ms: int = 3000
    rename_push_delay_ms: int = 1000
    index_limit: int = 200
    list_limit: int = 200

    @property
    def db_path(self) -> Path:
        return self.storage_dir / "session-mirror.db"

    @property
    def secrets_path(self) -> Path:
        return self.storage_dir / ".credentials.json"

    @classmethod
    def load(cls, config_path: Path | None = None) -> Settings:
        """Load settings from YAML, then apply environment overrides.

        A missing or unreadable file yields defaults; settings are never
        a reason to fail startup.
        """
        home = Path(os.environ.get("SESSION_MIRROR_HOME", DEFAULT_HOME)).expanduser()
        path = config_path or home / "settings.yaml"
        data = _load_yaml(path)

        settings = cls(storage_dir=Path(data.get("storage_dir", home)).expanduser())
        settings.oauth = OAuthConfig.from_dict(data.get("oauth") or {})
        for key in ("push_delay_ms", "rename_push_delay_ms", "index_limit", "list_limit"):
            if key in data:
                setattr(settings, key, int(data[key]))

        if "SESSION_MIRROR_HOME" in os.environ:
            settings.storage_dir = home
        if os.environ.get("SESSION_MIRROR_CLIENT_ID"):
            settings.oauth.client_id = os.environ["SESSION_MIRROR_CLIENT_ID"]
        if os.environ.get("SESSION_MIRROR_CLIENT_SECRET"):
            settings.oauth.client_secret = os.environ["SESSION_MIRROR_CLIENT_SECRET"]
        if os.environ.get("SESSION_MIRROR_REDIRECT_PORT"):
            settings.oauth.redirect_port = int(os.environ["SESSION_MIRROR_REDIRECT_PORT"])

        return settings


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        return yaml.safe_load(path.read_text()) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.warning(f"Ignoring unreadable settings file {path}: {e}")
        return {}
