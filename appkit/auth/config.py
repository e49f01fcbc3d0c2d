from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from dotenv import load_dotenv

DEFAULT_USER = "wpak-app"
DEFAULT_TIMEOUT_S = 40.0
SERVICE_NAME = "authentication"


class SettingsResolver:
    """
    Settings lookup: explicit mapping passed at init first, then os.environ.
    """
    def __init__(self, mapping: Optional[Mapping[str, str]] = None):
        self._mapping = dict(mapping or {})

    def get(self, name: str, default: Optional[str] = None) -> Optional[str]:
        if name in self._mapping:
            return self._mapping[name]
        return os.environ.get(name, default)

    def require(self, name: str) -> str:
        v = self.get(name)
        if v is None or v == "":
            raise KeyError(f"Missing required setting: {name}")
        return v


@dataclass
class AuthConfig:
    """
    Where the authentication web service lives and how the client talks to it.

    - ws_url: site base URL, e.g. "https://example.org/wp-appkit-api/my-app"
    - url_token: optional web service token inserted before the service path
    - app_slug: keys the persisted session record, one per app installation
    - session_path: JSON file for the session record (in-memory when None)
    """
    ws_url: str
    app_slug: str = "default"
    url_token: Optional[str] = None
    default_user: str = DEFAULT_USER
    timeout_s: float = DEFAULT_TIMEOUT_S
    session_path: Optional[str] = None

    @property
    def endpoint_url(self) -> str:
        base = self.ws_url.rstrip("/")
        if self.url_token:
            base += "/" + self.url_token.strip("/")
        return f"{base}/{SERVICE_NAME}/"

    @classmethod
    def from_env(
        cls,
        *,
        resolver: Optional[SettingsResolver] = None,
        auto_dotenv: bool = True,
        dotenv_path: Optional[str] = None,
        dotenv_override: bool = False,
    ) -> "AuthConfig":
        if auto_dotenv:
            load_dotenv(dotenv_path=dotenv_path, override=dotenv_override)
        settings = resolver or SettingsResolver()

        timeout_raw = settings.get("APPKIT_AUTH_TIMEOUT")
        try:
            timeout_s = float(timeout_raw) if timeout_raw else DEFAULT_TIMEOUT_S
        except ValueError as e:
            raise ValueError(f"APPKIT_AUTH_TIMEOUT must be a number, got {timeout_raw!r}") from e

        return cls(
            ws_url=settings.require("APPKIT_WS_URL"),
            app_slug=settings.get("APPKIT_APP_SLUG") or "default",
            url_token=settings.get("APPKIT_URL_TOKEN") or None,
            default_user=settings.get("APPKIT_DEFAULT_USER") or DEFAULT_USER,
            timeout_s=timeout_s,
            session_path=settings.get("APPKIT_SESSION_PATH") or None,
        )
