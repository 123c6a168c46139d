"""
client/storage.py -- Where a client keeps its credentials between calls.

CredentialStorage holds the access token, refresh token, the principal
returned at login and the audience ("user" or "admin") it logged in as.
SessionManager reads the access token synchronously before every request and
writes both tokens after a refresh.

JSONFileCredentialStorage persists the same fields to a file so a CLI or a
long-running worker keeps its session across restarts.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path

logger = logging.getLogger("tokengate.client")


class CredentialStorage:
    """In-memory credential slot for one session."""

    def __init__(self) -> None:
        self.access_token: str | None = None
        self.refresh_token: str | None = None
        self.principal: dict | None = None
        self.audience: str = "user"

    @property
    def authenticated(self) -> bool:
        return bool(self.access_token)

    def save(
        self,
        access_token: str,
        refresh_token: str,
        principal: dict | None = None,
        audience: str | None = None,
    ) -> None:
        self.access_token = access_token
        self.refresh_token = refresh_token
        if principal is not None:
            self.principal = principal
        if audience is not None:
            self.audience = audience

    def update_tokens(self, access_token: str, refresh_token: str) -> None:
        self.save(access_token, refresh_token)

    def clear(self) -> None:
        self.access_token = None
        self.refresh_token = None
        self.principal = None


class JSONFileCredentialStorage(CredentialStorage):
    """CredentialStorage that mirrors every change to a JSON file (mode 0600)."""

    _FIELDS = ("access_token", "refresh_token", "principal", "audience")

    def __init__(self, path: str | Path) -> None:
        super().__init__()
        self.path = Path(path)
        if self.path.exists():
            self._load()

    def _load(self) -> None:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable credential file %s: %s", self.path, exc)
            return
        for name in self._FIELDS:
            if name in data:
                setattr(self, name, data[name])

    def _write(self) -> None:
        payload = {name: getattr(self, name) for name in self._FIELDS}
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(payload, fh)

    def save(self, access_token, refresh_token, principal=None, audience=None) -> None:
        super().save(access_token, refresh_token, principal, audience)
        self._write()

    def clear(self) -> None:
        super().clear()
        self.path.unlink(missing_ok=True)
