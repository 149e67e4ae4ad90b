"""Durable storage of the installed-app credentials.

The record lives under the storage root as ``smartapp_credentials.json`` or,
when a key file is configured, as the sealed ``smartapp_credentials.enc``.
Storage errors never propagate: reads fall back to "not installed" and
failed writes keep the in-memory value.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

import orjson

from smartapp_bridge import vault
from smartapp_bridge.errors import PersistenceFailure
from smartapp_bridge.models import Credentials

logger = logging.getLogger(__name__)

CREDENTIALS_FILE = "smartapp_credentials.json"
SEALED_CREDENTIALS_FILE = "smartapp_credentials.enc"


class CredentialStore:
    """Holds the current :class:`Credentials` and mirrors them to disk.

    Parameters
    ----------
    storage_path:
        Directory for the credentials document.
    key:
        Optional 32-byte key. When given the document is sealed.
    on_secret:
        Called with every token value the store learns about, so log
        redaction can pick it up.
    """

    def __init__(
        self,
        storage_path: str | Path,
        key: Optional[bytes] = None,
        on_secret: Optional[Callable[[str], None]] = None,
    ) -> None:
        self._storage_path = Path(storage_path)
        self._key = key
        self._on_secret = on_secret
        name = SEALED_CREDENTIALS_FILE if key else CREDENTIALS_FILE
        self._path = self._storage_path / name
        self._credentials: Optional[Credentials] = None

    @property
    def path(self) -> Path:
        return self._path

    @property
    def credentials(self) -> Optional[Credentials]:
        return self._credentials

    @property
    def is_installed(self) -> bool:
        return self._credentials is not None and self._credentials.is_installed

    def load(self) -> Optional[Credentials]:
        """Load the saved record into memory. Returns ``None`` when absent."""
        try:
            doc = self._read()
        except PersistenceFailure as exc:
            logger.warning("No usable saved credentials: %s", exc)
            doc = None

        creds = _from_document(doc) if doc is not None else None
        self._credentials = creds
        if creds is not None:
            self._report_secrets(creds)
            logger.info("Loaded saved credentials for installed app %s", creds.installed_app_id)
        return creds

    def save(self, credentials: Credentials) -> bool:
        """Replace the current credentials and persist them.

        Returns False when the value was unchanged and nothing was written.
        """
        self._report_secrets(credentials)
        if credentials == self._credentials and self._path.exists():
            return False
        self._credentials = credentials

        doc = {
            "installed_app_id": credentials.installed_app_id,
            "auth_token": credentials.auth_token,
            "refresh_token": credentials.refresh_token,
            "location_id": credentials.location_id,
            "saved_at": datetime.now(timezone.utc).isoformat(),
        }
        try:
            self._write(doc)
        except PersistenceFailure as exc:
            logger.error("Failed to save credentials: %s", exc)
            return True
        logger.info("Saved credentials to %s", self._path.name)
        return True

    def clear(self) -> None:
        """Forget the credentials in memory and on disk."""
        self._credentials = None
        try:
            if self._path.exists():
                self._path.unlink()
                logger.info("Cleared saved credentials")
        except OSError as exc:
            logger.error("Failed to clear saved credentials: %s", exc)

    # ── internal ────────────────────────────────────────────────────

    def _read(self) -> Optional[dict]:
        if not self._path.exists():
            return None
        try:
            raw = self._path.read_bytes()
            doc = vault.unseal(raw, self._key) if self._key else orjson.loads(raw)
        except (OSError, ValueError) as exc:
            raise PersistenceFailure(f"cannot read {self._path}: {exc}") from exc
        if not isinstance(doc, dict):
            raise PersistenceFailure(f"{self._path} does not hold an object")
        return doc

    def _write(self, doc: dict) -> None:
        if self._key:
            data = vault.seal(doc, self._key)
        else:
            data = orjson.dumps(doc, option=orjson.OPT_INDENT_2)
        tmp = self._path.with_name(self._path.name + ".tmp")
        try:
            self._storage_path.mkdir(parents=True, exist_ok=True)
            tmp.write_bytes(data)
            tmp.chmod(0o600)
            tmp.replace(self._path)
        except OSError as exc:
            raise PersistenceFailure(f"cannot write {self._path}: {exc}") from exc

    def _report_secrets(self, credentials: Credentials) -> None:
        if self._on_secret is None:
            return
        for value in (credentials.auth_token, credentials.refresh_token):
            if value:
                self._on_secret(value)


def _from_document(doc: dict) -> Optional[Credentials]:
    installed_app_id = doc.get("installed_app_id")
    auth_token = doc.get("auth_token")
    if not installed_app_id or not auth_token:
        return None
    return Credentials(
        installed_app_id=installed_app_id,
        auth_token=auth_token,
        refresh_token=doc.get("refresh_token"),
        location_id=doc.get("location_id"),
    )
