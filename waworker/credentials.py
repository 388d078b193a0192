"""Credential persistence for session keys."""

from __future__ import annotations

import contextlib
import json
import logging
import os
import re
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, List, Optional, Protocol

LOGGER = logging.getLogger("waworker.credentials")

CREDS_FILENAME = "creds.json"
_KEY_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,127}$")


def validate_key(key: str) -> str:
    cleaned = (key or "").strip()
    if not _KEY_RE.match(cleaned) or ".." in cleaned:
        raise ValueError("invalid_key")
    return cleaned


class CredentialStore(Protocol):
    def keys(self) -> List[str]:
        ...

    def exists(self, key: str) -> bool:
        ...

    def open(self, key: str) -> Any:
        ...

    def save(self, key: str, payload: Any) -> None:
        ...

    def purge(self, key: str) -> None:
        ...


@dataclass(frozen=True, slots=True)
class StoredCredentials:
    """What the transport receives for a key: its directory and last saved payload."""

    key: str
    directory: Path
    payload: Optional[Any] = None


class FileCredentialStore:
    """One directory per key under ``root``, holding ``creds.json``."""

    def __init__(self, root: Path) -> None:
        self._root = Path(root)
        self._root.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    def _dir(self, key: str) -> Path:
        return self._root / validate_key(key)

    def keys(self) -> List[str]:
        found = []
        for path in sorted(self._root.iterdir()):
            if path.is_dir() and _KEY_RE.match(path.name) and (path / CREDS_FILENAME).exists():
                found.append(path.name)
        return found

    def exists(self, key: str) -> bool:
        return self._dir(key).exists()

    def _ensure_dir(self, path: Path) -> None:
        path.mkdir(parents=True, exist_ok=True)
        try:
            os.chmod(path, 0o700)
        except OSError as exc:
            LOGGER.warning("stage=credentials_chmod_failed path=%s error=%s", path, exc)

    def open(self, key: str) -> StoredCredentials:
        directory = self._dir(key)
        self._ensure_dir(directory)
        creds_path = directory / CREDS_FILENAME
        payload = None
        if creds_path.exists():
            try:
                payload = json.loads(creds_path.read_text(encoding="utf-8"))
            except (OSError, ValueError) as exc:
                LOGGER.warning("stage=credentials_unreadable key=%s error=%s", key, exc)
        return StoredCredentials(key=key, directory=directory, payload=payload)

    def save(self, key: str, payload: Any) -> None:
        directory = self._dir(key)
        self._ensure_dir(directory)
        fd, tmp_name = tempfile.mkstemp(dir=directory, prefix=".creds-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, ensure_ascii=False, default=str)
            os.replace(tmp_name, directory / CREDS_FILENAME)
        except BaseException:
            with contextlib.suppress(FileNotFoundError):
                os.unlink(tmp_name)
            raise
        LOGGER.debug("stage=credentials_saved key=%s", key)

    def purge(self, key: str) -> None:
        directory = self._dir(key)
        if not directory.exists():
            return
        shutil.rmtree(directory)
        LOGGER.info("stage=credentials_purged key=%s", key)


__all__ = [
    "CREDS_FILENAME",
    "CredentialStore",
    "FileCredentialStore",
    "StoredCredentials",
    "validate_key",
]
