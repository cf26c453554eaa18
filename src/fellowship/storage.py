"""Persisted session state: the bearer token and the serialized identity.

Both values are written together in one file and removed together, so a
reader never observes a token without its identity or vice versa.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional, Protocol, Tuple

logger = logging.getLogger(__name__)

TOKEN_KEY = "token"
USER_KEY = "user"


class TokenStore(Protocol):
    """Storage for the persisted ``(token, user)`` pair."""

    def load(self) -> Optional[Tuple[str, Dict[str, Any]]]:
        ...

    def save(self, token: str, user: Dict[str, Any]) -> None:
        ...

    def clear(self) -> None:
        ...


class MemoryTokenStore:
    """In-process store. Nothing survives a restart."""

    def __init__(self, token: Optional[str] = None, user: Optional[Dict[str, Any]] = None):
        self._data: Dict[str, Any] = {}
        if token and user:
            self.save(token, user)

    def load(self) -> Optional[Tuple[str, Dict[str, Any]]]:
        if TOKEN_KEY in self._data and USER_KEY in self._data:
            return self._data[TOKEN_KEY], dict(self._data[USER_KEY])
        return None

    def save(self, token: str, user: Dict[str, Any]) -> None:
        self._data = {TOKEN_KEY: token, USER_KEY: dict(user)}

    def clear(self) -> None:
        self._data = {}

    def __contains__(self, key: str) -> bool:
        return key in self._data


class FileTokenStore:
    """JSON file store with owner-only permissions.

    Writes go to a temporary file in the same directory which is then
    renamed over the target, so a crash mid-write leaves either the old
    pair or the new pair on disk.
    """

    def __init__(self, path: Path):
        self.path = Path(path).expanduser()

    def load(self) -> Optional[Tuple[str, Dict[str, Any]]]:
        """
        Load the persisted pair.

        Returns:
            ``(token, user)`` or None when nothing usable is stored. A file
            holding only one of the two values is treated as invalid and removed.
        """
        if not self.path.exists():
            return None

        try:
            with open(self.path, 'r') as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning("Discarding unreadable session file %s: %s", self.path, e)
            self.clear()
            return None

        token = data.get(TOKEN_KEY) if isinstance(data, dict) else None
        user = data.get(USER_KEY) if isinstance(data, dict) else None
        if not token or not isinstance(user, dict):
            logger.warning("Discarding incomplete session file %s", self.path)
            self.clear()
            return None
        return token, user

    def save(self, token: str, user: Dict[str, Any]) -> None:
        """Write token and user atomically with 0600 permissions."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, prefix=".session-", suffix=".tmp")
        try:
            with os.fdopen(fd, 'w') as f:
                json.dump({TOKEN_KEY: token, USER_KEY: user}, f, indent=2)
            os.chmod(tmp_path, 0o600)  # rw-------
            os.replace(tmp_path, self.path)
        except OSError as e:
            logger.error("Failed to save session to %s: %s", self.path, e)
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
        logger.debug("Session saved to %s", self.path)

    def clear(self) -> None:
        """Remove the stored pair. Missing file is not an error."""
        try:
            self.path.unlink()
            logger.debug("Session file removed")
        except FileNotFoundError:
            pass
