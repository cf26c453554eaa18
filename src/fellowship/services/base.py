"""Shared plumbing for the resource caches."""

import logging
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Optional

from ..api_client import FellowshipClient
from ..core.logging_config import operation_var
from ..exceptions import FellowshipError, PermissionDeniedError
from ..schemas import Identity
from .session import SessionStore

logger = logging.getLogger(__name__)

# Session generation at the start of the innermost running operation.
_operation_generation: ContextVar[Optional[int]] = ContextVar("operation_generation", default=None)


class ResourceCache:
    """Base for caches that are written only by their own operations.

    Subclasses wrap each operation in ``_operation()``, which keeps
    ``loading`` true for its duration on every exit path and yields the
    session generation so late results can be dropped after a logout.
    """

    name = "cache"

    def __init__(self, api: FellowshipClient, session: SessionStore) -> None:
        self._api = api
        self._session = session
        self._pending = 0
        self.error: Optional[str] = None
        session.add_teardown_hook(self.clear)

    @property
    def loading(self) -> bool:
        return self._pending > 0

    @property
    def identity(self) -> Optional[Identity]:
        return self._session.identity

    @contextmanager
    def _operation(self, name: str) -> Iterator[int]:
        token = operation_var.set(f"{self.name}.{name}")
        generation = self._session.generation
        generation_token = _operation_generation.set(generation)
        self._pending += 1
        try:
            yield generation
        finally:
            self._pending -= 1
            _operation_generation.reset(generation_token)
            operation_var.reset(token)

    def _current(self, generation: int) -> bool:
        if generation != self._session.generation:
            logger.debug("Dropping %s result that arrived after logout", self.name)
            return False
        return True

    def _outlived_session(self) -> bool:
        """True when the running operation started before the latest logout."""
        generation = _operation_generation.get()
        return generation is not None and generation != self._session.generation

    def _fail(self, message: str, exc: FellowshipError) -> None:
        """Record a collaborator failure; cached data is left as it was."""
        if self._outlived_session():
            logger.debug("Not recording %s failure after logout: %s", self.name, message)
        else:
            self.error = message
        logging.getLogger(type(self).__module__).warning(
            "%s: %s", message, exc.message,
            extra={"failure": exc.to_dict(), "status": exc.status_code},
        )

    def _deny(self, exc: PermissionDeniedError) -> None:
        if not self._outlived_session():
            self.error = exc.message
        logging.getLogger(type(self).__module__).warning(
            "Permission denied: %s", exc.message, extra={"action": exc.action},
        )

    def clear(self) -> None:
        self.error = None
