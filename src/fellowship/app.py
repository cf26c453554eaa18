"""Composition root: wires configuration, API client, session, caches and gate.

    async with Fellowship() as app:
        await app.start()
        if not app.session.is_live:
            await app.login("pastor", "secret")
        await app.groups.fetch_all_groups()
"""

import logging
from datetime import datetime
from typing import Any, Callable, Iterable, Optional

import httpx

from .api_client import FellowshipClient
from .core.config import Settings, settings as default_settings
from .core.logging_config import setup_logging
from .schemas import Household, Identity
from .services.event_service import EventCache
from .services.gate import AuthorizationGate
from .services.group_service import GroupCache
from .services.household_service import create_household
from .services.search import church_user_search, person_search
from .services.session import Navigate, SessionStore
from .storage import FileTokenStore, TokenStore

logger = logging.getLogger(__name__)


class Fellowship:
    """One client session against one church administration API."""

    def __init__(
        self,
        config: Optional[Settings] = None,
        *,
        token_store: Optional[TokenStore] = None,
        navigate: Optional[Navigate] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Optional[Callable[[], datetime]] = None,
        configure_logging: bool = True,
    ) -> None:
        self.settings = config or default_settings
        if configure_logging:
            setup_logging(self.settings.log_level, self.settings.log_format)
        self.api = FellowshipClient(config=self.settings, transport=transport)
        self.token_store = token_store or FileTokenStore(self.settings.token_store_path)
        self.session = SessionStore(
            self.api,
            self.token_store,
            idle_timeout=self.settings.idle_timeout_seconds,
            navigate=navigate,
        )
        self.groups = GroupCache(self.api, self.session)
        self.events = EventCache(self.api, self.session, clock=clock)
        self.gate = AuthorizationGate(self.session)

    async def start(self) -> Optional[Identity]:
        """Restore a persisted session, if any, and load its group data."""
        identity = self.session.restore_from_persistence()
        if identity is not None:
            await self._load_session_data()
        return identity

    async def login(self, username: str, password: str) -> Identity:
        identity = await self.session.login(username, password)
        await self._load_session_data()
        return identity

    def logout(self) -> None:
        self.session.logout()

    async def _load_session_data(self) -> None:
        await self.groups.fetch_user_groups()
        await self.groups.fetch_group_stats()

    async def create_household(self, data: Any) -> Household:
        return await create_household(self.api, self.session.identity, data)

    def person_search(self, exclude_ids: Iterable[str] = ()):
        return person_search(self.api, exclude_ids=exclude_ids)

    def church_user_search(self, role: Optional[str] = None, exclude_ids: Iterable[str] = ()):
        return church_user_search(self.api, role=role, exclude_ids=exclude_ids)

    async def aclose(self) -> None:
        """Stop the idle watchdog and close the HTTP client. Persisted state is kept."""
        self.session.close()
        await self.api.close()

    async def __aenter__(self) -> "Fellowship":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()
