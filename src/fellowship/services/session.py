"""Session store and idle watchdog.

A session is live iff an identity is held and its token is persisted.
Logout is reached by an explicit call, by idle expiry or by a 401 from
any API call. It is idempotent: only the first call against a live
session has side effects.

Every logout bumps ``generation``. Cache operations capture the generation
before awaiting the API and drop their result if it changed, so a response
that lands after logout cannot resurrect cleared state.
"""

import asyncio
import logging
from typing import Callable, List, Optional

from pydantic import ValidationError as SchemaError

from ..api_client import FellowshipClient
from ..core.config import settings
from ..exceptions import AuthError, FellowshipError
from ..schemas import Identity
from ..storage import TokenStore

logger = logging.getLogger(__name__)

LOGIN_PATH = "/login"
HOME_PATH = "/"

# User-activity signals that push the idle deadline out.
ACTIVITY_SIGNALS = frozenset({"mousedown", "mousemove", "keypress", "scroll", "touchstart"})

Navigate = Callable[[str], None]
TeardownHook = Callable[[], None]


def _log_navigation(path: str) -> None:
    logger.debug("Navigate to %s", path)


class IdleWatchdog:
    """One-shot timer that fires *on_expire* after *timeout* seconds of quiet.

    ``reset()`` moves the deadline to ``now + timeout``. The timer lives on
    the running asyncio loop, so ``arm()`` and ``reset()`` must be called
    from a coroutine or loop callback.
    """

    def __init__(self, timeout: float, on_expire: Callable[[], None]) -> None:
        self.timeout = timeout
        self._on_expire = on_expire
        self._handle: Optional[asyncio.TimerHandle] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def active(self) -> bool:
        return self._handle is not None

    @property
    def deadline(self) -> Optional[float]:
        """Loop time at which the watchdog fires, or None when disarmed."""
        return self._handle.when() if self._handle else None

    def arm(self) -> None:
        self.cancel()
        self._loop = asyncio.get_running_loop()
        self._handle = self._loop.call_later(self.timeout, self._fire)

    def reset(self) -> None:
        """Restart the countdown. No-op while disarmed."""
        if self._handle is not None:
            self.arm()

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        self._handle = None
        logger.info("No user activity for %.0fs; logging out", self.timeout)
        self._on_expire()


class SessionStore:
    """Holds the live identity and token and owns their lifecycle.

    Args:
        api: API client. The store installs itself as the client's token
             provider and registers ``logout`` as its 401 hook.
        store: Persistence for the ``(token, user)`` pair.
        idle_timeout: Seconds of inactivity before automatic logout.
        navigate: Called with ``"/"`` after login and ``"/login"`` after logout.
    """

    def __init__(
        self,
        api: FellowshipClient,
        store: TokenStore,
        idle_timeout: Optional[float] = None,
        navigate: Optional[Navigate] = None,
    ) -> None:
        self._api = api
        self._store = store
        self._navigate = navigate or _log_navigation
        self._identity: Optional[Identity] = None
        self._token: Optional[str] = None
        self._generation = 0
        self._teardown_hooks: List[TeardownHook] = []
        self.watchdog = IdleWatchdog(
            idle_timeout if idle_timeout is not None else settings.idle_timeout_seconds,
            self.logout,
        )

        api.set_token_provider(lambda: self._token)
        api.on_unauthorized(self.logout)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def identity(self) -> Optional[Identity]:
        return self._identity

    @property
    def token(self) -> Optional[str]:
        return self._token

    @property
    def is_live(self) -> bool:
        return self._identity is not None and self._token is not None

    @property
    def generation(self) -> int:
        """Incremented on every logout; used to discard late results."""
        return self._generation

    def add_teardown_hook(self, hook: TeardownHook) -> None:
        """Register a callback run on logout (per-session caches clear here)."""
        self._teardown_hooks.append(hook)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def restore_from_persistence(self) -> Optional[Identity]:
        """Hydrate the session from storage without contacting the API.

        The cached identity is trusted until an API call answers 401.
        Must run inside the event loop because it arms the idle watchdog.
        """
        stored = self._store.load()
        if stored is None:
            return None

        token, user = stored
        try:
            identity = Identity.model_validate(user)
        except SchemaError as e:
            logger.warning("Discarding persisted identity that no longer parses: %s", e)
            self._store.clear()
            return None

        self._set_session(token, identity)
        logger.info("Session restored", extra={"user_id": identity.id})
        return identity

    async def login(self, username: str, password: str) -> Identity:
        """Authenticate and start a session.

        Raises:
            AuthError: Invalid credentials or no response from the server.
                       The message is suitable for display as-is.
        """
        try:
            result = await self._api.auth.login(username, password)
        except AuthError:
            logger.info("Login rejected", extra={"username": username})
            raise
        except FellowshipError as e:
            logger.warning("Login failed: %s", e.message)
            raise AuthError(e.message) from e

        if self.is_live:
            self._teardown(navigate=False)

        self._store.save(result.token, result.user.model_dump(by_alias=True, mode="json"))
        self._set_session(result.token, result.user)
        logger.info("Login succeeded", extra={"user_id": result.user.id, "role": result.user.role})
        self._navigate(HOME_PATH)
        return result.user

    def logout(self) -> None:
        """End the session. Calling it without a live session does nothing."""
        if not self.is_live:
            return
        user_id = self._identity.id if self._identity else None
        self._teardown(navigate=True)
        logger.info("Logged out", extra={"user_id": user_id})

    def record_activity(self, signal: str = "mousemove") -> None:
        """Feed one user-activity signal to the idle watchdog."""
        if signal not in ACTIVITY_SIGNALS:
            logger.debug("Ignoring unknown activity signal %r", signal)
            return
        if self.is_live:
            self.watchdog.reset()

    def navigate(self, path: str) -> None:
        self._navigate(path)

    def close(self) -> None:
        """Release the watchdog without touching persisted state."""
        self.watchdog.cancel()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _set_session(self, token: str, identity: Identity) -> None:
        self._token = token
        self._identity = identity
        self.watchdog.arm()

    def _teardown(self, navigate: bool) -> None:
        self.watchdog.cancel()
        self._identity = None
        self._token = None
        self._generation += 1
        self._store.clear()
        for hook in list(self._teardown_hooks):
            try:
                hook()
            except Exception:
                logger.exception("Session teardown hook %r failed", hook)
        if navigate:
            self._navigate(LOGIN_PATH)
