"""Debounced search-as-you-type for people and church users."""

import asyncio
import logging
from typing import Awaitable, Callable, Generic, Iterable, List, Optional, TypeVar

from ..api_client import FellowshipClient
from ..core.config import settings
from ..exceptions import FellowshipError
from ..schemas import Identity, Person

logger = logging.getLogger(__name__)

T = TypeVar("T", Person, Identity)

SearchFn = Callable[[str], Awaitable[List[T]]]


class DebouncedSearch(Generic[T]):
    """Run *search* once typing pauses for *delay* seconds.

    ``feed()`` is called on every keystroke. Queries shorter than
    *min_chars* clear the results without a request. Each query gets a
    sequence number and only the newest one may publish results, so a slow
    response for an old query never overwrites a newer one.
    """

    def __init__(
        self,
        search: SearchFn,
        exclude_ids: Iterable[str] = (),
        delay: Optional[float] = None,
        min_chars: Optional[int] = None,
        on_results: Optional[Callable[[List[T]], None]] = None,
    ) -> None:
        self._search = search
        self.exclude_ids = set(exclude_ids)
        self.delay = settings.search_debounce_seconds if delay is None else delay
        self.min_chars = settings.search_min_chars if min_chars is None else min_chars
        self._on_results = on_results
        self._task: Optional[asyncio.Task] = None
        self._seq = 0
        self.query = ""
        self.results: List[T] = []
        self.loading = False

    def feed(self, query: str) -> None:
        """Record the latest input and (re)schedule the search."""
        self.query = query
        self._seq += 1
        self._cancel_pending()
        if len(query.strip()) < self.min_chars:
            self._publish([])
            return
        self._task = asyncio.get_running_loop().create_task(self._run(query.strip(), self._seq))

    async def _run(self, query: str, seq: int) -> None:
        await asyncio.sleep(self.delay)
        self.loading = True
        try:
            found = await self._search(query)
        except FellowshipError as e:
            logger.warning("Search for %r failed: %s", query, e.message)
            found = []
        finally:
            if seq == self._seq:
                self.loading = False
        if seq != self._seq:
            logger.debug("Dropping stale results for %r", query)
            return
        self._publish([item for item in found if item.id not in self.exclude_ids])

    def _publish(self, results: List[T]) -> None:
        self.results = results
        if self._on_results:
            self._on_results(results)

    def _cancel_pending(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    async def wait(self) -> List[T]:
        """Wait for the scheduled search, if any, and return the results."""
        task = self._task
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass
        return self.results

    def clear(self) -> None:
        self._seq += 1
        self._cancel_pending()
        self.query = ""
        self.loading = False
        self._publish([])


def person_search(api: FellowshipClient, exclude_ids: Iterable[str] = (), **kwargs) -> DebouncedSearch[Person]:
    return DebouncedSearch(api.people.search, exclude_ids=exclude_ids, **kwargs)


def church_user_search(
    api: FellowshipClient,
    role: Optional[str] = None,
    exclude_ids: Iterable[str] = (),
    **kwargs,
) -> DebouncedSearch[Identity]:
    async def search(query: str) -> List[Identity]:
        return await api.church_users.search(query, role=role)

    return DebouncedSearch(search, exclude_ids=exclude_ids, **kwargs)
