"""Lazy, ordered iteration over paginated search results"""

import asyncio
import collections
import logging
from collections.abc import Awaitable, Callable

from fhir_sdk.model import Resource


class PageStream:
    """
    An async iterator over search result Bundles, following each page's "next" link.

    Pages are requested only as they are consumed. With prefetch=True, the following page is
    requested in the background while the caller works on the current one, but pages are still
    handed out strictly in server order.

    Closing the stream (aclose() or leaving an `async with` block) cancels any outstanding prefetch.
    This is a single-consumer iterator: do not iterate it from several tasks at once.
    """

    def __init__(
        self,
        fetch_first: Callable[[], Awaitable[Resource]],
        fetch_next: Callable[[str], Awaitable[Resource]],
        *,
        prefetch: bool = False,
    ):
        self._fetch_first = fetch_first
        self._fetch_next = fetch_next
        self._prefetch = prefetch
        self._started = False
        self._closed = False
        self._next_url: str | None = None
        self._pending: asyncio.Task | None = None
        self.pages_fetched = 0

    def __aiter__(self):
        return self

    async def __anext__(self) -> Resource:
        if self._closed:
            raise StopAsyncIteration

        try:
            if not self._started:
                self._started = True
                bundle = await self._fetch_first()
            elif self._pending is not None:
                task, self._pending = self._pending, None
                bundle = await task
            elif self._next_url:
                bundle = await self._fetch_next(self._next_url)
            else:
                raise StopAsyncIteration
        except BaseException:
            await self.aclose()
            raise

        self.pages_fetched += 1
        self._next_url = bundle.link_url("next")
        if self._next_url and self._prefetch:
            self._pending = asyncio.ensure_future(self._fetch_next(self._next_url))
        return bundle

    async def aclose(self) -> None:
        self._closed = True
        task, self._pending = self._pending, None
        if task is None:
            return

        task.cancel()
        await asyncio.wait([task])
        if not task.cancelled() and task.exception():
            # The page was never handed out, so nobody else will see this
            logging.debug("Discarded prefetched page failed: %s", task.exception())

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_value, traceback):
        await self.aclose()


class ResourceStream:
    """
    An async iterator over the resources of paginated search results, in server order.

    Every entry resource of every page is yielded (no reordering, no deduplication).
    Use it like:

        async with client.search_all("Observation", query) as observations:
            async for observation in observations:
                ...
    """

    def __init__(self, pages: PageStream):
        self.pages = pages
        self._buffer = collections.deque()

    def __aiter__(self):
        return self

    async def __anext__(self) -> Resource:
        while not self._buffer:
            bundle = await self.pages.__anext__()  # raises StopAsyncIteration when out of pages
            self._buffer.extend(bundle.resources())
        return self._buffer.popleft()

    async def collect(self) -> list[Resource]:
        """Reads every remaining resource into a list"""
        async with self:
            return [resource async for resource in self]

    async def aclose(self) -> None:
        self._buffer.clear()
        await self.pages.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_value, traceback):
        await self.aclose()
