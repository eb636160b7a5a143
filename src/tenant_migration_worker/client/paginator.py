"""Cursor-following enumeration of paged API collections.

Two modes share one primitive:

- page-link mode follows ``@odata.nextLink`` until the service stops
  returning one;
- delta mode does the same from an initial delta URL (or a stored cursor)
  and exposes the terminal ``@odata.deltaLink`` once the pass is complete.

A Paginator is a one-shot, lazy sequence: iterate it once, construct a new
one to enumerate again.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional

from ..utils.cancellation import CancellationToken
from ..utils.rate_limit import ServiceClass
from .session import GraphSession

logger = logging.getLogger(__name__)

NEXT_LINK = "@odata.nextLink"
DELTA_LINK = "@odata.deltaLink"


@dataclass
class Page:
    """One fetched page."""

    number: int
    items: List[Dict[str, Any]] = field(default_factory=list)
    next_link: Optional[str] = None
    delta_link: Optional[str] = None

    @property
    def is_last(self) -> bool:
        return self.next_link is None


class Paginator:
    """Lazy, non-restartable page sequence over a collection URL."""

    def __init__(
        self,
        session: GraphSession,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        service_class: ServiceClass = ServiceClass.GENERAL,
        cancel: Optional[CancellationToken] = None,
        start_cursor: Optional[str] = None,
        delta: bool = False,
    ):
        """Initialize paginator.

        Args:
            session: Tenant session used for every fetch
            url: Collection (or initial delta) URL
            params: Query parameters for the first request only; next and
                delta links already encode them
            service_class: Rate-limit class of the fetches
            cancel: Token checked before every page fetch
            start_cursor: Stored next/delta link to resume from
            delta: Whether this is a delta enumeration
        """
        self.session = session
        self.url = url
        self.params = params
        self.service_class = service_class
        self.cancel = cancel
        self.start_cursor = start_cursor
        self.is_delta = delta

        self.pages_fetched = 0
        self.interrupted = False
        self.delta_link: Optional[str] = None
        self.cursor: Optional[str] = start_cursor
        self._consumed = False

    @classmethod
    def page_links(
        cls,
        session: GraphSession,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        service_class: ServiceClass = ServiceClass.GENERAL,
        cancel: Optional[CancellationToken] = None,
    ) -> "Paginator":
        """Plain next-link enumeration."""
        return cls(session, url, params=params, service_class=service_class, cancel=cancel)

    @classmethod
    def delta(
        cls,
        session: GraphSession,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        service_class: ServiceClass = ServiceClass.GENERAL,
        cancel: Optional[CancellationToken] = None,
        cursor: Optional[str] = None,
    ) -> "Paginator":
        """Delta enumeration, resuming from `cursor` when one is stored."""
        return cls(
            session,
            url,
            params=params,
            service_class=service_class,
            cancel=cancel,
            start_cursor=cursor,
            delta=True,
        )

    @property
    def complete(self) -> bool:
        """True once the final page has been fetched."""
        return self._consumed and not self.interrupted and self.cursor is None

    async def pages(self) -> AsyncIterator[Page]:
        """Yield pages until the collection (or the delta pass) is exhausted.

        Raises:
            RuntimeError: If the paginator has already been iterated
        """
        if self._consumed:
            raise RuntimeError("Paginator already consumed; create a new one to re-enumerate")
        self._consumed = True

        if self.start_cursor:
            url, params = self.start_cursor, None
        else:
            url, params = self.url, self.params

        while url:
            if self.cancel is not None and await self.cancel.should_stop():
                self.interrupted = True
                self.cursor = url
                logger.info(
                    "Pagination interrupted: pages_fetched=%s, reason=%s",
                    self.pages_fetched,
                    self.cancel.reason.value if self.cancel.reason else None,
                )
                return

            data = await self.session.get(url, params=params, service_class=self.service_class)
            self.pages_fetched += 1

            next_link = data.get(NEXT_LINK)
            delta_link = data.get(DELTA_LINK)
            if delta_link:
                self.delta_link = delta_link
            self.cursor = next_link

            yield Page(
                number=self.pages_fetched,
                items=list(data.get("value", [])),
                next_link=next_link,
                delta_link=delta_link,
            )

            url, params = next_link, None

    async def items(self) -> AsyncIterator[Dict[str, Any]]:
        """Flatten pages into one lazy item sequence."""
        async for page in self.pages():
            for item in page.items:
                yield item

    async def collect(self) -> List[Dict[str, Any]]:
        """Materialize every item (small collections only)."""
        return [item async for item in self.items()]
