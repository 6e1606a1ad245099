import asyncio
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from loguru import logger
from tenacity import (
    AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt, wait_fixed
)

from .api import BlossomClient, clean_server
from .blob import Blob
from .constants import (
    FULL_PAGE_THRESHOLD, MAX_PAGES, PAGE_LIMIT, PAGE_RETRIES, RETRY_BACKOFF
)
from .errors import BlossomError, TransientNetworkError


@dataclass
class FetchResult:
    """
    Outcome of listing one server.
    `complete` is True only when the listing was read to its natural end, so
    an empty complete result means the server really holds nothing.
    """
    server_url: str
    blobs: List[Blob] = field(default_factory=list)
    complete: bool = False
    error: Optional[str] = None
    pages: int = 0


class PaginatedListFetcher:
    def __init__(self, client: BlossomClient, page_limit: int = PAGE_LIMIT,
                 full_page: int = FULL_PAGE_THRESHOLD, max_pages: int = MAX_PAGES,
                 retries: int = PAGE_RETRIES, backoff: float = RETRY_BACKOFF):
        self.client = client
        self.page_limit = page_limit
        self.full_page = full_page
        self.max_pages = max_pages
        self.retries = retries
        self.backoff = backoff

    async def _fetch_page(self, server: str, pubkey: str, auth_header: Optional[str],
                          cursor: Optional[str]) -> List[Blob]:
        def log_retry(state: RetryCallState):
            logger.warning(f"Retrying page of {server} ({state.attempt_number}/{self.retries}): {state.outcome.exception()}")

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.retries + 1),
            wait=wait_fixed(self.backoff),
            retry=retry_if_exception_type(TransientNetworkError),
            before_sleep=log_retry,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await self.client.list_page(server, pubkey, auth_header, cursor, self.page_limit)

    async def fetch_all(self, server_url: str, pubkey: str, auth_header: Optional[str] = None) -> FetchResult:
        """List every blob of `pubkey` on one server. Never raises except on cancellation."""
        server = clean_server(server_url)
        result = FetchResult(server_url=server)
        seen = set()
        cursor = None
        last_cursor = None

        try:
            while True:
                if result.pages >= self.max_pages:
                    result.error = f"stopped after {self.max_pages} pages"
                    logger.warning(f"{server}: {result.error}")
                    return result

                page = await self._fetch_page(server, pubkey, auth_header, cursor)
                result.pages += 1
                for blob in page:
                    if blob.sha256 not in seen:
                        seen.add(blob.sha256)
                        result.blobs.append(blob)
                logger.info(f"{server}: page {result.pages} returned {len(page)} blobs")

                if len(page) < self.full_page:
                    result.complete = True
                    return result

                last_cursor, cursor = cursor, page[-1].sha256
                if cursor == last_cursor:
                    result.error = "server repeated the same page"
                    logger.warning(f"{server}: {result.error}, stopping")
                    return result
        except BlossomError as e:
            result.error = str(e)
            logger.warning(f"Failed to list {server}: {e}")
        except Exception as e:
            result.error = repr(e)
            logger.error(f"Unexpected error listing {server}: {e!r}")
        return result

    async def fetch_many(self, servers: List[str], pubkey: str,
                         auth_headers: Optional[Dict[str, Optional[str]]] = None) -> List[FetchResult]:
        """One task per server; results come back in server order."""
        auth_headers = auth_headers or {}
        tasks = [
            self.fetch_all(server, pubkey, auth_headers.get(server) or auth_headers.get(clean_server(server)))
            for server in servers
        ]
        return list(await asyncio.gather(*tasks))
