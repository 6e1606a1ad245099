import asyncio
import hashlib
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional

from loguru import logger

from .api import BlossomClient
from .blob import Blob
from .constants import TRANSFER_CONCURRENCY
from .errors import BlossomError
from .store import LibraryStore
from .vault import BlobVault, DiskCache

Progress = Callable[[int, int], None]


@dataclass
class SyncReport:
    op: str
    total: int = 0
    succeeded: int = 0
    failed: int = 0

    @property
    def message(self) -> str:
        return f"{self.op} completed: {self.succeeded} success, {self.failed} failed"


def _urls_by_hash(blobs: Iterable[Blob]) -> Dict[str, List[str]]:
    """Remote URLs of every hash, in registry order."""
    urls: Dict[str, List[str]] = {}
    for blob in blobs:
        entry = urls.setdefault(blob.sha256, [])
        if blob.url.startswith(("http://", "https://")) and blob.url not in entry:
            entry.append(blob.url)
    return urls


class CacheTierManager:
    """
    Copies registry blobs into the on-device vault and the local network
    cache. Both syncs are idempotent: what is already done is re-read from
    disk (vault) or the store (local cache) at the start of every run.
    """

    def __init__(self, client: BlossomClient, vault: BlobVault, store: LibraryStore,
                 disk_cache: Optional[DiskCache] = None, concurrency: int = TRANSFER_CONCURRENCY):
        self.client = client
        self.vault = vault
        self.store = store
        self.disk_cache = disk_cache
        self.concurrency = concurrency

    async def _run(self, op: str, work: Dict[str, List[str]], task, progress: Optional[Progress]) -> SyncReport:
        report = SyncReport(op, total=len(work))
        if not work:
            return report

        semaphore = asyncio.Semaphore(self.concurrency)
        done = 0

        async def run_one(sha256: str, urls: List[str]):
            nonlocal done
            async with semaphore:
                try:
                    ok = await task(sha256, urls)
                except Exception:
                    logger.exception(f"{op}: {sha256} failed")
                    ok = False
            if ok:
                report.succeeded += 1
            else:
                report.failed += 1
            done += 1
            if progress:
                progress(done, report.total)

        await asyncio.gather(*(run_one(sha256, urls) for sha256, urls in work.items()))
        log = logger.info if not report.failed else logger.warning
        log(report.message)
        return report

    async def vault_one(self, sha256: str, urls: List[str], extension: str) -> bool:
        if self.disk_cache is not None:
            data = self.disk_cache.get(sha256)
            if data is not None and hashlib.sha256(data).hexdigest() == sha256:
                self.vault.save_bytes(sha256, data, extension)
                return True

        for url in urls:
            try:
                data = await self.client.download(url)
                self.vault.save_bytes(sha256, data, extension)
                return True
            except BlossomError as e:
                logger.warning(f"Could not vault {sha256} from {url}: {e}")
        return False

    async def sync_vault(self, blobs: Iterable[Blob], progress: Optional[Progress] = None) -> SyncReport:
        blobs = list(blobs)
        vaulted = self.vault.vaulted_hashes()
        extensions = {b.sha256: b.extension for b in blobs}
        work = {h: urls for h, urls in _urls_by_hash(blobs).items() if h not in vaulted}

        async def task(sha256, urls):
            return await self.vault_one(sha256, urls, extensions.get(sha256, ""))

        return await self._run("Vault sync", work, task, progress)

    async def _cache_one(self, sha256: str, urls: List[str], local_url: str) -> bool:
        if await self.client.exists(local_url, sha256):
            self.store.add_locally_cached(sha256)
            return True
        for url in urls:
            try:
                await self.client.fetch_to_local_cache(sha256, url, local_url)
            except BlossomError as e:
                logger.warning(f"Local cache could not fetch {sha256} from {url}: {e}")
                continue
            self.store.add_locally_cached(sha256)
            return True
        return False

    async def sync_local_cache(self, blobs: Iterable[Blob], local_url: str,
                               progress: Optional[Progress] = None) -> SyncReport:
        cached = self.store.locally_cached_hashes()
        work = {h: urls for h, urls in _urls_by_hash(blobs).items() if h not in cached}

        async def task(sha256, urls):
            return await self._cache_one(sha256, urls, local_url)

        return await self._run("Local cache sync", work, task, progress)
