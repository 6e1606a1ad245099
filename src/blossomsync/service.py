import asyncio
import time
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import (
    Callable, Dict, FrozenSet, Iterable, List, Optional, Sequence, Tuple, Union
)

from loguru import logger

from .api import BlossomClient, UploadResult, clean_server
from .auth import encode_auth_header
from .blob import Blob, Tag
from .constants import ERROR_CODES
from .errors import BlossomError, SignatureRequiredError
from .events import delete_auth_event, file_metadata_event, list_auth_event, upload_auth_event
from .fetcher import FetchResult, PaginatedListFetcher
from .merger import RegistryMerger, servers_per_hash
from .metadata import MetadataRecord
from .nostr import Discovery, RelayDiscovery, RelayPool, Signer
from .store import LibraryStore
from .tiers import CacheTierManager, SyncReport
from .uploader import UploadCoordinator, UploadOutcome, mirror_to, sign_or_raise
from .vault import BlobVault, DiskCache
from .views import ViewFilter, view as select_view


@dataclass(frozen=True)
class LibraryState:
    """Immutable snapshot handed to readers. Only LibraryService creates new ones."""
    registry: Tuple[Blob, ...] = ()
    trash: Tuple[Blob, ...] = ()
    metadata: Dict[str, List[Tag]] = field(default_factory=dict)
    servers: Tuple[str, ...] = ()
    local_server_url: Optional[str] = None
    vaulted: FrozenSet[str] = frozenset()
    locally_cached: FrozenSet[str] = frozenset()
    discovered: Tuple[Blob, ...] = ()
    loading: bool = False
    error: Optional[str] = None
    diagnostics: Tuple[str, ...] = ()
    vault_progress: Optional[str] = None
    local_progress: Optional[str] = None


Listener = Callable[[LibraryState], None]


class LibraryService:
    """
    Single writer of the registry, trash and file metadata.

    Every intent computes the new registry/trash pair through RegistryMerger
    and commits it with one store write, then notifies subscribers.
    """

    def __init__(self, pubkey: str, client: BlossomClient, store: LibraryStore, vault: BlobVault,
                 signer: Optional[Signer] = None, relays: Optional[RelayPool] = None,
                 servers: Optional[Sequence[str]] = None, disk_cache: Optional[DiskCache] = None,
                 merger: Optional[RegistryMerger] = None, fetcher: Optional[PaginatedListFetcher] = None,
                 tiers: Optional[CacheTierManager] = None):
        self.pubkey = pubkey
        self.client = client
        self.store = store
        self.vault = vault
        self.signer = signer
        self.relays = relays
        self.merger = merger or RegistryMerger()
        self.fetcher = fetcher or PaginatedListFetcher(client)
        self.tiers = tiers or CacheTierManager(client, vault, store, disk_cache)

        self.configured_servers: List[str] = [
            clean_server(s) for s in (servers if servers is not None else store.servers)
        ]
        registry, trash, self.metadata = store.load_state()
        self._listeners: List[Listener] = []
        self._refresh_task: Optional[asyncio.Task] = None
        self._generation = 0
        self._last_auth_headers: Dict[str, str] = {}

        self._state = LibraryState(
            registry=tuple(registry),
            trash=tuple(trash),
            metadata=self.metadata.snapshot(),
            local_server_url=store.local_server_url,
            vaulted=frozenset(vault.vaulted_hashes()),
            locally_cached=frozenset(store.locally_cached_hashes()),
        )
        self._state = replace(self._state, servers=self._known_servers(registry))

    # -- snapshots ---------------------------------------------------------

    @property
    def snapshot(self) -> LibraryState:
        return self._state

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Call `listener` with every new snapshot. Returns an unsubscribe function."""
        self._listeners.append(listener)
        listener(self._state)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _publish(self, **changes):
        self._state = replace(self._state, **changes)
        for listener in list(self._listeners):
            listener(self._state)

    def _known_servers(self, registry: Iterable[Blob]) -> Tuple[str, ...]:
        servers = set(self.configured_servers)
        servers.update(b.server_url for b in registry if b.server_url)
        if self._state.local_server_url:
            servers.add(clean_server(self._state.local_server_url))
        return tuple(sorted(servers))

    def _commit(self, registry: Sequence[Blob], trash: Sequence[Blob], **changes):
        """Persist and publish. Never awaits, so no other intent can interleave."""
        self.store.save_state(registry, trash, self.metadata)
        self._publish(
            registry=tuple(registry),
            trash=tuple(trash),
            metadata=self.metadata.snapshot(),
            servers=self._known_servers(registry),
            **changes,
        )

    @property
    def remote_servers(self) -> List[str]:
        local = clean_server(self._state.local_server_url or "")
        return [s for s in self.configured_servers if s != local]

    def set_servers(self, servers: Iterable[str]):
        self.configured_servers = list(dict.fromkeys(clean_server(s) for s in servers))
        self.store.save_servers(self.configured_servers)
        self._publish(servers=self._known_servers(self._state.registry))

    def view(self, selector: Optional[str] = None, view_filter: Optional[ViewFilter] = None) -> List[Blob]:
        return select_view(self._state, selector, view_filter)

    # -- signing -------------------------------------------------------------

    async def _signed_header(self, event: dict) -> str:
        if self.signer is None:
            raise SignatureRequiredError(ERROR_CODES['SIGNATURE_REQUIRED'])
        return encode_auth_header(await sign_or_raise(self.signer, event))

    async def _list_headers(self, servers: List[str]) -> Dict[str, str]:
        headers = {}
        for server in servers:
            try:
                headers[server] = await self._signed_header(list_auth_event(self.pubkey, server))
            except SignatureRequiredError:
                if server in self._last_auth_headers:
                    headers[server] = self._last_auth_headers[server]
        return headers

    # -- refresh -------------------------------------------------------------

    async def refresh(self, auth_headers: Optional[Dict[str, str]] = None,
                      sync: bool = True) -> Optional[List[FetchResult]]:
        """
        List every remote server and merge the results.
        A newer refresh cancels this one; a superseded refresh returns None
        and never commits.
        """
        servers = self.remote_servers
        if not servers:
            self._publish(error=ERROR_CODES['NO_SERVERS'])
            return None

        if self._refresh_task is not None and not self._refresh_task.done():
            logger.debug("Cancelling in-flight refresh")
            self._refresh_task.cancel()

        self._generation += 1
        generation = self._generation
        task = asyncio.ensure_future(self._run_refresh(servers, auth_headers, generation))
        self._refresh_task = task
        try:
            results = await task
        except asyncio.CancelledError:
            if generation != self._generation:
                return None
            raise

        if results is not None and sync:
            await self.sync_tiers()
        return results

    async def _run_refresh(self, servers: List[str], auth_headers: Optional[Dict[str, str]],
                           generation: int) -> Optional[List[FetchResult]]:
        started = {b.key for b in self._state.registry}
        self._publish(loading=not self._state.registry, error=None)
        headers = dict(auth_headers) if auth_headers else await self._list_headers(servers)
        if not headers:
            headers = dict(self._last_auth_headers)

        results = await self.fetcher.fetch_many(servers, self.pubkey, headers)
        if generation != self._generation:
            return None

        # Entries committed while the listing was in flight postdate it
        known = [b for b in self._state.registry if b.key in started]
        newer = [b for b in self._state.registry if b.key not in started]
        registry, trash = self.merger.merge(known, results, self._state.trash)
        if newer:
            registry, trash = self.merger.upsert(registry, trash, newer)
        diagnostics = tuple(f"{r.server_url}: {r.error}" for r in results if not r.complete)
        error = None
        if results and all(not r.complete for r in results):
            error = "All servers failed"
        self._last_auth_headers.update(headers)
        self._commit(registry, trash, loading=False, error=error, diagnostics=diagnostics)
        logger.info(f"Refresh: {len(registry)} blobs hosted, {len(trash)} in trash, "
                    f"{len(diagnostics)} servers failed")
        return results

    # -- tiers ---------------------------------------------------------------

    def scan_vault(self):
        """Adopt vault files that no server holds as Trash records."""
        vault_blobs = self.vault.scan_blobs()
        registry, trash = self.merger.adopt_vaulted(self._state.registry, self._state.trash, vault_blobs)
        if len(trash) != len(self._state.trash):
            self._commit(registry, trash, vaulted=frozenset(self.vault.vaulted_hashes()))
        else:
            self._publish(vaulted=frozenset(self.vault.vaulted_hashes()))

    async def sync_tiers(self) -> List[SyncReport]:
        reports = []

        def vault_progress(done, total):
            self._publish(vault_progress=f"Securing to Vault: {done} / {total}")

        reports.append(await self.tiers.sync_vault(self._state.registry, vault_progress))
        self._publish(vault_progress=None)
        self.scan_vault()

        local = self._state.local_server_url
        if local:
            def local_progress(done, total):
                self._publish(local_progress=f"Syncing to local: {done} / {total}")

            blobs = list(self._state.registry) + list(self._state.trash)
            reports.append(await self.tiers.sync_local_cache(blobs, local, local_progress))
            self._publish(local_progress=None,
                          locally_cached=frozenset(self.store.locally_cached_hashes()))
        return reports

    async def detect_local_cache(self) -> Optional[str]:
        url = await self.client.detect_local_cache()
        self.store.save_local_server(url)
        self._publish(local_server_url=url)
        self._publish(servers=self._known_servers(self._state.registry))
        return url

    # -- delete --------------------------------------------------------------

    def _representative(self, sha256: str) -> Optional[Blob]:
        for blob in list(self._state.registry) + list(self._state.trash) + list(self._state.discovered):
            if blob.sha256 == sha256:
                return blob
        return None

    async def _delete_instance(self, sha256: str, server: str) -> bool:
        try:
            header = await self._signed_header(delete_auth_event(self.pubkey, sha256, server))
            await self.client.delete(server, sha256, header)
            return True
        except BlossomError as e:
            logger.warning(f"Delete of {sha256} on {server} failed: {e}")
            return False

    async def _vault_before_delete(self, sha256: str, instances: List[Blob]):
        if self.vault.contains(sha256):
            return
        urls = [b.url for b in instances]
        if not await self.tiers.vault_one(sha256, urls, instances[0].extension):
            logger.warning(f"Deleting the last hosted copy of {sha256} without a vault copy")

    async def bulk_delete(self, hashes: Iterable[str], servers: Optional[Iterable[str]] = None) -> SyncReport:
        """Delete hashes from `servers` (every hosting server if None); one commit at the end."""
        hashes = list(dict.fromkeys(hashes))
        targets = {clean_server(s) for s in servers} if servers is not None else None
        instances = [
            b for b in self._state.registry
            if b.sha256 in hashes and (targets is None or b.server_url in targets)
        ]
        report = SyncReport("Delete", total=len(instances))

        hosted = servers_per_hash(self._state.registry)
        for sha256 in hashes:
            doomed = [b for b in instances if b.sha256 == sha256]
            if doomed and len(doomed) == len(hosted.get(sha256, [])):
                await self._vault_before_delete(sha256, doomed)

        outcomes = await asyncio.gather(*(self._delete_instance(b.sha256, b.server_url) for b in instances))
        removed = [b.key for b, ok in zip(instances, outcomes) if ok]
        report.succeeded = len(removed)
        report.failed = report.total - report.succeeded

        registry, trash = self.merger.remove_instances(self._state.registry, self._state.trash, removed)
        self._commit(registry, trash, vaulted=frozenset(self.vault.vaulted_hashes()),
                     error=report.message if report.failed else None)
        logger.info(report.message)
        return report

    async def delete(self, sha256: str, server_url: Optional[str] = None) -> SyncReport:
        return await self.bulk_delete([sha256], [server_url] if server_url else None)

    # -- mirror --------------------------------------------------------------

    async def _mirror_hash(self, sha256: str, servers: List[str]) -> Tuple[List[Blob], int]:
        """Copy one hash to the servers that lack it. Returns (new blobs, failures)."""
        source = self._representative(sha256)
        if source is None:
            logger.warning(f"Unknown blob {sha256}, nothing to mirror")
            return [], 1
        hosting = set(servers_per_hash(self._state.registry).get(sha256, []))
        targets = [s for s in servers if s not in hosting]
        if not targets:
            return [], 0

        try:
            header = await self._signed_header(upload_auth_event(
                self.pubkey, sha256, source.size, source.mime_type,
                source.name(self.metadata.tags(sha256)),
            ))
        except SignatureRequiredError as e:
            logger.warning(f"Cannot mirror {sha256}: {e}")
            return [], len(targets)

        vault_file = self.vault.find(sha256)
        if vault_file is not None:
            with open(vault_file, 'rb') as f:
                data = f.read()

            async def upload(server):
                try:
                    return await self.client.upload(server, data, sha256, header, source.mime_type)
                except BlossomError as e:
                    logger.warning(f"Upload of {sha256} to {server} failed: {e}")
                    return e

            results = await asyncio.gather(*(upload(s) for s in targets))
        else:
            results = await mirror_to(self.client, targets, source.url, header)

        added = [
            source.with_server(server, result.url)
            for server, result in zip(targets, results) if isinstance(result, UploadResult)
        ]
        return added, len(targets) - len(added)

    async def bulk_mirror(self, hashes: Iterable[str], servers: Optional[Iterable[str]] = None) -> SyncReport:
        servers = [clean_server(s) for s in servers] if servers is not None else self.remote_servers
        hashes = list(dict.fromkeys(hashes))
        outcomes = await asyncio.gather(*(self._mirror_hash(h, servers) for h in hashes))

        added = [b for blobs, _ in outcomes for b in blobs]
        report = SyncReport("Mirror", succeeded=len(added), failed=sum(f for _, f in outcomes))
        report.total = report.succeeded + report.failed

        registry, trash = self.merger.upsert(self._state.registry, self._state.trash, added)
        self._commit(registry, trash, error=report.message if report.failed else None)
        logger.info(report.message)
        return report

    async def mirror(self, sha256: str, servers: Optional[Iterable[str]] = None) -> SyncReport:
        return await self.bulk_mirror([sha256], servers)

    async def verify_existence(self, sha256: str, server_url: str) -> bool:
        """HEAD one server and record the blob there if it answers."""
        server = clean_server(server_url)
        source = self._representative(sha256)
        if source is None or not await self.client.exists(server, sha256):
            return False
        blob = source.with_server(server, f"{server}/{sha256}")
        registry, trash = self.merger.upsert(self._state.registry, self._state.trash, [blob])
        self._commit(registry, trash)
        return True

    # -- upload --------------------------------------------------------------

    async def upload(self, source: Union[str, Path, bytes], labels: Iterable[str] = (),
                     mime_type: Optional[str] = None, file_name: Optional[str] = None) -> UploadOutcome:
        if self.signer is None:
            raise SignatureRequiredError(ERROR_CODES['SIGNATURE_REQUIRED'])
        labels = list(labels)
        coordinator = UploadCoordinator(self.client, self.signer, self.relays)
        if isinstance(source, bytes):
            outcome = await coordinator.upload(source, self.remote_servers, mime_type, file_name, labels)
        else:
            outcome = await coordinator.upload_file(source, self.remote_servers, mime_type, labels)

        if labels:
            self.metadata.update_labels(outcome.sha256, labels)
        registry, trash = self.merger.upsert(self._state.registry, self._state.trash, outcome.blobs())
        self._commit(registry, trash)
        return outcome

    # -- metadata ------------------------------------------------------------

    async def _publish_metadata(self, sha256: str) -> bool:
        if self.relays is None or self.signer is None:
            return False
        instances = [b for b in self._state.registry if b.sha256 == sha256]
        if not instances:
            return False
        primary = instances[0]
        tags = self.metadata.tags(sha256)
        event = file_metadata_event(
            self.signer.pubkey, sha256, primary.url, primary.mime_type,
            labels=primary.labels(tags), name=primary.name(tags), size=primary.size,
            fallbacks=[b.url for b in instances[1:]],
        )
        try:
            return await self.relays.publish(await sign_or_raise(self.signer, event))
        except Exception as e:
            logger.warning(f"Could not publish labels for {sha256}: {e}")
            return False

    async def bulk_update_labels(self, hashes: Iterable[str], labels: Iterable[str],
                                 name: Optional[str] = None) -> SyncReport:
        """Apply the edit locally in one commit, then announce each file on relays."""
        hashes = list(dict.fromkeys(hashes))
        labels = list(labels)
        now = int(time.time())
        for sha256 in hashes:
            self.metadata.update_labels(sha256, labels, name, now)
        self._commit(self._state.registry, self._state.trash)

        published = await asyncio.gather(*(self._publish_metadata(h) for h in hashes))
        report = SyncReport("Label update", total=len(hashes), succeeded=sum(published))
        report.failed = report.total - report.succeeded
        return report

    async def update_labels(self, sha256: str, labels: Iterable[str], name: Optional[str] = None) -> SyncReport:
        return await self.bulk_update_labels([sha256], labels, name)

    def merge_relay_metadata(self, records: Iterable[MetadataRecord]) -> int:
        changed = self.metadata.merge_records(records)
        if changed:
            self._commit(self._state.registry, self._state.trash)
        return changed

    async def discover(self) -> Discovery:
        """Pull server list, relay list and file metadata from relays."""
        if self.relays is None:
            return Discovery()
        discovery = await RelayDiscovery(self.relays).discover(self.pubkey)
        if discovery.servers:
            self.set_servers(self.configured_servers + discovery.servers)
        if discovery.relays:
            self.store.save_relays(discovery.relays)
        self.metadata.merge_records(discovery.metadata.values())
        self._commit(self._state.registry, self._state.trash, discovered=tuple(discovery.discovered))
        return discovery

    # -- trash ---------------------------------------------------------------

    def empty_trash(self) -> int:
        """Delete the vault files of trashed hashes and forget them."""
        removed = 0
        for blob in self._state.trash:
            if self.vault.delete(blob.sha256):
                removed += 1
        self._commit(self._state.registry, [], vaulted=frozenset(self.vault.vaulted_hashes()))
        logger.info(f"Emptied trash, removed {removed} vault files")
        return removed
