from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from loguru import logger

from .blob import Blob
from .fetcher import FetchResult

Registry = List[Blob]
Trash = List[Blob]
Key = Tuple[str, Optional[str]]


def sort_blobs(blobs: Iterable[Blob]) -> List[Blob]:
    """Newest first; blobs without a timestamp go last. Stable."""
    return sorted(blobs, key=lambda b: (b.created is None, -b.creation_time))


def hashes(blobs: Iterable[Blob]) -> set:
    return {b.sha256 for b in blobs}


def prune_trash(trash: Iterable[Blob], hosted: set) -> Trash:
    """Drop hosted hashes and duplicates from Trash."""
    result = []
    seen = set()
    for blob in trash:
        if blob.sha256 in hosted or blob.sha256 in seen:
            continue
        seen.add(blob.sha256)
        result.append(blob if blob.server_url is None else blob.orphaned())
    return result


class RegistryMerger:
    """
    Folds per-server listings into the registry and keeps Trash disjoint
    from it. All operations are pure: they take the current pair and
    return a new one.
    """

    def __init__(self, media_only: bool = True):
        self.media_only = media_only

    def _accept(self, blob: Blob) -> bool:
        return blob.is_media or not self.media_only

    def merge(self, registry: Sequence[Blob], results: Sequence[FetchResult],
              trash: Sequence[Blob] = ()) -> Tuple[Registry, Trash]:
        index: Dict[Key, Blob] = {b.key: b for b in registry}

        for result in results:
            for blob in result.blobs:
                if self._accept(blob):
                    index[blob.key] = blob

        for result in results:
            if not result.complete:
                continue
            fresh = hashes(result.blobs)
            stale = [k for k in index if k[1] == result.server_url and k[0] not in fresh]
            for key in stale:
                del index[key]
            if stale:
                logger.info(f"{result.server_url}: {len(stale)} blobs no longer listed")

        new_registry = sort_blobs(index.values())
        hosted = hashes(new_registry)

        orphans: Dict[str, List[Blob]] = {}
        for blob in registry:
            if blob.sha256 not in hosted:
                orphans.setdefault(blob.sha256, []).append(blob)

        new_trash = list(trash)
        if orphans:
            if all(r.complete for r in results):
                logger.info(f"Moving {len(orphans)} unhosted blobs to trash")
                new_trash.extend(instances[0].orphaned() for instances in orphans.values())
            else:
                # Absence is not confirmed while any server failed
                kept = [b for instances in orphans.values() for b in instances]
                new_registry = sort_blobs(new_registry + kept)
                hosted = hashes(new_registry)

        return new_registry, prune_trash(new_trash, hosted)

    def upsert(self, registry: Sequence[Blob], trash: Sequence[Blob],
               blobs: Iterable[Blob]) -> Tuple[Registry, Trash]:
        """Add or replace blobs that are known to be hosted (uploads, mirrors, HEAD checks)."""
        index: Dict[Key, Blob] = {b.key: b for b in registry}
        for blob in blobs:
            if blob.server_url is None:
                continue
            index[blob.key] = blob
        new_registry = sort_blobs(index.values())
        return new_registry, prune_trash(trash, hashes(new_registry))

    def remove_instances(self, registry: Sequence[Blob], trash: Sequence[Blob],
                         pairs: Iterable[Key]) -> Tuple[Registry, Trash]:
        """Drop (sha256, server) pairs after successful deletes."""
        pairs = set(pairs)
        removed = [b for b in registry if b.key in pairs]
        new_registry = [b for b in registry if b.key not in pairs]
        hosted = hashes(new_registry)
        new_trash = list(trash)
        for blob in removed:
            if blob.sha256 not in hosted:
                new_trash.append(blob.orphaned())
        return new_registry, prune_trash(new_trash, hosted)

    def adopt_vaulted(self, registry: Sequence[Blob], trash: Sequence[Blob],
                      vault_blobs: Iterable[Blob]) -> Tuple[Registry, Trash]:
        """Vaulted hashes that no server holds become Trash records."""
        hosted = hashes(registry)
        new_trash = list(trash)
        for blob in vault_blobs:
            if blob.sha256 not in hosted:
                new_trash.append(blob.orphaned())
        return list(registry), prune_trash(new_trash, hosted)


def servers_per_hash(registry: Iterable[Blob]) -> Dict[str, List[str]]:
    result: Dict[str, List[str]] = {}
    for blob in registry:
        if blob.server_url and blob.server_url not in result.setdefault(blob.sha256, []):
            result[blob.sha256].append(blob.server_url)
    return result
