"""Derived views over a library snapshot.

A selector picks the tier (None for everything, "TRASH", "NOSTR", the local
cache URL, or one server URL); a ViewFilter then narrows by media kind,
extension and labels.
"""
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Optional

from .blob import Blob, Tag
from .constants import VIEW_NOSTR, VIEW_TRASH


def _clean(url: Optional[str]) -> str:
    return (url or "").strip().rstrip("/")


def dedup_by_hash(blobs: Iterable[Blob]) -> List[Blob]:
    seen = set()
    result = []
    for blob in blobs:
        if blob.sha256 not in seen:
            seen.add(blob.sha256)
            result.append(blob)
    return result


def select(state, selector: Optional[str] = None) -> List[Blob]:
    hosted = {b.sha256 for b in state.registry}

    if selector is None:
        return dedup_by_hash(list(state.registry) + list(state.discovered))
    if selector == VIEW_TRASH:
        return list(state.trash)
    if selector == VIEW_NOSTR:
        return dedup_by_hash(b for b in state.discovered if b.sha256 not in hosted)

    selector = _clean(selector)
    if state.local_server_url and selector == _clean(state.local_server_url):
        cached = state.locally_cached
        everything = list(state.registry) + list(state.trash)
        return dedup_by_hash(b for b in everything if b.sha256 in cached)
    return [b for b in state.registry if _clean(b.server_url) == selector]


@dataclass(frozen=True)
class ViewFilter:
    show_images: bool = True
    show_videos: bool = True
    extensions: FrozenSet[str] = field(default_factory=frozenset)
    labels: FrozenSet[str] = field(default_factory=frozenset)

    def matches(self, blob: Blob, user_tags: Optional[List[Tag]] = None) -> bool:
        if blob.is_image and not self.show_images:
            return False
        if blob.is_video and not self.show_videos:
            return False
        if self.extensions and blob.extension not in self.extensions:
            return False
        if self.labels and not self.labels.issubset(blob.labels(user_tags)):
            return False
        return True

    def apply(self, blobs: Iterable[Blob], metadata: Optional[Dict[str, List[Tag]]] = None) -> List[Blob]:
        metadata = metadata or {}
        return [b for b in blobs if self.matches(b, metadata.get(b.sha256))]


def view(state, selector: Optional[str] = None, view_filter: Optional[ViewFilter] = None) -> List[Blob]:
    blobs = select(state, selector)
    if view_filter is None:
        return blobs
    return view_filter.apply(blobs, state.metadata)


def unique_labels(blobs: Iterable[Blob], metadata: Optional[Dict[str, List[Tag]]] = None) -> List[str]:
    metadata = metadata or {}
    labels = set()
    for blob in blobs:
        labels.update(blob.labels(metadata.get(blob.sha256)))
    return sorted(labels)


def available_extensions(blobs: Iterable[Blob]) -> List[str]:
    return sorted({b.extension for b in blobs if b.extension})
