import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from .blob import Tag
from .constants import LOCAL_EDIT_GRACE


@dataclass
class TagGroup:
    """All values of one tag key for one hash, with who wrote them and when."""
    tags: List[Tag]
    updated_at: int
    local: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tags": [list(t) for t in self.tags],
            "updated_at": self.updated_at,
            "local": self.local,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TagGroup":
        return cls(
            tags=[tuple(t) for t in data.get("tags", []) if len(t) >= 2],
            updated_at=int(data.get("updated_at", 0)),
            local=bool(data.get("local", False)),
        )


@dataclass
class MetadataRecord:
    """Newest kind 1063 event seen on relays for one hash."""
    sha256: str
    created_at: int
    tags: List[Tag] = field(default_factory=list)


def group_tags(tags: Iterable[Tag]) -> Dict[str, List[Tag]]:
    grouped: Dict[str, List[Tag]] = {}
    for tag in tags:
        if len(tag) >= 2:
            grouped.setdefault(tag[0], []).append(tuple(tag))
    return grouped


class FileMetadataCache:
    """
    User and relay authored metadata keyed by hash.

    Each (hash, tag key) group is merged independently:
    - a local edit always applies;
    - a relay value replaces a local one only when it is more than
      `grace` seconds newer;
    - between relay values the strictly newer one wins, ties keep what is there.
    """

    def __init__(self, entries: Optional[Dict[str, Dict[str, TagGroup]]] = None,
                 grace: int = LOCAL_EDIT_GRACE):
        self.entries: Dict[str, Dict[str, TagGroup]] = entries or {}
        self.grace = grace

    def __contains__(self, sha256: str) -> bool:
        return sha256 in self.entries

    def __len__(self) -> int:
        return len(self.entries)

    def tags(self, sha256: str) -> List[Tag]:
        result: List[Tag] = []
        for group in self.entries.get(sha256, {}).values():
            result.extend(group.tags)
        return result

    def labels(self, sha256: str) -> List[str]:
        return [t[1] for t in self.entries.get(sha256, {}).get("t", TagGroup([], 0)).tags]

    def snapshot(self) -> Dict[str, List[Tag]]:
        return {sha256: self.tags(sha256) for sha256 in self.entries}

    def set_local(self, sha256: str, key: str, values: Iterable[str], now: Optional[int] = None):
        """Record a user edit of one tag key. An empty `values` clears the key."""
        now = int(time.time()) if now is None else now
        tags = []
        for value in values:
            if (key, value) not in tags:
                tags.append((key, value))
        self.entries.setdefault(sha256, {})[key] = TagGroup(tags, now, local=True)

    def update_labels(self, sha256: str, labels: Iterable[str], name: Optional[str] = None,
                      now: Optional[int] = None):
        self.set_local(sha256, "t", labels, now)
        if name is not None:
            self.set_local(sha256, "name", [name] if name else [], now)

    def apply_relay(self, sha256: str, tags: Iterable[Tag], created_at: int) -> bool:
        """Merge one relay event's tags. Returns True if anything changed."""
        groups = self.entries.setdefault(sha256, {})
        changed = False
        for key, key_tags in group_tags(tags).items():
            current = groups.get(key)
            if current is None:
                accept = True
            elif current.local:
                accept = created_at > current.updated_at + self.grace
            else:
                accept = created_at > current.updated_at
            if accept:
                groups[key] = TagGroup(key_tags, created_at, local=False)
                changed = True
        if not groups:
            del self.entries[sha256]
        return changed

    def merge_records(self, records: Iterable[MetadataRecord]) -> int:
        """Merge relay records, returning how many hashes changed."""
        changed = 0
        for record in records:
            if self.apply_relay(record.sha256, record.tags, record.created_at):
                changed += 1
        return changed

    def to_dict(self) -> Dict[str, Any]:
        return {
            sha256: {key: group.to_dict() for key, group in groups.items()}
            for sha256, groups in self.entries.items()
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]], grace: int = LOCAL_EDIT_GRACE) -> "FileMetadataCache":
        entries = {}
        for sha256, groups in (data or {}).items():
            entries[sha256] = {key: TagGroup.from_dict(group) for key, group in groups.items()}
        return cls(entries, grace)
