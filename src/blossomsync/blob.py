import math
import os
from dataclasses import dataclass, replace
from typing import Any, Dict, Iterable, List, Optional, Tuple
from urllib.parse import urlsplit

from .errors import ProtocolMismatchError

Tag = Tuple[str, ...]

_CREATED_FIELDS = ("created", "uploaded", "created_at")
_EXTENSION_ALIASES = {"jpeg": "jpg", "quicktime": "mov", "svg+xml": "svg"}


def to_int(value: Any) -> Optional[int]:
    """Normalize a JSON number or numeric string to int, None if not numeric."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        value = value.strip()
        try:
            return int(value)
        except ValueError:
            try:
                value = float(value)
            except ValueError:
                return None
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            return None
        return int(value)
    return None


def parse_tags(raw: Any) -> Tuple[Tag, ...]:
    """
    Read NIP-94 data embedded by a server.
    Accepts both shapes seen in the wild:
    - list of tag arrays: [["t", "cats"], ["thumb", "https://..."]]
    - map: {"thumb": "https://...", "name": "a.jpg", "tags": ["cats"]}
    """
    tags: List[Tag] = []
    if isinstance(raw, (list, tuple)):
        for item in raw:
            if isinstance(item, (list, tuple)) and len(item) >= 2 and all(isinstance(v, str) for v in item):
                tags.append(tuple(item))
    elif isinstance(raw, dict):
        for key, value in raw.items():
            if key == "tags" and isinstance(value, list):
                tags.extend(("t", v) for v in value if isinstance(v, str))
            elif isinstance(value, str):
                tags.append((key, value))
    return tuple(tags)


def resolve_tags(server_tags: Iterable[Tag], user_tags: Optional[Iterable[Tag]] = None) -> List[Tag]:
    """User-authored tags replace server tags that share a key."""
    user = [tuple(t) for t in (user_tags or ()) if len(t) >= 2]
    user_keys = {t[0] for t in user}
    return user + [t for t in server_tags if t[0] not in user_keys]


@dataclass(frozen=True)
class Blob:
    sha256: str
    url: str
    size: int = 0
    mime_type: Optional[str] = None
    server_url: Optional[str] = None
    created: Optional[int] = None
    tags: Tuple[Tag, ...] = ()

    @classmethod
    def from_descriptor(cls, data: Any, server_url: Optional[str] = None) -> "Blob":
        """Decode one entry of a server listing or upload response."""
        if not isinstance(data, dict):
            raise ProtocolMismatchError(f"Blob descriptor is not an object: {type(data).__name__}", server_url)
        url = data.get("url")
        sha256 = data.get("sha256")
        if not isinstance(url, str) or not url or not isinstance(sha256, str) or not sha256.strip():
            raise ProtocolMismatchError("Blob descriptor is missing url or sha256", server_url)

        mime_type = data.get("type") or data.get("mime")
        created = None
        for name in _CREATED_FIELDS:
            created = to_int(data.get(name))
            if created is not None:
                break

        return cls(
            sha256=sha256.strip().lower(),
            url=url,
            size=to_int(data.get("size")) or 0,
            mime_type=mime_type if isinstance(mime_type, str) else None,
            server_url=server_url,
            created=created,
            tags=parse_tags(data.get("nip94")),
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Blob":
        return cls.from_descriptor(data, data.get("server"))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "sha256": self.sha256,
            "size": self.size,
            "type": self.mime_type,
            "created": self.created,
            "nip94": [list(t) for t in self.tags],
            "server": self.server_url,
        }

    @property
    def key(self) -> Tuple[str, Optional[str]]:
        return (self.sha256, self.server_url)

    @property
    def creation_time(self) -> int:
        return self.created or 0

    @property
    def is_image(self) -> bool:
        return bool(self.mime_type) and self.mime_type.startswith("image/")

    @property
    def is_video(self) -> bool:
        return bool(self.mime_type) and self.mime_type.startswith("video/")

    @property
    def is_media(self) -> bool:
        return self.is_image or self.is_video

    @property
    def extension(self) -> str:
        """File extension without the dot, from the MIME subtype or the URL."""
        if self.mime_type and "/" in self.mime_type:
            subtype = self.mime_type.split("/", 1)[1].split(";", 1)[0].strip().lower()
            if subtype:
                return _EXTENSION_ALIASES.get(subtype, subtype)
        suffix = os.path.splitext(urlsplit(self.url).path)[1]
        return suffix.lstrip(".").lower()

    def resolved_tags(self, user_tags: Optional[Iterable[Tag]] = None) -> List[Tag]:
        return resolve_tags(self.tags, user_tags)

    def tag_value(self, key: str, user_tags: Optional[Iterable[Tag]] = None) -> Optional[str]:
        for tag in self.resolved_tags(user_tags):
            if tag[0] == key:
                return tag[1]
        return None

    def labels(self, user_tags: Optional[Iterable[Tag]] = None) -> List[str]:
        labels = []
        for tag in self.resolved_tags(user_tags):
            if tag[0] == "t" and tag[1] not in labels:
                labels.append(tag[1])
        return labels

    def name(self, user_tags: Optional[Iterable[Tag]] = None) -> Optional[str]:
        return self.tag_value("name", user_tags)

    def thumbnail_url(self, user_tags: Optional[Iterable[Tag]] = None) -> str:
        return self.tag_value("thumb", user_tags) or self.url

    def with_server(self, server_url: Optional[str], url: Optional[str] = None) -> "Blob":
        return replace(self, server_url=server_url, url=url or self.url)

    def orphaned(self) -> "Blob":
        """Vault/trash-only copy of this record."""
        return replace(self, server_url=None)
