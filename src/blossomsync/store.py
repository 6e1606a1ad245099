import json
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple, Union

from loguru import logger

from .blob import Blob
from .errors import ProtocolMismatchError
from .metadata import FileMetadataCache

KEY_PUBKEY = "pubkey"
KEY_SERVERS = "servers"
KEY_RELAYS = "relays"
KEY_LOCAL_SERVER = "local_server_url"
KEY_REGISTRY = "registry"
KEY_TRASH = "trash"
KEY_METADATA = "metadata"
KEY_LOCALLY_CACHED = "locally_cached"


class KeyValueStore:
    """
    Small JSON document on disk. Every write replaces the file atomically so
    a crash never leaves a half-written state behind.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._data: Dict[str, Any] = self._load()

    def _load(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.error(f"Failed to load settings from {self.path}: {e}")
            return {}
        if not isinstance(data, dict):
            logger.error(f"Settings file {self.path} is not a JSON object, ignoring it")
            return {}
        return data

    def _save(self):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=".settings_", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(self._data, f, indent=2)
            os.replace(tmp, self.path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def set(self, key: str, value: Any):
        self._data[key] = value
        self._save()

    def update(self, values: Dict[str, Any]):
        """Set several keys with a single write."""
        self._data.update(values)
        self._save()

    def delete(self, key: str):
        if key in self._data:
            del self._data[key]
            self._save()

    def clear(self):
        self._data = {}
        self._save()

    def keys(self) -> List[str]:
        return list(self._data)


def _decode_blobs(raw: Any) -> List[Blob]:
    blobs = []
    for item in raw or []:
        try:
            blobs.append(Blob.from_dict(item))
        except ProtocolMismatchError as e:
            logger.warning(f"Dropping stored blob: {e}")
    return blobs


class LibraryStore:
    """Typed accessors for the library state kept in a KeyValueStore."""

    def __init__(self, kv: KeyValueStore):
        self.kv = kv

    @classmethod
    def open(cls, data_dir: Union[str, Path]) -> "LibraryStore":
        return cls(KeyValueStore(Path(data_dir) / "settings.json"))

    @property
    def pubkey(self) -> Optional[str]:
        return self.kv.get(KEY_PUBKEY)

    @property
    def servers(self) -> List[str]:
        return list(self.kv.get(KEY_SERVERS, []))

    @property
    def relays(self) -> List[str]:
        return list(self.kv.get(KEY_RELAYS, []))

    @property
    def local_server_url(self) -> Optional[str]:
        return self.kv.get(KEY_LOCAL_SERVER)

    def save_identity(self, pubkey: str, servers: Iterable[str] = (), relays: Iterable[str] = ()):
        self.kv.update({
            KEY_PUBKEY: pubkey,
            KEY_SERVERS: list(servers),
            KEY_RELAYS: list(relays),
        })

    def save_servers(self, servers: Iterable[str]):
        self.kv.set(KEY_SERVERS, list(servers))

    def save_relays(self, relays: Iterable[str]):
        self.kv.set(KEY_RELAYS, list(relays))

    def save_local_server(self, url: Optional[str]):
        if url:
            self.kv.set(KEY_LOCAL_SERVER, url)
        else:
            self.kv.delete(KEY_LOCAL_SERVER)

    def load_state(self) -> Tuple[List[Blob], List[Blob], FileMetadataCache]:
        return (
            _decode_blobs(self.kv.get(KEY_REGISTRY)),
            _decode_blobs(self.kv.get(KEY_TRASH)),
            FileMetadataCache.from_dict(self.kv.get(KEY_METADATA)),
        )

    def save_state(self, registry: Iterable[Blob], trash: Iterable[Blob], metadata: FileMetadataCache):
        """Registry, trash and metadata in one write."""
        self.kv.update({
            KEY_REGISTRY: [b.to_dict() for b in registry],
            KEY_TRASH: [b.to_dict() for b in trash],
            KEY_METADATA: metadata.to_dict(),
        })

    def locally_cached_hashes(self) -> Set[str]:
        return set(self.kv.get(KEY_LOCALLY_CACHED, []))

    def add_locally_cached(self, sha256: str):
        cached = self.locally_cached_hashes()
        if sha256 not in cached:
            cached.add(sha256)
            self.kv.set(KEY_LOCALLY_CACHED, sorted(cached))

    def reset_locally_cached(self):
        self.kv.delete(KEY_LOCALLY_CACHED)

    def logout(self):
        """Forget the identity and everything derived from it."""
        self.kv.clear()
