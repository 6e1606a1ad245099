import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional

from loguru import logger
from nostr_sdk import (
    Client, Event, EventBuilder, Filter, Keys, Kind, Tag, Timestamp
)

from .api import server_root
from .blob import Blob, Tag as BlobTag, to_int
from .constants import (
    FILE_METADATA_KIND, METADATA_TAG_KEYS, RELAY_LIST_KIND, RELAY_TIMEOUT,
    SERVER_LIST_KIND
)
from .events import first_tag, tag_values
from .metadata import MetadataRecord


class Signer(ABC):
    """Signs unsigned event JSON. Returns None when the user must confirm interactively."""

    @property
    @abstractmethod
    def pubkey(self) -> str:
        ...

    @abstractmethod
    async def sign(self, unsigned_json: str, identity: Optional[str] = None) -> Optional[str]:
        ...


class KeySigner(Signer):
    """Local signer backed by a secret key (nsec or hex). Without one a fresh key is generated."""

    def __init__(self, secret: Optional[str] = None):
        self.keys = Keys.parse(secret) if secret else Keys.generate()

    @property
    def pubkey(self) -> str:
        return self.keys.public_key().to_hex()

    def sign_event(self, event: Dict[str, Any]) -> Event:
        tags = [Tag.parse([str(v) for v in t]) for t in event.get("tags", [])]
        builder = EventBuilder(Kind(int(event["kind"])), event.get("content", "")).tags(tags)
        if event.get("created_at") is not None:
            builder = builder.custom_created_at(Timestamp.from_secs(int(event["created_at"])))
        return builder.sign_with_keys(self.keys)

    async def sign(self, unsigned_json: str, identity: Optional[str] = None) -> Optional[str]:
        return self.sign_event(json.loads(unsigned_json)).as_json()


class RelayPool(ABC):
    @abstractmethod
    async def publish(self, signed_json: str) -> bool:
        ...

    @abstractmethod
    async def query(self, filter_json: str) -> List[Dict[str, Any]]:
        ...

    async def close(self):
        pass


class NostrRelayPool(RelayPool):
    """RelayPool over a nostr_sdk Client. Connects lazily on first use."""

    def __init__(self, relays: Iterable[str], timeout: float = RELAY_TIMEOUT):
        self.relays = list(dict.fromkeys(relays))
        self.timeout = timeout
        self.client: Optional[Client] = None

    async def _connect(self) -> Client:
        if self.client is None:
            client = Client()
            for relay in self.relays:
                await client.add_relay(relay)
            await client.connect()
            logger.info(f"Connected to {len(self.relays)} relays")
            self.client = client
        return self.client

    async def publish(self, signed_json: str) -> bool:
        client = await self._connect()
        output = await client.send_event(Event.from_json(signed_json))
        if not output.success:
            logger.warning(f"No relay accepted event: {output.failed}")
        return bool(output.success)

    async def query(self, filter_json: str) -> List[Dict[str, Any]]:
        client = await self._connect()
        events = await client.fetch_events(Filter.from_json(filter_json), timedelta(seconds=self.timeout))
        return [json.loads(e.as_json()) for e in events.to_vec()]

    async def close(self):
        if self.client is not None:
            await self.client.disconnect()
            self.client = None


def newest(events: Iterable[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    best = None
    for event in events:
        if best is None or event.get("created_at", 0) > best.get("created_at", 0):
            best = event
    return best


def relay_list(event: Optional[Dict[str, Any]]) -> List[str]:
    """Relays from a kind 10002 event, write relays first."""
    if not event:
        return []
    write, read = [], []
    for tag in event.get("tags", []):
        if len(tag) < 2 or tag[0] != "r":
            continue
        marker = tag[2] if len(tag) > 2 else None
        target = read if marker == "read" else write
        if tag[1] not in write and tag[1] not in read:
            target.append(tag[1])
    return write + read


def server_list(event: Optional[Dict[str, Any]]) -> List[str]:
    if not event:
        return []
    return list(dict.fromkeys(s.rstrip("/") for s in tag_values(event, "server")))


def metadata_records(events: Iterable[Dict[str, Any]]) -> Dict[str, MetadataRecord]:
    """Newest kind 1063 event per `x` hash, reduced to the tags we display."""
    records: Dict[str, MetadataRecord] = {}
    for event in events:
        sha256 = first_tag(event, "x")
        if not sha256:
            continue
        sha256 = sha256.lower()
        created_at = int(event.get("created_at", 0))
        current = records.get(sha256)
        if current is not None and current.created_at >= created_at:
            continue
        tags: List[BlobTag] = [
            tuple(t) for t in event.get("tags", [])
            if len(t) >= 2 and t[0] in METADATA_TAG_KEYS
        ]
        records[sha256] = MetadataRecord(sha256, created_at, tags)
    return records


def discovered_blobs(events: Iterable[Dict[str, Any]]) -> List[Blob]:
    """Blobs announced on relays. They are unconfirmed until a server lists them."""
    blobs = []
    seen = set()
    for event in events:
        sha256 = first_tag(event, "x")
        url = first_tag(event, "url")
        if not sha256 or not url or not url.startswith(("http://", "https://")):
            continue
        sha256 = sha256.lower()
        if (sha256, url) in seen:
            continue
        seen.add((sha256, url))
        blobs.append(Blob(
            sha256=sha256,
            url=url,
            size=to_int(first_tag(event, "size")) or 0,
            mime_type=first_tag(event, "m"),
            server_url=server_root(url),
            created=to_int(event.get("created_at")),
        ))
    return blobs


@dataclass
class Discovery:
    relays: List[str] = field(default_factory=list)
    servers: List[str] = field(default_factory=list)
    metadata: Dict[str, MetadataRecord] = field(default_factory=dict)
    discovered: List[Blob] = field(default_factory=list)


class RelayDiscovery:
    """Reads a user's relay list, Blossom server list and file metadata from relays."""

    def __init__(self, pool: RelayPool):
        self.pool = pool

    async def _query(self, kind: int, pubkey: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {"kinds": [kind], "authors": [pubkey]}
        if limit:
            query["limit"] = limit
        return await self.pool.query(json.dumps(query))

    async def relays(self, pubkey: str) -> List[str]:
        return relay_list(newest(await self._query(RELAY_LIST_KIND, pubkey, 1)))

    async def servers(self, pubkey: str) -> List[str]:
        return server_list(newest(await self._query(SERVER_LIST_KIND, pubkey, 1)))

    async def file_events(self, pubkey: str) -> List[Dict[str, Any]]:
        return await self._query(FILE_METADATA_KIND, pubkey)

    async def discover(self, pubkey: str) -> Discovery:
        result = Discovery()
        result.relays = await self.relays(pubkey)
        result.servers = await self.servers(pubkey)
        events = await self.file_events(pubkey)
        result.metadata = metadata_records(events)
        result.discovered = discovered_blobs(events)
        logger.info(
            f"Discovered {len(result.servers)} servers, {len(result.relays)} relays "
            f"and {len(result.discovered)} announced blobs"
        )
        return result
