import hashlib
import json
from typing import Dict, List, Optional

import httpx
import pytest

from blossomsync import BlossomClient
from blossomsync.nostr import RelayPool, Signer

PUBKEY = "f" * 64


def sha(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class FakeServer:
    """In-memory Blossom server answering httpx.MockTransport requests."""

    def __init__(self, network: "FakeNetwork", url: str, accept_prefix: Optional[str] = None):
        self.network = network
        self.url = url
        self.accept_prefix = accept_prefix
        self.blobs: Dict[str, dict] = {}
        self.data: Dict[str, bytes] = {}
        self.requests: List[httpx.Request] = []
        self.list_status: Optional[int] = None
        self.upload_status: Optional[int] = None
        self.report_hash: Optional[str] = None
        self.repeat_page = False
        self.media_delete = False

    def add(self, data: bytes, mime_type: str = "image/png", created: int = 1000, ext: str = "png") -> str:
        digest = sha(data)
        self.data[digest] = data
        self.blobs[digest] = {
            "url": f"{self.url}/{digest}.{ext}",
            "sha256": digest,
            "size": len(data),
            "type": mime_type,
            "uploaded": created,
        }
        return digest

    def _authorized(self, request: httpx.Request) -> bool:
        if self.accept_prefix is None:
            return True
        return request.headers.get("Authorization", "").startswith(self.accept_prefix + " ")

    def _list(self, request: httpx.Request) -> httpx.Response:
        if self.list_status:
            return httpx.Response(self.list_status, text="nope")
        items = sorted(self.blobs.values(), key=lambda b: -b["uploaded"])
        limit = int(request.url.params.get("limit", "100"))
        cursor = request.url.params.get("cursor")
        if cursor and not self.repeat_page:
            hashes = [b["sha256"] for b in items]
            items = items[hashes.index(cursor) + 1:] if cursor in hashes else []
        return httpx.Response(200, json=items[:limit])

    def _store(self, data: bytes, mime_type: str) -> httpx.Response:
        if self.upload_status:
            return httpx.Response(self.upload_status, text="rejected")
        digest = self.add(data, mime_type, created=2000)
        body = dict(self.blobs[digest])
        if self.report_hash:
            body["sha256"] = self.report_hash
        return httpx.Response(200, json=body)

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path.strip("/")
        method = request.method

        if method == "HEAD" and path == "":
            return httpx.Response(404)
        if path.startswith("list/"):
            if not self._authorized(request):
                return httpx.Response(401)
            return self._list(request)
        if path == "upload":
            if not self._authorized(request):
                return httpx.Response(401)
            return self._store(request.content, request.headers.get("Content-Type", ""))
        if path == "mirror":
            if not self._authorized(request):
                return httpx.Response(401)
            source = json.loads(request.content)["url"]
            data = self.network.fetch(source)
            if data is None:
                return httpx.Response(404)
            return self._store(data, "image/png")

        digest = path.split("/")[-1].split(".")[0]
        if method == "DELETE":
            if not self._authorized(request):
                return httpx.Response(401)
            if digest not in self.blobs or (self.media_delete and not path.startswith("media/")):
                return httpx.Response(404)
            del self.blobs[digest]
            self.data.pop(digest, None)
            return httpx.Response(200)
        if method == "HEAD":
            return httpx.Response(200 if digest in self.data else 404)
        if method == "GET":
            if digest not in self.data and "xs" in request.url.params:
                data = self.network.fetch(f"{request.url.params['xs']}/{digest}")
                if data is None:
                    return httpx.Response(404)
                self.add(data)
            if digest in self.data:
                return httpx.Response(200, content=self.data[digest])
            return httpx.Response(404)
        return httpx.Response(405)


class FakeNetwork:
    """Routes requests to FakeServers by origin; unknown origins refuse the connection."""

    def __init__(self):
        self.servers: Dict[str, FakeServer] = {}

    def server(self, url: str, accept_prefix: Optional[str] = None) -> FakeServer:
        server = FakeServer(self, url, accept_prefix)
        self.servers[url] = server
        return server

    @staticmethod
    def _origin(url: httpx.URL) -> str:
        port = f":{url.port}" if url.port else ""
        return f"{url.scheme}://{url.host}{port}"

    def fetch(self, url: str) -> Optional[bytes]:
        parsed = httpx.URL(url)
        server = self.servers.get(self._origin(parsed))
        if server is None:
            return None
        digest = parsed.path.strip("/").split("/")[-1].split(".")[0]
        return server.data.get(digest)

    def handle(self, request: httpx.Request) -> httpx.Response:
        server = self.servers.get(self._origin(request.url))
        if server is None:
            raise httpx.ConnectError("connection refused", request=request)
        return server.handle(request)

    def client(self) -> BlossomClient:
        return BlossomClient(httpx.AsyncClient(transport=httpx.MockTransport(self.handle)))


class FakeSigner(Signer):
    def __init__(self, pubkey: str = PUBKEY, refuse: bool = False):
        self._pubkey = pubkey
        self.refuse = refuse
        self.signed: List[dict] = []

    @property
    def pubkey(self) -> str:
        return self._pubkey

    async def sign(self, unsigned_json: str, identity: Optional[str] = None) -> Optional[str]:
        if self.refuse:
            return None
        event = json.loads(unsigned_json)
        self.signed.append(event)
        event["id"] = sha(unsigned_json.encode())
        event["sig"] = "0" * 128
        return json.dumps(event)


class FakeRelayPool(RelayPool):
    def __init__(self, events: Optional[List[dict]] = None, accept: bool = True):
        self.events = list(events or [])
        self.published: List[dict] = []
        self.accept = accept

    async def publish(self, signed_json: str) -> bool:
        self.published.append(json.loads(signed_json))
        return self.accept

    async def query(self, filter_json: str) -> List[dict]:
        query = json.loads(filter_json)
        return [
            e for e in self.events
            if e["kind"] in query.get("kinds", [e["kind"]])
            and e["pubkey"] in query.get("authors", [e["pubkey"]])
        ]


@pytest.fixture
def network():
    return FakeNetwork()


@pytest.fixture
def signer():
    return FakeSigner()
