import json
import os
from dataclasses import dataclass
from typing import List, Optional
from urllib.parse import urlsplit

import httpx
from loguru import logger

from .auth import AuthHeaderNegotiator
from .blob import Blob
from .constants import (
    CONNECT_TIMEOUT, DEFAULT_MIME_TYPE, LOCAL_CACHE_HOSTS, LOCAL_CACHE_PORT,
    PAGE_LIMIT, PROBE_TIMEOUT, READ_TIMEOUT, USER_AGENT, WRITE_TIMEOUT
)
from .errors import (
    AuthRejectedError, BlossomError, DataIntegrityError, ProtocolMismatchError,
    ServerError, TransientNetworkError
)

DEFAULT_TIMEOUT = httpx.Timeout(CONNECT_TIMEOUT, read=READ_TIMEOUT, write=WRITE_TIMEOUT)
PROBE = httpx.Timeout(PROBE_TIMEOUT)


@dataclass
class UploadResult:
    url: str
    sha256: Optional[str]
    server_url: str


def clean_server(server_url: str) -> str:
    return server_url.strip().rstrip("/")


def server_root(url: str) -> str:
    """scheme://host[:port] of a blob URL; default ports are omitted."""
    parts = urlsplit(url)
    port = ""
    if parts.port and parts.port not in (80, 443):
        port = f":{parts.port}"
    return f"{parts.scheme}://{parts.hostname}{port}"


def url_extension(url: str) -> str:
    """Extension of the last path segment including the dot, or ''."""
    return os.path.splitext(urlsplit(url).path.rsplit("/", 1)[-1])[1]


def hash_from_url(url: str) -> Optional[str]:
    segment = urlsplit(url).path.rsplit("/", 1)[-1].split(".", 1)[0]
    if len(segment) == 64 and segment.isalnum():
        return segment.lower()
    return None


def parse_upload_response(body: str, server_url: str) -> UploadResult:
    if not body or not body.strip():
        raise ProtocolMismatchError("Empty response body from server", server_url)
    try:
        data = json.loads(body)
    except ValueError:
        raise ProtocolMismatchError("Upload response is not JSON", server_url)
    if not isinstance(data, dict) or not isinstance(data.get("url"), str) or not data["url"]:
        raise ProtocolMismatchError("No 'url' in server response", server_url)
    sha256 = data.get("sha256")
    if not isinstance(sha256, str) or not sha256.strip():
        sha256 = hash_from_url(data["url"])
    return UploadResult(url=data["url"], sha256=sha256.strip().lower() if sha256 else None,
                        server_url=server_url)


class BlossomClient:
    """
    HTTP surface of a Blossom server: list, upload, mirror, delete, HEAD and
    the local cache proxy. Every authenticated call goes through the
    negotiator so a 401 gets one retry with the other prefix.
    """

    def __init__(self, http: Optional[httpx.AsyncClient] = None,
                 negotiator: Optional[AuthHeaderNegotiator] = None):
        self._owns_http = http is None
        self.http = http or httpx.AsyncClient(timeout=DEFAULT_TIMEOUT, follow_redirects=True)
        self.negotiator = negotiator or AuthHeaderNegotiator()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.aclose()

    async def aclose(self):
        if self._owns_http:
            await self.http.aclose()

    async def _request(self, method: str, url: str, server_url: str,
                       auth_header: Optional[str] = None, **kwargs) -> httpx.Response:
        headers = dict(kwargs.pop("headers", None) or {})
        headers.setdefault("User-Agent", USER_AGENT)
        kwargs.setdefault("timeout", DEFAULT_TIMEOUT)

        async def send(header: Optional[str]) -> httpx.Response:
            request_headers = dict(headers)
            if header:
                request_headers["Authorization"] = header
            logger.debug(f"{method} {url}")
            return await self.http.request(method, url, headers=request_headers, **kwargs)

        try:
            return await self.negotiator.send(server_url, auth_header, send)
        except httpx.TransportError as e:
            raise TransientNetworkError(f"{method} {url}: {e!r}", server_url) from e
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise ProtocolMismatchError(f"{method} {url}: {e!r}", server_url) from e

    @staticmethod
    def _check(response: httpx.Response, server_url: str, what: str):
        if response.is_success:
            return
        if response.status_code == 401:
            raise AuthRejectedError(f"{what}: authorization rejected", server_url)
        raise ServerError(f"{what}: HTTP {response.status_code} {response.text[:100]}",
                          server_url, response.status_code)

    async def list_page(self, server_url: str, pubkey: str, auth_header: Optional[str] = None,
                        cursor: Optional[str] = None, limit: int = PAGE_LIMIT) -> List[Blob]:
        """One page of GET /list/<pubkey>. Malformed items are skipped."""
        server = clean_server(server_url)
        params = {"limit": str(limit)}
        if cursor:
            params["cursor"] = cursor
        response = await self._request("GET", f"{server}/list/{pubkey}", server,
                                       auth_header, params=params)
        self._check(response, server, "list")

        try:
            items = response.json()
        except ValueError:
            raise ProtocolMismatchError("list response is not JSON", server)
        if not isinstance(items, list):
            raise ProtocolMismatchError("list response is not an array", server)

        blobs = []
        for item in items:
            try:
                blobs.append(Blob.from_descriptor(item, server))
            except ProtocolMismatchError as e:
                logger.warning(f"Skipping blob from {server}: {e}")
        return blobs

    async def _send_blob(self, server: str, path: str, auth_header: str, what: str,
                         **kwargs) -> UploadResult:
        """PUT, then POST on failure. Raises the last error."""
        last_error: Optional[BlossomError] = None
        for method in ("PUT", "POST"):
            try:
                response = await self._request(method, f"{server}/{path}", server, auth_header, **kwargs)
                self._check(response, server, f"{method} /{path}")
                return parse_upload_response(response.text, server)
            except BlossomError as e:
                logger.debug(f"{what} via {method} failed on {server}: {e}")
                last_error = e
        raise last_error

    async def upload(self, server_url: str, data: bytes, sha256: str, auth_header: str,
                     mime_type: Optional[str] = None) -> UploadResult:
        server = clean_server(server_url)
        content_type = mime_type or DEFAULT_MIME_TYPE
        result = await self._send_blob(
            server, "upload", auth_header, "upload", content=data,
            headers={"Content-Type": content_type, "Content-Length": str(len(data))},
        )
        if result.sha256 and result.sha256 != sha256:
            raise DataIntegrityError(
                f"Server hash {result.sha256} does not match local hash {sha256}", server
            )
        logger.info(f"Uploaded {sha256} to {server}")
        return result

    async def mirror(self, server_url: str, source_url: str, auth_header: str) -> UploadResult:
        server = clean_server(server_url)
        result = await self._send_blob(
            server, "mirror", auth_header, "mirror",
            content=json.dumps({"url": source_url}),
            headers={"Content-Type": "application/json"},
        )
        logger.info(f"Mirrored {source_url} to {server}")
        return result

    async def delete(self, server_url: str, sha256: str, auth_header: str):
        """DELETE /<sha256>, falling back to /media/<sha256>."""
        server = clean_server(server_url)
        last_error: Optional[BlossomError] = None
        for path in (sha256, f"media/{sha256}"):
            try:
                response = await self._request("DELETE", f"{server}/{path}", server, auth_header)
                self._check(response, server, f"DELETE /{path}")
                logger.info(f"Deleted {sha256} from {server} via /{path}")
                return
            except BlossomError as e:
                last_error = e
        raise last_error

    async def exists(self, server_url: str, sha256: str) -> bool:
        server = clean_server(server_url)
        try:
            response = await self._request("HEAD", f"{server}/{sha256}", server, timeout=PROBE)
        except BlossomError:
            return False
        return response.is_success

    async def download(self, url: str) -> bytes:
        server = server_root(url)
        response = await self._request("GET", url, server)
        self._check(response, server, f"GET {url}")
        return response.content

    async def detect_local_cache(self, hosts=LOCAL_CACHE_HOSTS, port: int = LOCAL_CACHE_PORT) -> Optional[str]:
        """First local cache answering HEAD with 2xx, 401 or 404."""
        for host in hosts:
            url = f"http://{host}:{port}"
            try:
                response = await self._request("HEAD", url, url, timeout=PROBE)
            except BlossomError:
                continue
            if response.is_success or response.status_code in (401, 404):
                logger.info(f"Detected local Blossom cache at {url}")
                return url
        return None

    async def fetch_to_local_cache(self, sha256: str, source_url: str, local_url: str):
        """Ask the local cache to pull a blob: GET /<sha256><ext>?xs=<origin>."""
        local = clean_server(local_url)
        sha256 = sha256.strip().lower()
        url = f"{local}/{sha256}{url_extension(source_url)}"
        response = await self._request("GET", url, local, params={"xs": server_root(source_url)})
        self._check(response, local, "local cache fetch")
