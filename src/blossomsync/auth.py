import base64
from typing import Awaitable, Callable, Dict, Iterable, Optional
from urllib.parse import urlsplit

import httpx
from loguru import logger

from .constants import (
    AUTH_PREFIX_BLOSSOM, AUTH_PREFIX_NOSTR, AUTH_PREFIXES, LOCAL_HOSTS
)

RequestFn = Callable[[Optional[str]], Awaitable[httpx.Response]]


def encode_auth_header(signed_event_json: str, prefix: str = AUTH_PREFIX_NOSTR) -> str:
    """
    Build an Authorization header value from a signed event.
    The JSON is trimmed before encoding; some servers reject trailing whitespace.
    """
    payload = signed_event_json.strip().encode("utf-8")
    return f"{prefix} {base64.b64encode(payload).decode('ascii')}"


def split_header(header: str):
    """Return (prefix, token) for a header value, prefix None if unknown."""
    prefix, _, token = header.partition(" ")
    if prefix in AUTH_PREFIXES and token:
        return prefix, token
    return None, header


def with_prefix(header: str, prefix: str) -> str:
    current, token = split_header(header)
    if current is None or current == prefix:
        return header
    return f"{prefix} {token}"


def alternate_prefix(prefix: str) -> str:
    return AUTH_PREFIX_BLOSSOM if prefix == AUTH_PREFIX_NOSTR else AUTH_PREFIX_NOSTR


def host_key(server_url: str) -> str:
    parts = urlsplit(server_url.strip())
    host = (parts.hostname or "").lower()
    port = f":{parts.port}" if parts.port else ""
    return f"{parts.scheme.lower()}://{host}{port}"


class AuthHeaderNegotiator:
    """
    Picks the Authorization prefix a server accepts.
    Servers accept either `Nostr` or `Blossom`. A 401 on the natural prefix
    is retried once with the other one, unless the host is a trusted local
    cache. The accepted prefix is remembered per host for the session.
    """

    def __init__(self, trusted_hosts: Iterable[str] = ()):
        self.trusted_hosts = {h.lower() for h in LOCAL_HOSTS}
        self.trusted_hosts.update(h.lower() for h in trusted_hosts)
        self._accepted: Dict[str, str] = {}

    def is_trusted(self, server_url: str) -> bool:
        host = (urlsplit(server_url).hostname or "").lower()
        return host in self.trusted_hosts

    def accepted_prefix(self, server_url: str) -> Optional[str]:
        return self._accepted.get(host_key(server_url))

    def remember(self, server_url: str, prefix: str):
        key = host_key(server_url)
        if self._accepted.get(key) != prefix:
            logger.debug(f"{key} accepts the {prefix} authorization prefix")
        self._accepted[key] = prefix

    async def send(self, server_url: str, header: Optional[str], request: RequestFn) -> httpx.Response:
        """
        Run `request(header)` with the preferred prefix, falling back to the
        alternate prefix once on HTTP 401.
        """
        if not header:
            return await request(None)

        remembered = self.accepted_prefix(server_url)
        if remembered:
            header = with_prefix(header, remembered)
        prefix, _ = split_header(header)

        response = await request(header)
        if response.is_success:
            if prefix:
                self.remember(server_url, prefix)
            return response

        if response.status_code != 401 or prefix is None or remembered or self.is_trusted(server_url):
            return response

        fallback = alternate_prefix(prefix)
        logger.info(f"{server_url} rejected {prefix} authorization, retrying with {fallback}")
        response = await request(with_prefix(header, fallback))
        if response.is_success:
            self.remember(server_url, fallback)
        return response
