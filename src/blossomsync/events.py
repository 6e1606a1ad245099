"""Unsigned Nostr events used by blob servers and relays.

Authorization events are kind 24242. Tag order matters: some server parsers
(Go/Rust) are order-sensitive, so every builder emits `t` and `expiration`
first, then the operation specific tags.
"""
import json
import time
from typing import Any, Dict, Iterable, List, Optional

from .constants import (
    AUTH_EXPIRATION, AUTH_KIND, CLOCK_DRIFT, FILE_METADATA_KIND
)


def _now(now: Optional[int]) -> int:
    return int(time.time()) if now is None else int(now)


def _auth_event(pubkey: str, verb: str, content: str, tags: List[List[str]], now: Optional[int]) -> Dict[str, Any]:
    created = _now(now)
    return {
        "kind": AUTH_KIND,
        "content": content,
        "pubkey": pubkey,
        "created_at": created - CLOCK_DRIFT,
        "tags": [["t", verb], ["expiration", str(created + AUTH_EXPIRATION)]] + tags,
    }


def list_auth_event(pubkey: str, server_url: str, now: Optional[int] = None) -> Dict[str, Any]:
    return _auth_event(pubkey, "list", "", [["server", server_url.rstrip("/")]], now)


def upload_auth_event(
    pubkey: str,
    sha256: str,
    size: int,
    mime_type: Optional[str] = None,
    file_name: Optional[str] = None,
    server_url: Optional[str] = None,
    now: Optional[int] = None,
) -> Dict[str, Any]:
    """Authorization for PUT /upload and PUT /mirror."""
    tags = [["size", str(size)], ["x", sha256]]
    if server_url:
        tags.append(["server", server_url.rstrip("/")])
    if file_name:
        tags.append(["name", file_name])
    if mime_type:
        tags.append(["type", mime_type])
    return _auth_event(pubkey, "upload", f"Uploading {file_name or sha256[:8]}", tags, now)


def delete_auth_event(pubkey: str, sha256: str, server_url: Optional[str] = None,
                      now: Optional[int] = None) -> Dict[str, Any]:
    tags = [["x", sha256], ["p", pubkey]]
    if server_url:
        tags.append(["server", server_url.rstrip("/")])
    return _auth_event(pubkey, "delete", f"Deleting {sha256}", tags, now)


def file_metadata_event(
    pubkey: str,
    sha256: str,
    url: str,
    mime_type: Optional[str] = None,
    labels: Iterable[str] = (),
    name: Optional[str] = None,
    size: Optional[int] = None,
    fallbacks: Iterable[str] = (),
    extra_tags: Iterable[Iterable[str]] = (),
    now: Optional[int] = None,
) -> Dict[str, Any]:
    """Kind 1063 file metadata (NIP-94) carrying labels, name and mirror URLs."""
    tags = [["x", sha256], ["url", url]]
    if mime_type:
        tags.append(["m", mime_type])
    if size:
        tags.append(["size", str(size)])
    if name:
        tags.append(["name", name])
    for fallback in fallbacks:
        if fallback != url:
            tags.append(["fallback", fallback])
    seen = set()
    for label in labels:
        if label not in seen:
            seen.add(label)
            tags.append(["t", label])
    for tag in extra_tags:
        tags.append(list(tag))
    return {
        "kind": FILE_METADATA_KIND,
        "content": "",
        "pubkey": pubkey,
        "created_at": _now(now),
        "tags": tags,
    }


def to_json(event: Dict[str, Any]) -> str:
    return json.dumps(event, separators=(",", ":"), ensure_ascii=False)


def tag_values(event: Dict[str, Any], key: str) -> List[str]:
    """Second element of every tag named `key`."""
    values = []
    for tag in event.get("tags") or []:
        if isinstance(tag, list) and len(tag) >= 2 and tag[0] == key:
            values.append(tag[1])
    return values


def first_tag(event: Dict[str, Any], key: str) -> Optional[str]:
    values = tag_values(event, key)
    return values[0] if values else None
