import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Union

from loguru import logger

from .api import BlossomClient, UploadResult, clean_server
from .auth import encode_auth_header
from .blob import Blob
from .constants import ERROR_CODES
from .content import ContentProcessor, guess_mime_type
from .errors import BlossomError, SignatureRequiredError, UploadError
from .events import file_metadata_event, to_json, upload_auth_event
from .nostr import RelayPool, Signer


class UploadStage(Enum):
    PREPARED = "prepared"
    HASHING = "hashing"
    AWAITING_SIGNATURE = "awaiting_signature"
    UPLOADING = "uploading"
    MIRRORING = "mirroring"
    PUBLISHING = "publishing"
    DONE = "done"
    FAILED = "failed"


@dataclass
class UploadOutcome:
    sha256: str
    size: int
    mime_type: Optional[str]
    primary: Optional[UploadResult] = None
    mirrors: List[UploadResult] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    published: bool = False
    created: int = 0

    def blobs(self) -> List[Blob]:
        """Registry records for every server now holding the file."""
        results = ([self.primary] if self.primary else []) + self.mirrors
        return [
            Blob(
                sha256=self.sha256,
                url=r.url,
                size=self.size,
                mime_type=self.mime_type,
                server_url=clean_server(r.server_url),
                created=self.created,
            )
            for r in results
        ]


async def sign_or_raise(signer: Signer, event: dict) -> str:
    signed = await signer.sign(to_json(event))
    if signed is None:
        raise SignatureRequiredError(ERROR_CODES['SIGNATURE_REQUIRED'])
    return signed


async def mirror_to(client: BlossomClient, servers: Iterable[str], source_url: str,
                    auth_header: str) -> List[Union[UploadResult, BlossomError]]:
    """Mirror one blob to several servers in parallel; failures are returned, not raised."""

    async def one(server: str):
        try:
            return await client.mirror(server, source_url, auth_header)
        except BlossomError as e:
            logger.warning(f"Mirror of {source_url} to {server} failed: {e}")
            return e

    return list(await asyncio.gather(*(one(s) for s in servers)))


class UploadCoordinator:
    """
    Hash, sign once, upload with sequential failover, mirror everywhere else,
    then announce the file on relays.
    """

    def __init__(self, client: BlossomClient, signer: Signer, relays: Optional[RelayPool] = None,
                 processor: Optional[ContentProcessor] = None,
                 on_stage: Optional[Callable[[UploadStage], None]] = None):
        self.client = client
        self.signer = signer
        self.relays = relays
        self.processor = processor or ContentProcessor()
        self.on_stage = on_stage
        self.stage = UploadStage.PREPARED

    def _set_stage(self, stage: UploadStage):
        self.stage = stage
        logger.debug(f"Upload stage: {stage.value}")
        if self.on_stage:
            self.on_stage(stage)

    async def upload_file(self, path: Union[str, Path], servers: List[str],
                          mime_type: Optional[str] = None, labels: Iterable[str] = ()) -> UploadOutcome:
        path = Path(path)
        with open(path, 'rb') as f:
            data = f.read()
        return await self.upload(data, servers, mime_type or guess_mime_type(path), path.name, labels)

    async def upload(self, data: bytes, servers: List[str], mime_type: Optional[str] = None,
                     file_name: Optional[str] = None, labels: Iterable[str] = (),
                     now: Optional[int] = None) -> UploadOutcome:
        if not servers:
            raise UploadError(ERROR_CODES['NO_SERVERS'])
        now = int(time.time()) if now is None else now
        servers = [clean_server(s) for s in servers]
        labels = list(labels)

        self._set_stage(UploadStage.PREPARED)
        self._set_stage(UploadStage.HASHING)
        processed = self.processor.process(data, mime_type)
        outcome = UploadOutcome(processed.sha256, processed.size, mime_type, created=now)

        self._set_stage(UploadStage.AWAITING_SIGNATURE)
        event = upload_auth_event(self.signer.pubkey, processed.sha256, processed.size,
                                  mime_type, file_name, now=now)
        auth_header = encode_auth_header(await sign_or_raise(self.signer, event))

        self._set_stage(UploadStage.UPLOADING)
        for server in servers:
            if await self.client.exists(server, processed.sha256):
                logger.info(f"{processed.sha256} already on {server}, skipping upload")
                outcome.primary = UploadResult(f"{server}/{processed.sha256}", processed.sha256, server)
                break
            try:
                outcome.primary = await self.client.upload(
                    server, processed.data, processed.sha256, auth_header, mime_type
                )
                break
            except BlossomError as e:
                logger.warning(f"Upload to {server} failed: {e}")
                outcome.errors.append(f"{server}: {e}")

        if outcome.primary is None:
            self._set_stage(UploadStage.FAILED)
            raise UploadError(ERROR_CODES['UPLOAD_FAILED'], outcome.errors)

        self._set_stage(UploadStage.MIRRORING)
        primary_server = clean_server(outcome.primary.server_url)
        others = [s for s in servers if s != primary_server]
        for server, result in zip(others, await mirror_to(self.client, others, outcome.primary.url, auth_header)):
            if isinstance(result, UploadResult):
                outcome.mirrors.append(result)
            else:
                outcome.errors.append(f"{server}: {result}")

        self._set_stage(UploadStage.PUBLISHING)
        outcome.published = await self._publish(outcome, file_name, labels, now)

        self._set_stage(UploadStage.DONE)
        logger.info(f"Uploaded {outcome.sha256} to {1 + len(outcome.mirrors)} of {len(servers)} servers")
        return outcome

    async def _publish(self, outcome: UploadOutcome, file_name: Optional[str],
                       labels: List[str], now: int) -> bool:
        if self.relays is None:
            return False
        event = file_metadata_event(
            self.signer.pubkey, outcome.sha256, outcome.primary.url, outcome.mime_type,
            labels=labels, name=file_name, size=outcome.size,
            fallbacks=[m.url for m in outcome.mirrors], now=now,
        )
        try:
            signed = await sign_or_raise(self.signer, event)
            return await self.relays.publish(signed)
        except Exception as e:
            # Announcing is best effort; the blob is already stored
            logger.warning(f"Could not publish file metadata for {outcome.sha256}: {e}")
            return False
