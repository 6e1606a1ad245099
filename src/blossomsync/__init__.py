# blossomsync - Reconcile blobs across Blossom servers, a local cache and an on-device vault
from .api import BlossomClient, UploadResult
from .auth import AuthHeaderNegotiator, encode_auth_header
from .blob import Blob
from .content import ContentProcessor, ProcessedContent
from .fetcher import FetchResult, PaginatedListFetcher
from .merger import RegistryMerger
from .metadata import FileMetadataCache, MetadataRecord
from .nostr import KeySigner, NostrRelayPool, RelayDiscovery, RelayPool, Signer
from .service import LibraryService, LibraryState
from .store import KeyValueStore, LibraryStore
from .tiers import CacheTierManager, SyncReport
from .uploader import UploadCoordinator, UploadOutcome, UploadStage
from .vault import BlobVault, DiskCache
from .views import ViewFilter
from .constants import (
    PAGE_LIMIT,
    FULL_PAGE_THRESHOLD,
    MAX_PAGES,
    AUTH_KIND,
    FILE_METADATA_KIND,
    SERVER_LIST_KIND,
    RELAY_LIST_KIND,
    VIEW_TRASH,
    VIEW_NOSTR,
    ERROR_CODES
)

__version__ = "0.1.0"
__all__ = [
    "BlossomClient",
    "UploadResult",
    "AuthHeaderNegotiator",
    "encode_auth_header",
    "Blob",
    "ContentProcessor",
    "ProcessedContent",
    "FetchResult",
    "PaginatedListFetcher",
    "RegistryMerger",
    "FileMetadataCache",
    "MetadataRecord",
    "KeySigner",
    "NostrRelayPool",
    "RelayDiscovery",
    "RelayPool",
    "Signer",
    "LibraryService",
    "LibraryState",
    "KeyValueStore",
    "LibraryStore",
    "CacheTierManager",
    "SyncReport",
    "UploadCoordinator",
    "UploadOutcome",
    "UploadStage",
    "BlobVault",
    "DiskCache",
    "ViewFilter",
    "PAGE_LIMIT",
    "FULL_PAGE_THRESHOLD",
    "MAX_PAGES",
    "AUTH_KIND",
    "FILE_METADATA_KIND",
    "SERVER_LIST_KIND",
    "RELAY_LIST_KIND",
    "VIEW_TRASH",
    "VIEW_NOSTR",
    "ERROR_CODES"
]
