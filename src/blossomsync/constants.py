# Listing / pagination
PAGE_LIMIT = 256
FULL_PAGE_THRESHOLD = 250
MAX_PAGES = 100
PAGE_RETRIES = 2
RETRY_BACKOFF = 0.5  # seconds, fixed

# Transfers
TRANSFER_CONCURRENCY = 2

# Timeouts (seconds)
CONNECT_TIMEOUT = 30.0
READ_TIMEOUT = 60.0
WRITE_TIMEOUT = 60.0
PROBE_TIMEOUT = 10.0
RELAY_TIMEOUT = 10.0

# Authorization events
AUTH_EXPIRATION = 3600  # 1 hour
CLOCK_DRIFT = 5  # created_at is backdated by this much
AUTH_PREFIX_NOSTR = "Nostr"
AUTH_PREFIX_BLOSSOM = "Blossom"
AUTH_PREFIXES = (AUTH_PREFIX_NOSTR, AUTH_PREFIX_BLOSSOM)

# Local network cache
LOCAL_CACHE_PORT = 24242
LOCAL_CACHE_HOSTS = ("127.0.0.1", "10.0.2.2")
LOCAL_HOSTS = ("127.0.0.1", "localhost", "10.0.2.2", "::1")

USER_AGENT = "blossomsync/0.1.0"
DEFAULT_MIME_TYPE = "application/octet-stream"

# Event Kinds
FILE_METADATA_KIND = 1063
RELAY_LIST_KIND = 10002
SERVER_LIST_KIND = 10063
AUTH_KIND = 24242

# NIP-94 tags kept from relay metadata
METADATA_TAG_KEYS = ("t", "name", "alt", "summary", "thumb", "blurhash", "dim")

# Local label edits outrank relay edits for this long
LOCAL_EDIT_GRACE = 300

DEFAULT_RELAYS = [
    "wss://purplepag.es",
    "wss://user.kindpag.es",
    "wss://relay.damus.io",
    "wss://nos.lol",
    "wss://relay.primal.net",
    "wss://relay.snort.social",
]

# View selectors
VIEW_TRASH = "TRASH"
VIEW_NOSTR = "NOSTR"

# Error Codes
ERROR_CODES = {
    'AUTH_REJECTED': 'Server rejected the authorization header',
    'SERVER_ERROR': 'Server returned an error status',
    'NETWORK_ERROR': 'Network error talking to server',
    'HASH_MISMATCH': 'Server hash does not match the local hash',
    'PROTOCOL_MISMATCH': 'Unexpected response from server',
    'SIGNATURE_REQUIRED': 'Signer needs interactive confirmation',
    'NO_SERVERS': 'No Blossom servers configured',
    'UPLOAD_FAILED': 'Upload failed on every configured server',
}
