#!/usr/bin/env python3
"""
Basic usage example for blossomsync
"""
import asyncio
import sys

from nostr_sdk import LogLevel, init_logger

from blossomsync import (
    BlobVault, BlossomClient, KeySigner, LibraryService, LibraryStore, NostrRelayPool
)

# Initialize nostr logging
init_logger(LogLevel.INFO)


async def main(secret: str):
    signer = KeySigner(secret)
    print(f"Using pubkey: {signer.pubkey}")

    store = LibraryStore.open("./example-data")
    relays = NostrRelayPool(["wss://relay.damus.io", "wss://nos.lol"])

    async with BlossomClient() as client:
        service = LibraryService(signer.pubkey, client, store, BlobVault("./example-data/vault"),
                                 signer=signer, relays=relays)

        # Server list (kind 10063) and file metadata from relays
        discovery = await service.discover()
        print(f"Servers: {', '.join(discovery.servers) or 'none'}")

        results = await service.refresh(sync=False)
        for result in results or []:
            status = "complete" if result.complete else f"failed ({result.error})"
            print(f"  {result.server_url}: {len(result.blobs)} blobs, {status}")

        state = service.snapshot
        print(f"{len(state.registry)} hosted entries, {len(state.trash)} in trash")

        # Example: copy everything into the vault
        # for report in await service.sync_tiers():
        #     print(report.message)

        await relays.close()


if __name__ == "__main__":
    if len(sys.argv) != 2:
        print("usage: basic_usage.py <nsec or hex secret key>")
        sys.exit(1)
    asyncio.run(main(sys.argv[1]))
