#!/usr/bin/env python3
import asyncio
import sys
from pathlib import Path

import click
from loguru import logger
from nostr_sdk import LogLevel, init_logger

from blossomsync import (
    BlobVault, BlossomClient, DiskCache, KeySigner, LibraryService, LibraryStore,
    NostrRelayPool, ViewFilter
)
from blossomsync.constants import DEFAULT_RELAYS, VIEW_NOSTR, VIEW_TRASH
from blossomsync.errors import BlossomError
from blossomsync.merger import servers_per_hash

# Initialize nostr logging
init_logger(LogLevel.WARN)


def run_with_service(ctx, action):
    """Build a LibraryService from the CLI options and run `action(service)`."""
    obj = ctx.obj
    if not obj['private_key']:
        raise click.UsageError("A private key is required (--private-key or BLOSSOMSYNC_PRIVATE_KEY)")

    async def _run():
        data_dir = Path(obj['data_dir'])
        signer = KeySigner(obj['private_key'])
        store = LibraryStore.open(data_dir)
        if store.pubkey != signer.pubkey:
            store.save_identity(signer.pubkey, store.servers, store.relays)
        relays = NostrRelayPool(list(obj['relays']) or store.relays or DEFAULT_RELAYS)

        async with BlossomClient() as client:
            service = LibraryService(
                signer.pubkey, client, store, BlobVault(data_dir / "vault"),
                signer=signer, relays=relays, disk_cache=DiskCache(data_dir / "cache"),
            )
            try:
                return await action(service)
            finally:
                await relays.close()

    try:
        return asyncio.run(_run())
    except BlossomError as e:
        click.echo(f"✗ {e}", err=True)
        sys.exit(1)


def short(sha256):
    return f"{sha256[:12]}…"


@click.group()
@click.option('--private-key', envvar='BLOSSOMSYNC_PRIVATE_KEY', help='Private key (nsec or hex)')
@click.option('--data-dir', envvar='BLOSSOMSYNC_DATA_DIR', default='./blossomsync-data',
              type=click.Path(file_okay=False), help='Directory for settings and the vault')
@click.option('--relays', multiple=True, help='Relay URLs (defaults to the saved relay list)')
@click.option('--verbose', '-v', is_flag=True, help='Debug logging')
@click.pass_context
def cli(ctx, private_key, data_dir, relays, verbose):
    """blossomsync - keep your Blossom blobs in sync across servers"""
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if verbose else "INFO")
    ctx.obj = {
        'private_key': private_key,
        'data_dir': data_dir,
        'relays': relays,
    }


@cli.command()
@click.option('--no-sync', is_flag=True, help='Skip vault and local cache sync')
@click.pass_context
def refresh(ctx, no_sync):
    """List every server and merge the results"""
    async def _refresh(service):
        results = await service.refresh(sync=not no_sync)
        state = service.snapshot
        if results is None:
            click.echo(f"✗ {state.error or 'Refresh superseded'}", err=True)
            return
        for result in results:
            mark = "✓" if result.complete else "✗"
            click.echo(f"{mark} {result.server_url}: {len(result.blobs)} blobs in {result.pages} pages")
        for line in state.diagnostics:
            click.echo(f"  {line}", err=True)
        click.echo(f"{len(state.registry)} hosted entries, {len(state.trash)} in trash")

    run_with_service(ctx, _refresh)


@cli.command()
@click.option('--server', help='Only blobs on this server')
@click.option('--trash', is_flag=True, help='Show the trash')
@click.option('--nostr', is_flag=True, help='Show relay-announced blobs no server confirmed')
@click.option('--label', 'labels', multiple=True, help='Require label (repeatable)')
@click.option('--ext', 'extensions', multiple=True, help='Only these extensions')
@click.option('--images/--no-images', default=True)
@click.option('--videos/--no-videos', default=True)
@click.pass_context
def ls(ctx, server, trash, nostr, labels, extensions, images, videos):
    """Show the library"""
    async def _ls(service):
        selector = VIEW_TRASH if trash else VIEW_NOSTR if nostr else server
        view_filter = ViewFilter(images, videos, frozenset(extensions), frozenset(labels))
        state = service.snapshot
        hosts = servers_per_hash(state.registry)
        blobs = service.view(selector, view_filter)
        for blob in blobs:
            tags = state.metadata.get(blob.sha256)
            label_text = ",".join(blob.labels(tags))
            click.echo(f"{blob.sha256}  {blob.size:>10}  {blob.mime_type or '-':<16} "
                       f"{len(hosts.get(blob.sha256, []))} servers  {label_text}")
        click.echo(f"{len(blobs)} blobs")

    run_with_service(ctx, _ls)


@cli.command()
@click.argument('file_path', type=click.Path(exists=True, dir_okay=False))
@click.option('--label', 'labels', multiple=True, help='Label (repeatable)')
@click.pass_context
def upload(ctx, file_path, labels):
    """Upload a file to the first server that accepts it and mirror it to the rest"""
    async def _upload(service):
        click.echo(f"Uploading {file_path}...")
        outcome = await service.upload(file_path, labels)
        click.echo("✓ File uploaded successfully!")
        click.echo(f"  Hash: {outcome.sha256}")
        click.echo(f"  Size: {outcome.size} bytes")
        click.echo(f"  URL: {outcome.primary.url}")
        for mirror in outcome.mirrors:
            click.echo(f"  Mirror: {mirror.url}")
        for error in outcome.errors:
            click.echo(f"  ✗ {error}", err=True)

    run_with_service(ctx, _upload)


@cli.command()
@click.argument('hashes', nargs=-1, required=True)
@click.option('--server', 'servers', multiple=True, help='Only delete from these servers')
@click.pass_context
def delete(ctx, hashes, servers):
    """Delete blobs by hash"""
    async def _delete(service):
        report = await service.bulk_delete(hashes, servers or None)
        click.echo(report.message)

    run_with_service(ctx, _delete)


@cli.command()
@click.argument('hashes', nargs=-1, required=True)
@click.option('--server', 'servers', multiple=True, help='Target servers (default: all)')
@click.pass_context
def mirror(ctx, hashes, servers):
    """Copy blobs to servers that lack them"""
    async def _mirror(service):
        report = await service.bulk_mirror(hashes, servers or None)
        click.echo(report.message)

    run_with_service(ctx, _mirror)


@cli.command()
@click.argument('file_hash')
@click.argument('labels', nargs=-1)
@click.option('--name', help='Display name')
@click.pass_context
def label(ctx, file_hash, labels, name):
    """Replace the labels of a blob and announce them on relays"""
    async def _label(service):
        report = await service.update_labels(file_hash, labels, name)
        click.echo(f"✓ Labels set on {short(file_hash)}")
        if report.failed:
            click.echo("  (not published to relays)", err=True)

    run_with_service(ctx, _label)


@cli.command()
@click.option('--empty', is_flag=True, help='Delete vault copies of everything in the trash')
@click.pass_context
def trash(ctx, empty):
    """Show or empty the trash"""
    async def _trash(service):
        if empty:
            removed = service.empty_trash()
            click.echo(f"✓ Trash emptied ({removed} vault files removed)")
            return
        for blob in service.snapshot.trash:
            vaulted = "vaulted" if blob.sha256 in service.snapshot.vaulted else "not vaulted"
            click.echo(f"{blob.sha256}  {blob.size:>10}  {vaulted}")

    run_with_service(ctx, _trash)


@cli.command()
@click.pass_context
def sync(ctx):
    """Copy hosted blobs into the vault and the local cache"""
    async def _sync(service):
        for report in await service.sync_tiers():
            click.echo(report.message)

    run_with_service(ctx, _sync)


@cli.command()
@click.option('--add', 'added', multiple=True, help='Add a server URL')
@click.option('--remove', 'removed', multiple=True, help='Remove a server URL')
@click.option('--discover', is_flag=True, help='Read the server list from relays')
@click.pass_context
def servers(ctx, added, removed, discover):
    """Show or edit the configured Blossom servers"""
    async def _servers(service):
        if discover:
            found = await service.discover()
            click.echo(f"Found {len(found.servers)} servers and {len(found.discovered)} announced blobs")
        if added or removed:
            drop = {s.rstrip("/") for s in removed}
            service.set_servers([s for s in service.configured_servers + list(added) if s.rstrip("/") not in drop])
        for server in service.configured_servers:
            click.echo(server)
        if service.snapshot.local_server_url:
            click.echo(f"{service.snapshot.local_server_url} (local cache)")

    run_with_service(ctx, _servers)


@cli.command('detect-local')
@click.pass_context
def detect_local(ctx):
    """Look for a local Blossom cache on port 24242"""
    async def _detect(service):
        url = await service.detect_local_cache()
        if url:
            click.echo(f"✓ Local cache at {url}")
        else:
            click.echo("No local cache found")

    run_with_service(ctx, _detect)


if __name__ == '__main__':
    cli()
