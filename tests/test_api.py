import asyncio

import httpx
import pytest

from blossomsync.api import BlossomClient, hash_from_url, parse_upload_response, server_root, url_extension
from blossomsync.auth import encode_auth_header
from blossomsync.errors import (
    AuthRejectedError, DataIntegrityError, ProtocolMismatchError, ServerError, TransientNetworkError
)

from conftest import PUBKEY, sha

HEADER = encode_auth_header('{"kind":24242,"sig":"00"}')


def run(coro):
    return asyncio.run(coro)


class TestListing:
    def test_list_page(self, network):
        server = network.server("https://a.example")
        digest = server.add(b"one")

        async def go():
            async with network.client() as client:
                return await client.list_page("https://a.example/", PUBKEY, HEADER)

        blobs = run(go())
        assert [b.sha256 for b in blobs] == [digest]
        assert blobs[0].server_url == "https://a.example"
        assert server.requests[0].url.params["limit"] == "256"

    def test_list_falls_back_to_blossom_prefix(self, network):
        """A server that only accepts Blossom lists after one retry"""
        server = network.server("https://a.example", accept_prefix="Blossom")
        server.add(b"one")

        async def go():
            async with network.client() as client:
                return await client.list_page("https://a.example", PUBKEY, HEADER)

        assert len(run(go())) == 1
        assert [r.headers["Authorization"].split(" ")[0] for r in server.requests] == ["Nostr", "Blossom"]

    def test_list_rejected(self, network):
        network.server("https://a.example", accept_prefix="Other")

        async def go():
            async with network.client() as client:
                await client.list_page("https://a.example", PUBKEY, HEADER)

        with pytest.raises(AuthRejectedError):
            run(go())

    def test_list_server_error(self, network):
        network.server("https://a.example").list_status = 503

        async def go():
            async with network.client() as client:
                await client.list_page("https://a.example", PUBKEY, HEADER)

        with pytest.raises(ServerError) as excinfo:
            run(go())
        assert excinfo.value.status_code == 503

    def test_list_connection_refused(self, network):
        async def go():
            async with network.client() as client:
                await client.list_page("https://nowhere.example", PUBKEY)

        with pytest.raises(TransientNetworkError):
            run(go())

    def test_malformed_body(self):
        def handler(request):
            return httpx.Response(200, json={"error": "not a list"})

        async def go():
            async with BlossomClient(httpx.AsyncClient(transport=httpx.MockTransport(handler))) as client:
                await client.list_page("https://a.example", PUBKEY)

        with pytest.raises(ProtocolMismatchError):
            run(go())

    def test_bad_items_are_skipped(self):
        good = {"url": "https://a.example/" + "b" * 64, "sha256": "b" * 64}

        def handler(request):
            return httpx.Response(200, json=[{"url": "https://a.example/x"}, good, "junk"])

        async def go():
            async with BlossomClient(httpx.AsyncClient(transport=httpx.MockTransport(handler))) as client:
                return await client.list_page("https://a.example", PUBKEY)

        assert [b.sha256 for b in run(go())] == ["b" * 64]

    def test_user_agent_is_sent(self, network):
        server = network.server("https://a.example")

        async def go():
            async with network.client() as client:
                await client.list_page("https://a.example", PUBKEY)

        run(go())
        assert server.requests[0].headers["User-Agent"].startswith("blossomsync/")


class TestUpload:
    def test_put_upload(self, network):
        server = network.server("https://a.example")
        data = b"picture"

        async def go():
            async with network.client() as client:
                return await client.upload("https://a.example", data, sha(data), HEADER, "image/gif")

        result = run(go())
        assert result.sha256 == sha(data)
        assert server.requests[0].method == "PUT"
        assert server.requests[0].headers["Content-Type"] == "image/gif"

    def test_post_after_put_fails(self):
        data = b"picture"
        methods = []

        def handler(request):
            methods.append(request.method)
            if request.method == "PUT":
                return httpx.Response(405)
            return httpx.Response(200, json={"url": f"https://a.example/{sha(data)}.gif"})

        async def go():
            async with BlossomClient(httpx.AsyncClient(transport=httpx.MockTransport(handler))) as client:
                return await client.upload("https://a.example", data, sha(data), HEADER)

        result = run(go())
        assert methods == ["PUT", "POST"]
        assert result.sha256 == sha(data)  # recovered from the URL

    def test_hash_mismatch(self, network):
        server = network.server("https://a.example")
        server.report_hash = "c" * 64
        data = b"picture"

        async def go():
            async with network.client() as client:
                await client.upload("https://a.example", data, sha(data), HEADER)

        with pytest.raises(DataIntegrityError):
            run(go())

    def test_mirror(self, network):
        source = network.server("https://a.example")
        target = network.server("https://b.example")
        digest = source.add(b"photo")

        async def go():
            async with network.client() as client:
                return await client.mirror("https://b.example", source.blobs[digest]["url"], HEADER)

        result = run(go())
        assert result.server_url == "https://b.example"
        assert digest in target.data


class TestDeleteAndProbe:
    def test_delete_falls_back_to_media_path(self, network):
        server = network.server("https://a.example")
        server.media_delete = True
        digest = server.add(b"x")

        async def go():
            async with network.client() as client:
                await client.delete("https://a.example", digest, HEADER)

        run(go())
        assert digest not in server.blobs
        assert [r.url.path for r in server.requests] == [f"/{digest}", f"/media/{digest}"]

    def test_delete_failure_raises(self, network):
        network.server("https://a.example")

        async def go():
            async with network.client() as client:
                await client.delete("https://a.example", "d" * 64, HEADER)

        with pytest.raises(ServerError):
            run(go())

    def test_exists(self, network):
        server = network.server("https://a.example")
        digest = server.add(b"x")

        async def go():
            async with network.client() as client:
                return (await client.exists("https://a.example", digest),
                        await client.exists("https://a.example", "e" * 64),
                        await client.exists("https://down.example", digest))

        assert run(go()) == (True, False, False)

    def test_detect_local_cache(self, network):
        """404 on the root still means a cache is listening"""
        network.server("http://10.0.2.2:24242")

        async def go():
            async with network.client() as client:
                return await client.detect_local_cache()

        assert run(go()) == "http://10.0.2.2:24242"

    def test_fetch_to_local_cache(self, network):
        origin = network.server("https://a.example")
        local = network.server("http://127.0.0.1:24242")
        digest = origin.add(b"x")

        async def go():
            async with network.client() as client:
                await client.fetch_to_local_cache(digest, origin.blobs[digest]["url"], local.url)

        run(go())
        request = local.requests[0]
        assert request.url.path == f"/{digest}.png"
        assert request.url.params["xs"] == "https://a.example"
        assert digest in local.data

    def test_malformed_url_is_a_protocol_error(self, network):
        network.server("https://a.example")

        async def go():
            async with network.client() as client:
                await client.download("https://a.example/\x7fbad.png")

        with pytest.raises(ProtocolMismatchError):
            run(go())


class TestHelpers:
    def test_server_root(self):
        assert server_root("https://a.example:443/x.png") == "https://a.example"
        assert server_root("http://a.example:3000/x.png") == "http://a.example:3000"

    def test_url_extension(self):
        assert url_extension("https://a.example/abc.jpg?x=1") == ".jpg"
        assert url_extension("https://a.example/abc") == ""

    def test_hash_from_url(self):
        assert hash_from_url("https://a.example/" + "A" * 64 + ".png") == "a" * 64
        assert hash_from_url("https://a.example/short.png") is None

    def test_parse_upload_response_requires_url(self):
        with pytest.raises(ProtocolMismatchError):
            parse_upload_response('{"sha256": "x"}', "https://a.example")
        with pytest.raises(ProtocolMismatchError):
            parse_upload_response("", "https://a.example")


class TestPrefixFallbackPerOperation:
    """Every authenticated call succeeds against a Blossom-only server after one retry"""

    def prefixes(self, server):
        return [r.headers["Authorization"].split(" ")[0] for r in server.requests if "Authorization" in r.headers]

    def test_upload(self, network):
        server = network.server("https://a.example", accept_prefix="Blossom")
        data = b"bytes"

        async def go():
            async with network.client() as client:
                await client.upload("https://a.example", data, sha(data), HEADER)

        run(go())
        assert self.prefixes(server) == ["Nostr", "Blossom"]

    def test_delete(self, network):
        server = network.server("https://a.example", accept_prefix="Blossom")
        digest = server.add(b"x")

        async def go():
            async with network.client() as client:
                await client.delete("https://a.example", digest, HEADER)

        run(go())
        assert self.prefixes(server) == ["Nostr", "Blossom"]

    def test_mirror(self, network):
        source = network.server("https://a.example")
        digest = source.add(b"x")
        target = network.server("https://b.example", accept_prefix="Blossom")

        async def go():
            async with network.client() as client:
                await client.mirror("https://b.example", source.blobs[digest]["url"], HEADER)

        run(go())
        assert self.prefixes(target) == ["Nostr", "Blossom"]
