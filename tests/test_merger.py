from blossomsync.blob import Blob
from blossomsync.fetcher import FetchResult
from blossomsync.merger import RegistryMerger, servers_per_hash, sort_blobs

A = "https://a.example"
B = "https://b.example"
C = "https://c.example"


def blob(char: str, server=A, created=100, mime="image/png") -> Blob:
    sha256 = char * 64
    return Blob(sha256, f"{server}/{sha256}", 10, mime, server, created)


def complete(server, *blobs):
    return FetchResult(server, list(blobs), complete=True, pages=1)


def failed(server, *blobs):
    return FetchResult(server, list(blobs), complete=False, error="boom")


class TestMerge:
    def test_upsert_and_sort(self):
        merger = RegistryMerger()
        old = blob("a", created=1)
        updated = Blob(old.sha256, old.url, 99, "image/png", A, 1)
        new = blob("b", created=5)

        registry, trash = merger.merge([old], [complete(A, updated, new)])

        assert registry == [new, updated]
        assert trash == []

    def test_non_media_is_ignored(self):
        merger = RegistryMerger()
        registry, _ = merger.merge([], [complete(A, blob("a", mime="application/pdf"))])
        assert registry == []

        registry, _ = RegistryMerger(media_only=False).merge([], [complete(A, blob("a", mime="application/pdf"))])
        assert len(registry) == 1

    def test_missing_from_complete_listing_is_removed(self):
        """Deleted elsewhere: the hash leaves the registry and lands in trash"""
        merger = RegistryMerger()
        gone = blob("a")
        kept = blob("b")

        registry, trash = merger.merge([gone, kept], [complete(A, kept)])

        assert registry == [kept]
        assert [t.sha256 for t in trash] == [gone.sha256]
        assert trash[0].server_url is None

    def test_failed_server_entries_are_untouched(self):
        """A timeout on B leaves B's entries alone"""
        merger = RegistryMerger()
        on_a = blob("a", A)
        on_b = blob("b", B)

        registry, trash = merger.merge([on_a, on_b], [complete(A, on_a), failed(B)])

        assert set(b.key for b in registry) == {on_a.key, on_b.key}
        assert trash == []

    def test_no_demotion_while_any_server_failed(self):
        """Absence is only confirmed by a fully complete cycle"""
        merger = RegistryMerger()
        only_on_a = blob("a", A)

        registry, trash = merger.merge([only_on_a], [complete(A), failed(B)])

        assert [b.sha256 for b in registry] == [only_on_a.sha256]
        assert trash == []

        registry, trash = merger.merge(registry, [complete(A), complete(B)])
        assert registry == []
        assert [t.sha256 for t in trash] == [only_on_a.sha256]

    def test_every_instance_kept_while_any_server_failed(self):
        merger = RegistryMerger()
        on_a = blob("a", A)
        on_c = blob("a", C)

        registry, trash = merger.merge([on_a, on_c], [complete(A), complete(C), failed(B)])

        assert {b.key for b in registry} == {on_a.key, on_c.key}
        assert trash == []

    def test_rehosted_hash_leaves_trash(self):
        merger = RegistryMerger()
        back = blob("a", B)

        registry, trash = merger.merge([], [complete(B, back)], [back.orphaned()])

        assert registry == [back]
        assert trash == []

    def test_hash_on_second_server_stays_hosted(self):
        merger = RegistryMerger()
        on_a = blob("a", A)
        on_b = blob("a", B)

        registry, trash = merger.merge([on_a, on_b], [complete(A), complete(B, on_b)])

        assert registry == [on_b]
        assert trash == []

    def test_never_in_both(self):
        merger = RegistryMerger()
        registry, trash = merger.merge(
            [blob("a"), blob("b", B)],
            [complete(A, blob("c")), complete(B, blob("b", B))],
            [blob("b").orphaned(), blob("d").orphaned()],
        )
        assert not {b.sha256 for b in registry} & {t.sha256 for t in trash}

    def test_unknown_timestamps_sort_last(self):
        dated = blob("a", created=5)
        undated = Blob("b" * 64, "https://a.example/b", mime_type="image/png", server_url=A)
        assert sort_blobs([undated, dated]) == [dated, undated]


class TestSingleWriterOperations:
    def test_upsert_removes_from_trash(self):
        merger = RegistryMerger()
        uploaded = blob("a", B)

        registry, trash = merger.upsert([], [uploaded.orphaned()], [uploaded])

        assert registry == [uploaded]
        assert trash == []

    def test_remove_instances_moves_last_copy_to_trash(self):
        merger = RegistryMerger()
        on_a, on_b = blob("a", A), blob("a", B)

        registry, trash = merger.remove_instances([on_a, on_b], [], [on_a.key])
        assert registry == [on_b]
        assert trash == []

        registry, trash = merger.remove_instances(registry, trash, [on_b.key])
        assert registry == []
        assert [t.key for t in trash] == [(on_a.sha256, None)]

    def test_adopt_vaulted(self):
        merger = RegistryMerger()
        hosted = blob("a")
        vault_only = Blob("b" * 64, "file:///vault/b.png", 3, "image/png")

        registry, trash = merger.adopt_vaulted([hosted], [], [hosted.orphaned(), vault_only])

        assert registry == [hosted]
        assert [t.sha256 for t in trash] == [vault_only.sha256]

    def test_servers_per_hash(self):
        result = servers_per_hash([blob("a", A), blob("a", B), blob("b", B)])
        assert result == {"a" * 64: [A, B], "b" * 64: [B]}
