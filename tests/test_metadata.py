from blossomsync.metadata import FileMetadataCache, MetadataRecord

HASH = "a" * 64


class TestFileMetadataCache:
    def test_local_edit_always_applies(self):
        cache = FileMetadataCache()
        cache.apply_relay(HASH, [("t", "relay")], created_at=5000)

        cache.update_labels(HASH, ["mine"], now=1000)

        assert cache.labels(HASH) == ["mine"]

    def test_relay_needs_grace_to_beat_local(self):
        """A relay edit within the grace window of a local edit is ignored"""
        cache = FileMetadataCache(grace=300)
        cache.update_labels(HASH, ["mine"], now=1000)

        assert not cache.apply_relay(HASH, [("t", "relay")], created_at=1300)
        assert cache.labels(HASH) == ["mine"]

        assert cache.apply_relay(HASH, [("t", "relay")], created_at=1301)
        assert cache.labels(HASH) == ["relay"]

    def test_relay_vs_relay_strictly_newer_wins(self):
        cache = FileMetadataCache()
        cache.apply_relay(HASH, [("t", "first")], created_at=100)

        assert not cache.apply_relay(HASH, [("t", "tie")], created_at=100)
        assert cache.labels(HASH) == ["first"]
        assert not cache.apply_relay(HASH, [("t", "older")], created_at=50)
        assert cache.apply_relay(HASH, [("t", "newer")], created_at=101)
        assert cache.labels(HASH) == ["newer"]

    def test_keys_merge_independently(self):
        """A relay name update does not clobber local labels"""
        cache = FileMetadataCache()
        cache.update_labels(HASH, ["mine"], now=1000)

        cache.apply_relay(HASH, [("t", "relay"), ("name", "from-relay.jpg")], created_at=1010)

        assert cache.labels(HASH) == ["mine"]
        assert ("name", "from-relay.jpg") in cache.tags(HASH)

    def test_name_edit(self):
        cache = FileMetadataCache()
        cache.update_labels(HASH, ["a", "a", "b"], name="pic.jpg", now=1)
        assert cache.tags(HASH) == [("t", "a"), ("t", "b"), ("name", "pic.jpg")]

    def test_merge_records(self):
        cache = FileMetadataCache()
        changed = cache.merge_records([
            MetadataRecord(HASH, 10, [("t", "x")]),
            MetadataRecord("b" * 64, 10, [("alt", "a cat")]),
        ])
        assert changed == 2
        assert set(cache.snapshot()) == {HASH, "b" * 64}

    def test_persistence(self):
        cache = FileMetadataCache()
        cache.update_labels(HASH, ["mine"], now=7)
        cache.apply_relay(HASH, [("thumb", "https://t.example/1")], created_at=9)

        restored = FileMetadataCache.from_dict(cache.to_dict())

        assert restored.tags(HASH) == cache.tags(HASH)
        assert restored.entries[HASH]["t"].local
        assert not restored.entries[HASH]["thumb"].local
