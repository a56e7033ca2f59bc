# tests/test_cache_index.py
"""Test the file-backed image cache"""

import os
import time

import pytest

from lyricslides.cache import CacheFilter, CacheIndex, CacheKey, parse_file_id, sidecar_path
from lyricslides.core.exceptions import CacheIOError
from lyricslides.providers import provider_for_model


HASH = "3f2a9c1b7d"


def identity_key(title="Amazing Grace", artist="Traditional", prompt_hash=HASH):
    return CacheKey(
        prompt_hash=prompt_hash,
        model="dall-e-3",
        size="1792x1024",
        provider="openai",
        song_title=title,
        artist=artist,
    )


def request_key(model="dall-e-3", provider="openai", quality="standard", style="natural", prompt_hash=HASH):
    return CacheKey(
        prompt_hash=prompt_hash,
        model=model,
        size="1792x1024",
        provider=provider,
        quality=quality,
        style=style,
    )


def cached_files(directory):
    return sorted(p.name for p in directory.iterdir() if not p.name.startswith("."))


class TestNaming:
    """Test deterministic cache file names"""

    def test_identity_file_id_is_sanitized_and_case_folded(self):
        key = CacheKey(prompt_hash=HASH, model="dall-e-3", size="1024x1024", song_title="AC/DC Song_Title", artist="Some_Artist")
        assert key.file_id == f"ac-dc song-title_some-artist_{HASH}"

    def test_identity_without_artist(self):
        assert identity_key(artist=None).file_id == f"amazing grace__{HASH}"

    def test_request_file_id(self):
        assert request_key().file_id == f"{HASH}_dall-e-3_1792x1024_standard_natural"
        assert request_key(quality=None, style=None).file_id == f"{HASH}_dall-e-3_1792x1024"

    def test_parse_file_id(self):
        assert parse_file_id(f"{HASH}_dall-e-3_1792x1024_standard_natural") == {
            "prompt_hash": HASH, "model": "dall-e-3", "size": "1792x1024",
            "quality": "standard", "style": "natural",
        }
        assert parse_file_id(f"{HASH}_sdxl_1344x768_vivid")["style"] == "vivid"
        assert parse_file_id(f"amazing grace__{HASH}") == {
            "song_title": "amazing grace", "artist": None, "prompt_hash": HASH,
        }
        assert parse_file_id("holiday-photo") is None


class TestInsertAndLookup:
    """Test inserting and finding cached images"""

    def test_identity_lookup_is_case_insensitive(self, cache, png_bytes):
        inserted = cache.insert(identity_key(), png_bytes)
        found = cache.lookup_by_identity("AMAZING grace", "traditional")
        assert found is not None
        assert found.file_path == inserted.file_path
        assert found.file_path.read_bytes() == png_bytes

    def test_identity_lookup_artist_rules(self, cache, png_bytes):
        cache.insert(identity_key(), png_bytes)
        assert cache.lookup_by_identity("Amazing Grace") is not None
        assert cache.lookup_by_identity("Amazing Grace", "Someone Else") is None
        assert cache.lookup_by_identity("Amazing") is None

    def test_same_identity_twice_leaves_one_file(self, cache, png_bytes, jpeg_bytes):
        cache.insert(identity_key(), png_bytes)
        entry = cache.insert(identity_key(title="AMAZING GRACE"), jpeg_bytes)

        assert cached_files(cache.directory) == [f"amazing grace_traditional_{HASH}.jpg"]
        assert entry.file_path.read_bytes() == jpeg_bytes
        assert len(cache) == 1

    def test_lookup_by_key(self, cache, png_bytes):
        cache.insert(request_key(), png_bytes)
        assert cache.lookup_by_key(HASH, "dall-e-3", "1792x1024", "standard", "natural") is not None
        assert cache.lookup_by_key(HASH, "dall-e-3", "1792x1024", "hd", "natural") is None
        assert cache.lookup_by_key(HASH, "dall-e-3", "1024x1024", "standard", "natural") is None

    def test_lookup_refreshes_access_time(self, cache, png_bytes):
        entry = cache.insert(request_key(), png_bytes)
        old = time.time() - 3600
        os.utime(entry.file_path, (old, old))
        entry.last_accessed_at = old

        found = cache.lookup_by_key(HASH, "dall-e-3", "1792x1024", "standard", "natural")
        assert found.last_accessed_at > old
        assert found.file_path.stat().st_atime > old

    def test_vanished_file_is_a_miss(self, cache, png_bytes):
        entry = cache.insert(identity_key(), png_bytes)
        entry.file_path.unlink()
        assert cache.lookup_by_identity("Amazing Grace") is None
        assert len(cache) == 0


class TestBuild:
    """Test rebuilding the index from the directory"""

    def test_rebuild_finds_existing_files(self, cache, png_bytes):
        cache.insert(identity_key(), png_bytes)
        cache.insert(request_key(), png_bytes)
        (cache.directory / "notes.txt").write_text("not an image")

        rebuilt = CacheIndex(cache.directory, model_owner=provider_for_model)
        assert rebuilt.build() == 2

        identity = rebuilt.lookup_by_identity("Amazing Grace", "Traditional")
        assert identity is not None
        assert identity.prompt_hash == HASH

        keyed = rebuilt.lookup_by_key(HASH, "dall-e-3", "1792x1024", "standard", "natural")
        assert keyed is not None
        assert keyed.provider == "openai"

    def test_rebuild_restores_provider_of_song_images(self, cache, png_bytes):
        entry = cache.insert(identity_key(), png_bytes)
        assert sidecar_path(entry.file_path).exists()

        rebuilt = CacheIndex(cache.directory, model_owner=provider_for_model)
        rebuilt.build()
        restored = rebuilt.lookup_by_identity("Amazing Grace", "Traditional")

        assert (restored.provider, restored.model, restored.size) == ("openai", "dall-e-3", "1792x1024")
        assert restored.song_title == "Amazing Grace"

    def test_rebuild_clears_song_images_by_provider(self, cache, png_bytes):
        cache.insert(identity_key(), png_bytes)
        cache.insert(identity_key(title="How Great Thou Art"), png_bytes)
        cache.insert(request_key(model="stable-diffusion-xl-1024-v1-0", provider="stabilityai", quality=None, style=None), png_bytes)

        rebuilt = CacheIndex(cache.directory, model_owner=provider_for_model)
        rebuilt.build()

        assert rebuilt.clear(CacheFilter(provider="openai")) == 2
        assert rebuilt.clear(CacheFilter(model="dall-e-3")) == 0
        assert [e.provider for e in rebuilt.entries()] == ["stabilityai"]
        assert [name for name in os.listdir(cache.directory) if name.endswith(".json")] == [
            f".{HASH}_stable-diffusion-xl-1024-v1-0_1792x1024.json"
        ]

    def test_rebuild_without_metadata_uses_file_name(self, cache, png_bytes):
        entry = cache.insert(identity_key(), png_bytes)
        sidecar_path(entry.file_path).write_text("{not json", encoding="utf-8")

        rebuilt = CacheIndex(cache.directory)
        assert rebuilt.build() == 1
        restored = rebuilt.lookup_by_identity("Amazing Grace")
        assert restored.provider == ""
        assert restored.song_title == "amazing grace"

    def test_build_evicts_expired_entries(self, cache, png_bytes):
        entry = cache.insert(identity_key(), png_bytes)
        old = time.time() - 10 * 86400
        os.utime(entry.file_path, (old, old))

        rebuilt = CacheIndex(cache.directory, retention=86400)
        assert rebuilt.build() == 0
        assert not entry.file_path.exists()

    def test_unusable_directory_disables_cache(self, temp_dir, png_bytes):
        not_a_directory = temp_dir / "cache"
        not_a_directory.write_text("occupied")

        index = CacheIndex(not_a_directory)
        assert index.build() == 0
        assert index.enabled is False
        assert index.disabled_reason
        assert index.lookup_by_identity("Amazing Grace") is None
        with pytest.raises(CacheIOError):
            index.insert(identity_key(), png_bytes)

    def test_disabled_by_configuration(self, temp_dir):
        index = CacheIndex(temp_dir / "cache", enabled=False)
        assert index.build() == 0
        assert not (temp_dir / "cache").exists()


class TestMaintenance:
    """Test eviction, clearing and size reporting"""

    def test_evict_expired(self, cache, png_bytes):
        entry = cache.insert(request_key(), png_bytes)
        assert cache.evict_expired(ttl=60, now=time.time() + 3600) == 1
        assert not entry.file_path.exists()
        assert len(cache) == 0

    def test_clear_by_provider(self, cache, png_bytes):
        cache.insert(request_key(), png_bytes)
        cache.insert(request_key(model="stable-diffusion-xl-1024-v1-0", provider="stabilityai", quality=None, style=None), png_bytes)

        assert cache.clear(CacheFilter(provider="openai")) == 1
        remaining = cache.entries()
        assert [e.provider for e in remaining] == ["stabilityai"]

    def test_clear_all(self, cache, png_bytes):
        cache.insert(identity_key(), png_bytes)
        cache.insert(request_key(), png_bytes)
        assert cache.clear() == 2
        assert cached_files(cache.directory) == []

    def test_clear_before(self, cache, png_bytes):
        cache.insert(request_key(), png_bytes)
        assert cache.clear(CacheFilter(before=time.time() - 3600)) == 0
        assert cache.clear(CacheFilter(before=time.time() + 3600)) == 1

    def test_size_info(self, cache, png_bytes, jpeg_bytes):
        cache.insert(identity_key(), png_bytes)
        cache.insert(request_key(), jpeg_bytes)
        info = cache.size_info()
        assert info["file_count"] == 2
        assert info["total_size_bytes"] == len(png_bytes) + len(jpeg_bytes)
        assert info["total_size_mb"] == round(info["total_size_bytes"] / (1024 * 1024), 2)


class TestImportImage:
    """Test importing local images as song backgrounds"""

    def test_import_image(self, cache, temp_dir, png_bytes):
        source = temp_dir / "background.png"
        source.write_bytes(png_bytes)

        entry = cache.import_image(source, "Amazing Grace")
        assert entry.provider == "local"
        assert entry.file_path.parent == cache.directory
        assert entry.file_path.read_bytes() == png_bytes
        assert cache.lookup_by_identity("amazing grace").file_id == entry.file_id

    def test_import_rejects_non_images(self, cache, temp_dir):
        source = temp_dir / "background.png"
        source.write_text("definitely not a picture")
        with pytest.raises(CacheIOError):
            cache.import_image(source, "Amazing Grace")

    def test_import_missing_file(self, cache, temp_dir):
        with pytest.raises(CacheIOError):
            cache.import_image(temp_dir / "missing.png", "Amazing Grace")
