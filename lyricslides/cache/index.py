"""
Content-addressed image cache for lyricslides.

Generated images are stored once in a flat cache directory. The directory
is the source of truth: there is no index file, and the in-memory index
is rebuilt from file names and timestamps whenever a CacheIndex is built.

File Naming:
    Song identity (used when a song title is known):
        {title}_{artist}_{promptHash}.{ext}
        amazing grace_traditional_3f2a9c1b7d.png
        amazing grace__3f2a9c1b7d.png            (no artist)

    Request key (no song title):
        {promptHash}_{model}_{size}[_{quality}][_{style}].{ext}
        3f2a9c1b7d_dall-e-3_1792x1024_standard_natural.png

    Components are sanitized ("_" becomes "-") and title/artist are
    case-folded, so the same identity always maps to the same file and
    case variants of a title share it.

Metadata:
    Each image has a hidden sidecar .{file_id}.json holding the fields the
    name does not carry (provider, model, size, original title/artist).
    build() reads it back; an image without a readable sidecar is still
    indexed from its name alone.

Timestamps:
    created_at       file mtime
    last_accessed_at file atime, refreshed with os.utime() on every hit so
                     the retention window survives a restart

Thread Safety:
    All public methods acquire self._lock. Writes go through a temp file
    and os.replace(), so concurrent inserts for one key leave one file.

Usage:
    cache = CacheIndex(Path("~/.lyricslides/cache").expanduser(), retention=30 * 86400)
    cache.build()

    key = CacheKey(prompt_hash=h, model="dall-e-3", size="1792x1024",
                   provider="openai", song_title="Amazing Grace")
    entry = cache.lookup_by_identity("Amazing Grace") or cache.insert(key, data)
"""

import hashlib
import json
import os
import re
import tempfile
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from lyricslides.core.exceptions import CacheIOError
from lyricslides.core.logger import get_logger
from lyricslides.utils import (
    IMAGE_EXTENSIONS,
    detect_image_format,
    image_extension,
    sanitize_component,
)

logger = get_logger(__name__)


_HASH_PATTERN = re.compile(r"^[0-9a-f]{10}$")
_SIZE_PATTERN = re.compile(r"^\d+x\d+$")
_CACHED_SUFFIXES = frozenset(f".{ext}" for ext in IMAGE_EXTENSIONS.values()) | {".jpeg"}

# Style vocabulary, used to tell a lone trailing style from a lone quality
KNOWN_STYLES = frozenset({"natural", "vivid"})

LOCAL_IMPORT_PROVIDER = "local"
LOCAL_IMPORT_MODEL = "import"

# Fields restored from the sidecar on build()
SIDECAR_FIELDS = ("provider", "model", "size", "quality", "style", "song_title", "artist")


@dataclass(frozen=True)
class CacheKey:
    """
    Everything that determines where a generated image is stored.

    Attributes:
        prompt_hash: prompt_hash() of the final prompt.
        model: Provider model name.
        size: Provider-native size string, e.g. "1792x1024".
        provider: Canonical provider name (kept on the entry, not in the name).
        quality: Optional quality hint.
        style: Optional style hint.
        song_title: When set, the identity naming scheme is used.
        artist: Optional artist for the identity name.
    """
    prompt_hash: str
    model: str
    size: str
    provider: str = ""
    quality: str | None = None
    style: str | None = None
    song_title: str | None = None
    artist: str | None = None

    @property
    def uses_identity(self) -> bool:
        return bool(sanitize_component(self.song_title))

    @property
    def file_id(self) -> str:
        if self.uses_identity:
            return identity_file_id(self.song_title, self.artist, self.prompt_hash)
        return request_file_id(self.prompt_hash, self.model, self.size, self.quality, self.style)


@dataclass
class CacheEntry:
    """
    One cached image.

    song_title/artist hold the original values for entries inserted in
    this process and the sanitized file name components for entries
    found by build() without a sidecar. provider/model/size of identity
    entries come from the sidecar and are empty when it is missing.
    """
    file_id: str
    file_path: Path
    prompt_hash: str
    provider: str = ""
    model: str = ""
    size: str = ""
    quality: str | None = None
    style: str | None = None
    song_title: str | None = None
    artist: str | None = None
    created_at: float = 0.0
    last_accessed_at: float = 0.0

    @property
    def is_identity(self) -> bool:
        return self.song_title is not None


@dataclass(frozen=True)
class CacheFilter:
    """
    Selection for CacheIndex.clear(). Unset fields match everything.

    Attributes:
        provider: Only entries from this provider.
        model: Only entries generated with this model.
        before: Only entries created before this Unix timestamp.
    """
    provider: str | None = None
    model: str | None = None
    before: float | None = None

    def matches(self, entry: CacheEntry) -> bool:
        if self.provider is not None and entry.provider != self.provider:
            return False
        if self.model is not None and entry.model != sanitize_component(self.model):
            return False
        if self.before is not None and entry.created_at >= self.before:
            return False
        return True


def sidecar_path(image_path: Path) -> Path:
    """Hidden metadata file stored next to a cached image."""
    return image_path.with_name(f".{image_path.stem}.json")


def identity_file_id(song_title: str, artist: str | None, prompt_hash: str) -> str:
    title = sanitize_component(song_title, fold_case=True)
    return f"{title}_{sanitize_component(artist, fold_case=True)}_{prompt_hash}"


def request_file_id(
    prompt_hash: str,
    model: str,
    size: str,
    quality: str | None = None,
    style: str | None = None
) -> str:
    parts = [prompt_hash, sanitize_component(model), sanitize_component(size)]
    for optional in (quality, style):
        component = sanitize_component(optional)
        if component:
            parts.append(component)
    return "_".join(parts)


def parse_file_id(file_id: str) -> dict | None:
    """
    Recover the naming components from a cache file stem.

    Returns:
        A dict of CacheEntry fields, or None if the stem follows neither
        naming scheme.
    """
    parts = file_id.split("_")

    if len(parts) >= 3 and _HASH_PATTERN.match(parts[0]) and _SIZE_PATTERN.match(parts[2]):
        fields = {"prompt_hash": parts[0], "model": parts[1], "size": parts[2]}
        extras = parts[3:]
        if len(extras) == 2:
            fields["quality"], fields["style"] = extras
        elif len(extras) == 1:
            key = "style" if extras[0] in KNOWN_STYLES else "quality"
            fields[key] = extras[0]
        elif extras:
            return None
        return fields

    if len(parts) == 3 and parts[0] and _HASH_PATTERN.match(parts[2]):
        return {
            "song_title": parts[0],
            "artist": parts[1] or None,
            "prompt_hash": parts[2],
        }

    return None


class CacheIndex:
    """
    In-memory index over the image cache directory.

    Attributes:
        directory: Cache directory.
        retention: Retention window in seconds (None keeps entries forever).
        enabled: False when caching is switched off or the index could not
                 be built; lookups then miss and inserts raise CacheIOError.
    """

    def __init__(
        self,
        directory: Path,
        retention: float | None = None,
        enabled: bool = True,
        model_owner: Callable[[str], str | None] | None = None
    ) -> None:
        """
        Initialize the index. Call build() before use.

        Args:
            directory: Cache directory (created by build()).
            retention: Retention window in seconds; None or 0 disables eviction.
            enabled: Set False to bypass caching.
            model_owner: Maps a model name to its provider, used to fill in
                         the provider of request-key entries found on disk.
        """
        self.directory = Path(directory)
        self.retention = retention or None
        self.enabled = enabled
        self.disabled_reason: str | None = None if enabled else "disabled by configuration"
        self._model_owner = model_owner
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.RLock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def entries(self) -> list[CacheEntry]:
        """Snapshot of all indexed entries."""
        with self._lock:
            return list(self._entries.values())

    def build(self) -> int:
        """
        Rebuild the index from the cache directory.

        Any OSError while scanning disables caching for the lifetime of
        this index. Expired entries are evicted when a retention window
        is configured.

        Returns:
            Number of entries indexed.
        """
        with self._lock:
            self._entries.clear()
            if not self.enabled:
                return 0

            try:
                self.directory.mkdir(parents=True, exist_ok=True)
                for path in self.directory.iterdir():
                    if path.name.startswith(".") or path.suffix.lower() not in _CACHED_SUFFIXES:
                        continue
                    if not path.is_file():
                        continue
                    entry = self._entry_from_path(path)
                    if entry is None:
                        logger.debug(f"Ignoring unrecognised file in cache: {path.name}")
                        continue
                    current = self._entries.get(entry.file_id)
                    if current is None or entry.created_at > current.created_at:
                        self._entries[entry.file_id] = entry
            except OSError as e:
                self._disable(f"could not scan {self.directory}: {e}")
                return 0

            logger.debug(f"Cache index built: {len(self._entries)} entries in {self.directory}")

            if self.retention:
                self.evict_expired(self.retention)

            return len(self._entries)

    def _disable(self, reason: str) -> None:
        logger.error(f"Image cache disabled: {reason}")
        self.enabled = False
        self.disabled_reason = reason
        self._entries.clear()

    def _entry_from_path(self, path: Path) -> CacheEntry | None:
        fields = parse_file_id(path.stem)
        if fields is None:
            return None

        stat = path.stat()
        entry = CacheEntry(
            file_id=path.stem,
            file_path=path,
            created_at=stat.st_mtime,
            last_accessed_at=max(stat.st_atime, stat.st_mtime),
            **fields,
        )
        for name, value in self._read_sidecar(path).items():
            setattr(entry, name, value)
        if entry.model and not entry.provider and self._model_owner is not None:
            entry.provider = self._model_owner(entry.model) or ""
        return entry

    def _read_sidecar(self, path: Path) -> dict:
        try:
            with open(sidecar_path(path), "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return {}
        except (OSError, json.JSONDecodeError) as e:
            logger.debug(f"Ignoring unreadable metadata for {path.name}: {e}")
            return {}
        if not isinstance(data, dict):
            return {}
        return {
            name: data[name] for name in SIDECAR_FIELDS
            if isinstance(data.get(name), str)
        }

    # -------------------------------------------------------------------------
    # Lookup
    # -------------------------------------------------------------------------

    def lookup_by_identity(self, song_title: str, artist: str | None = None) -> CacheEntry | None:
        """
        Find an image cached for a song.

        Title match is case-insensitive and exact. Artists are compared
        only when both the query and the entry have one. The most recently
        accessed match wins.
        """
        title = sanitize_component(song_title, fold_case=True)
        if not title:
            return None
        wanted_artist = sanitize_component(artist, fold_case=True)

        with self._lock:
            if not self.enabled:
                return None

            candidates = []
            for entry in self._entries.values():
                if not entry.is_identity:
                    continue
                if sanitize_component(entry.song_title, fold_case=True) != title:
                    continue
                entry_artist = sanitize_component(entry.artist, fold_case=True)
                if wanted_artist and entry_artist and wanted_artist != entry_artist:
                    continue
                candidates.append(entry)

            candidates.sort(key=lambda e: e.last_accessed_at, reverse=True)
            for entry in candidates:
                if self._touch(entry):
                    return entry
            return None

    def lookup_by_key(
        self,
        prompt_hash: str,
        model: str,
        size: str,
        quality: str | None = None,
        style: str | None = None
    ) -> CacheEntry | None:
        """Exact lookup of a request-key entry."""
        file_id = request_file_id(prompt_hash, model, size, quality, style)
        with self._lock:
            if not self.enabled:
                return None
            entry = self._entries.get(file_id)
            if entry is not None and self._touch(entry):
                return entry
            return None

    def get(self, file_id: str) -> CacheEntry | None:
        """Exact lookup by file id, without touching the entry."""
        with self._lock:
            return self._entries.get(file_id) if self.enabled else None

    def _touch(self, entry: CacheEntry) -> bool:
        """
        Refresh an entry's access time on disk and in memory.

        Returns False (a miss) when the file is gone or unreachable.
        """
        now = time.time()
        try:
            os.utime(entry.file_path, (now, entry.created_at))
        except FileNotFoundError:
            logger.debug(f"Cached file vanished: {entry.file_path}")
            self._entries.pop(entry.file_id, None)
            return False
        except OSError as e:
            logger.warning(f"Cache lookup failed for {entry.file_id}: {e}")
            return False
        entry.last_accessed_at = now
        return True

    # -------------------------------------------------------------------------
    # Insert
    # -------------------------------------------------------------------------

    def insert(self, key: CacheKey, data: bytes, extension: str | None = None) -> CacheEntry:
        """
        Store image bytes under the deterministic name for key.

        An existing entry with the same file id is replaced, including a
        file with the same stem but a different extension.

        Args:
            key: Naming components.
            data: Image bytes.
            extension: File extension; detected with Pillow when omitted.

        Returns:
            The registered CacheEntry.

        Raises:
            CacheIOError: If caching is disabled or the write fails.
        """
        file_id = key.file_id
        if extension is None:
            extension = image_extension(detect_image_format(data))
        target = self.directory / f"{file_id}.{extension}"

        with self._lock:
            if not self.enabled:
                raise CacheIOError(
                    f"Image cache is disabled ({self.disabled_reason})",
                    details={"file_id": file_id}
                )

            try:
                self.directory.mkdir(parents=True, exist_ok=True)
                self._write_atomic(target, data)
                self._write_atomic(sidecar_path(target), json.dumps(_sidecar_data(key)).encode("utf-8"))
                for stale in self.directory.glob(f"{glob_escape(file_id)}.*"):
                    if stale != target and stale.suffix.lower() in _CACHED_SUFFIXES:
                        stale.unlink(missing_ok=True)
            except OSError as e:
                raise CacheIOError(
                    f"Failed to write cached image {target.name}: {e}",
                    details={"path": str(target), "original_error": str(e)}
                ) from e

            now = time.time()
            entry = CacheEntry(
                file_id=file_id,
                file_path=target,
                prompt_hash=key.prompt_hash,
                provider=key.provider,
                model=key.model,
                size=key.size,
                quality=key.quality,
                style=key.style,
                song_title=key.song_title if key.uses_identity else None,
                artist=key.artist if key.uses_identity else None,
                created_at=now,
                last_accessed_at=now,
            )
            self._entries[file_id] = entry
            logger.debug(f"Cached image: {target.name}")
            return entry

    def _write_atomic(self, target: Path, data: bytes) -> None:
        fd, tmp_name = tempfile.mkstemp(dir=self.directory, prefix=f".{target.stem[:20]}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, target)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def import_image(self, source: Path, song_title: str, artist: str | None = None) -> CacheEntry:
        """
        Copy a local image into the cache under a song identity.

        Raises:
            CacheIOError: If the file cannot be read or is not an image.
        """
        source = Path(source).expanduser()
        try:
            data = source.read_bytes()
        except OSError as e:
            raise CacheIOError(
                f"Cannot read image to import: {source}",
                details={"path": str(source), "original_error": str(e)}
            ) from e

        image_format = detect_image_format(data)
        if image_format is None:
            raise CacheIOError(
                f"Not a supported image file: {source}",
                details={"path": str(source)}
            )

        key = CacheKey(
            prompt_hash=hashlib.md5(data).hexdigest()[:10],
            model=LOCAL_IMPORT_MODEL,
            size="",
            provider=LOCAL_IMPORT_PROVIDER,
            song_title=song_title,
            artist=artist,
        )
        entry = self.insert(key, data, extension=image_extension(image_format))
        logger.info(f"Imported {source.name} as background for '{song_title}'")
        return entry

    # -------------------------------------------------------------------------
    # Eviction
    # -------------------------------------------------------------------------

    def evict_expired(self, ttl: float, now: float | None = None) -> int:
        """
        Remove entries not accessed within the last ttl seconds.

        Returns:
            Number of entries evicted.
        """
        cutoff = (now if now is not None else time.time()) - ttl
        with self._lock:
            expired = [e for e in self._entries.values() if e.last_accessed_at < cutoff]
            removed = self._remove_entries(expired)
        if removed:
            logger.info(f"Evicted {removed} expired cached image(s)")
        return removed

    def clear(self, cache_filter: CacheFilter | None = None) -> int:
        """
        Delete cached images matching a filter (all images when None).

        Returns:
            Number of entries deleted.
        """
        cache_filter = cache_filter or CacheFilter()
        with self._lock:
            selected = [e for e in self._entries.values() if cache_filter.matches(e)]
            removed = self._remove_entries(selected)
        logger.info(f"Cleared {removed} cached image(s)")
        return removed

    def _remove_entries(self, entries: list[CacheEntry]) -> int:
        removed = 0
        for entry in entries:
            try:
                entry.file_path.unlink(missing_ok=True)
                sidecar_path(entry.file_path).unlink(missing_ok=True)
            except OSError as e:
                logger.warning(f"Could not delete cached image {entry.file_path.name}: {e}")
                continue
            self._entries.pop(entry.file_id, None)
            removed += 1
        return removed

    # -------------------------------------------------------------------------
    # Statistics
    # -------------------------------------------------------------------------

    def size_info(self) -> dict:
        """
        Disk usage of the cache directory.

        Returns:
            {'total_size_bytes', 'total_size_mb', 'file_count'}
        """
        total = 0
        count = 0
        with self._lock:
            try:
                for path in self.directory.iterdir():
                    if path.is_file() and not path.name.startswith("."):
                        total += path.stat().st_size
                        count += 1
            except FileNotFoundError:
                pass
            except OSError as e:
                raise CacheIOError(
                    f"Cannot read cache directory: {e}",
                    details={"path": str(self.directory)}
                ) from e

        return {
            "total_size_bytes": total,
            "total_size_mb": round(total / (1024 * 1024), 2),
            "file_count": count,
        }


def _sidecar_data(key: CacheKey) -> dict:
    data = {
        "provider": key.provider,
        "model": key.model,
        "size": key.size,
        "quality": key.quality,
        "style": key.style,
    }
    if key.uses_identity:
        data["song_title"] = key.song_title
        data["artist"] = key.artist
    return data


def glob_escape(name: str) -> str:
    """Escape glob metacharacters in a literal file name part."""
    return re.sub(r"([\[\]*?])", r"[\1]", name)
