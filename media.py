# Copyright: Ankitects Pty Ltd and contributors
# License: GNU AGPL, version 3 or later; http://www.gnu.org/licenses/agpl.html

"""
Media fetch-and-persist pipeline.

For each capture the pipeline picks the asset to download (closeup or
thumbnail for photos, download variant or raw video for videos), fetches
it under a bounded retry policy and writes it into a named album of the
media library. Filenames are derived from the capture identifier, and an
album's existing filenames are cached so that nothing is written twice.
"""

from __future__ import annotations

import io
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

import requests
from PIL import Image, UnidentifiedImageError
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .client import (
    DEFAULT_ALBUM_NAME,
    ContentServiceInterface,
    DownloadFailedError,
    FileAsset,
    InvalidContentError,
    MediaKind,
    MemoryContentEnvelope,
    SaveFailedError,
    ServiceError,
    SyncConfig,
)

logger = logging.getLogger(__name__)

EXTENSIONS = {MediaKind.PHOTO: ".jpg", MediaKind.VIDEO: ".mp4"}


# --- Media Library ---


@dataclass(frozen=True)
class AlbumHandle:
    name: str
    path: Path


class MediaLibraryInterface(ABC):
    """Platform media store: named albums holding files."""

    @abstractmethod
    def ensure_album(self, name: str) -> AlbumHandle: ...
    @abstractmethod
    def list_filenames(self, album: AlbumHandle) -> set[str]: ...
    @abstractmethod
    def write_asset(
        self,
        album: AlbumHandle,
        data: bytes,
        filename: str,
        kind: MediaKind,
        creation_date: datetime,
    ) -> None: ...


class FolderMediaLibrary(MediaLibraryInterface):
    """
    Media library kept as one directory per album under a root folder.

    Writes go through a hidden temporary file and an atomic rename, and the
    file modification time carries the capture's creation date.
    """

    def __init__(self, root: str | Path):
        self.root = Path(root)

    def ensure_album(self, name: str) -> AlbumHandle:
        if not name or name in (".", "..") or "/" in name or os.sep in name:
            raise ValueError(f"Invalid album name: {name!r}")
        path = self.root / name
        path.mkdir(parents=True, exist_ok=True)
        return AlbumHandle(name=name, path=path)

    def list_filenames(self, album: AlbumHandle) -> set[str]:
        return {
            p.name
            for p in album.path.iterdir()
            if p.is_file() and not p.name.startswith(".")
        }

    def write_asset(
        self,
        album: AlbumHandle,
        data: bytes,
        filename: str,
        kind: MediaKind,
        creation_date: datetime,
    ) -> None:
        dest = album.path / filename
        fd, tmp_name = tempfile.mkstemp(dir=album.path, prefix=".", suffix=".part")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, dest)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        stamp = creation_date.timestamp()
        os.utime(dest, (stamp, stamp))
        logger.debug("Wrote %s %s (%d bytes)", kind.value, dest, len(data))


class FilenameCache:
    """Filenames known to be present, per album. Safe for concurrent use."""

    def __init__(self):
        self._lock = threading.Lock()
        self._albums: dict[str, set[str]] = {}

    def warm(self, album: str, filenames: set[str]) -> None:
        with self._lock:
            self._albums[album] = set(filenames)

    def contains(self, album: str, filename: str) -> bool:
        with self._lock:
            return filename in self._albums.get(album, ())

    def add(self, album: str, filename: str) -> None:
        with self._lock:
            self._albums.setdefault(album, set()).add(filename)


# --- Retry Policy ---


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff around one download-and-write attempt."""

    max_attempts: int = 3
    initial_backoff: float = 1.0
    max_backoff: float = 10.0

    @classmethod
    def from_config(cls, config: SyncConfig) -> RetryPolicy:
        return cls(
            max_attempts=config.retry_attempts,
            initial_backoff=config.retry_initial_backoff,
            max_backoff=config.retry_max_backoff,
        )

    def retrying(self) -> Retrying:
        return Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.initial_backoff, max=self.max_backoff),
            retry=retry_if_exception_type((DownloadFailedError, SaveFailedError)),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )


# --- Asset Resolution ---


@dataclass(frozen=True)
class ResolvedAsset:
    asset: FileAsset
    kind: MediaKind
    filename: str


def filename_for(identifier: str, kind: MediaKind) -> str:
    return f"{identifier}{EXTENSIONS[kind]}"


def resolve_asset(envelope: MemoryContentEnvelope) -> ResolvedAsset:
    """Pick the asset to mirror for a capture envelope."""
    capture = envelope.capture
    if capture is None:
        raise InvalidContentError(envelope.identifier, "payload is not a capture")

    kind = capture.kind
    if kind is MediaKind.VIDEO:
        asset = capture.download_video or capture.video
    else:
        asset = capture.closeup_asset or capture.thumbnail
    if asset is None:
        raise InvalidContentError(envelope.identifier, "no downloadable asset")
    return ResolvedAsset(asset=asset, kind=kind, filename=filename_for(envelope.identifier, kind))


def _verify_photo(identifier: str, data: bytes) -> None:
    try:
        with Image.open(io.BytesIO(data)) as img:
            img.verify()
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError) as e:
        raise InvalidContentError(identifier, "photo is not a decodable image") from e


# --- Pipeline ---


class MediaPipeline:
    """
    Downloads a capture's media and commits it to the media library.

    Usage:
        pipeline = MediaPipeline(service, FolderMediaLibrary(root))
        pipeline.persist(envelope)  # True if written, False if already present
    """

    def __init__(
        self,
        service: ContentServiceInterface,
        library: MediaLibraryInterface,
        album_name: str = DEFAULT_ALBUM_NAME,
        retry_policy: Optional[RetryPolicy] = None,
        cache: Optional[FilenameCache] = None,
    ):
        self.service = service
        self.library = library
        self.album_name = album_name
        self.retry_policy = retry_policy or RetryPolicy()
        self.cache = cache or FilenameCache()
        self._album_lock = threading.Lock()
        self._album: Optional[AlbumHandle] = None

    def persist(self, envelope: MemoryContentEnvelope) -> bool:
        """
        Mirror one capture into the album.

        Raises:
            InvalidContentError: no usable asset, or undecodable photo (not retried)
            DownloadFailedError: download still failing after the retry budget
            SaveFailedError: album or file write still failing after the retry budget
        """
        resolved = resolve_asset(envelope)
        written = False
        for attempt in self.retry_policy.retrying():
            with attempt:
                written = self._persist_once(
                    envelope, resolved, attempt.retry_state.attempt_number
                )
        return written

    def _persist_once(
        self, envelope: MemoryContentEnvelope, resolved: ResolvedAsset, attempt: int
    ) -> bool:
        identifier = envelope.identifier
        album = self._get_album(identifier)
        if self.cache.contains(album.name, resolved.filename):
            logger.debug("%s already in album %s", resolved.filename, album.name)
            return False

        # Access tokens are single use; retries need a fresh descriptor.
        if attempt > 1:
            resolved = self._refresh(identifier)

        data = self._download(identifier, resolved.asset)
        if resolved.kind is MediaKind.PHOTO:
            _verify_photo(identifier, data)

        try:
            self.library.write_asset(
                album, data, resolved.filename, resolved.kind, envelope.created_at
            )
        except OSError as e:
            raise SaveFailedError(identifier, f"could not write {resolved.filename}: {e}") from e
        self.cache.add(album.name, resolved.filename)
        logger.debug("Saved %s to album %s", resolved.filename, album.name)
        return True

    def _get_album(self, identifier: str) -> AlbumHandle:
        with self._album_lock:
            if self._album is not None:
                return self._album
        try:
            album = self.library.ensure_album(self.album_name)
            filenames = self.library.list_filenames(album)
        except (OSError, ValueError) as e:
            raise SaveFailedError(
                identifier, f"album {self.album_name!r} unavailable: {e}"
            ) from e
        with self._album_lock:
            if self._album is None:
                self.cache.warm(album.name, filenames)
                self._album = album
                logger.info(
                    "Album %s holds %d existing files", album.name, len(filenames)
                )
            return self._album

    def _refresh(self, identifier: str) -> ResolvedAsset:
        try:
            fresh = self.service.fetch_item(identifier)
        except (requests.RequestException, ServiceError) as e:
            raise DownloadFailedError(identifier, f"could not refresh asset: {e}") from e
        return resolve_asset(fresh)

    def _download(self, identifier: str, asset: FileAsset) -> bytes:
        try:
            data = self.service.download_asset(identifier, asset)
        except (requests.RequestException, ServiceError) as e:
            raise DownloadFailedError(identifier, f"download failed: {e}") from e
        if not data:
            raise DownloadFailedError(identifier, "empty download")
        return data
