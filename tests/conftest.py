#!/usr/bin/env python3
# Copyright: Ankitects Pty Ltd and contributors
# License: GNU AGPL, version 3 or later; http://www.gnu.org/licenses/agpl.html

"""
Shared test doubles and fixtures for the capture sync tests.

The content service, permission gate and media library are in-process
fakes; the capture store is a real SQLite store held in memory.
"""

import io
import threading
import uuid
from pathlib import Path
from typing import Optional

import pytest
import requests
from PIL import Image

from .. import (
    Authorization,
    CaptureSyncClient,
    CaptureStore,
    ContentPage,
    ContentServiceInterface,
    FileAsset,
    FolderMediaLibrary,
    MediaPipeline,
    MemoryContentEnvelope,
    PermissionGateInterface,
    RetryPolicy,
    SyncConfig,
    SyncProgress,
)
from ..sync import PROBE_PAGE_SIZE

FAST_RETRY = RetryPolicy(max_attempts=3, initial_backoff=0, max_backoff=0)
VIDEO_BYTES = b"\x00\x00\x00\x18ftypmp42\x00\x00\x00\x00mp42isom"


def _jpeg_bytes() -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (4, 4), (200, 30, 30)).save(buf, format="JPEG")
    return buf.getvalue()


JPEG_BYTES = _jpeg_bytes()


def _asset(name: str) -> dict:
    return {"fileUUID": f"{name}-{uuid.uuid4()}", "accessToken": f"tok-{uuid.uuid4().hex}"}


def make_envelope(
    identifier: Optional[str] = None,
    kind: str = "photo",
    favorite: bool = False,
    created: str = "2024-05-01T10:00:00.000000Z",
    modified: Optional[str] = None,
    closeup: bool = True,
    download_variant: bool = True,
    payload: Optional[dict] = None,
) -> dict:
    """Build a memory envelope in the service's JSON shape."""
    if payload is None:
        payload = {
            "state": "PROCESSED",
            "type": kind.upper(),
            "thumbnail": _asset("photo-thumb"),
        }
        if kind == "photo" and closeup:
            payload["closeupAsset"] = _asset("photo-closeup")
        if kind == "video":
            payload["video"] = _asset("video-raw")
            if download_variant:
                payload["downloadVideo"] = _asset("video-download")
    return {
        "uuid": identifier or str(uuid.uuid4()),
        "favorite": favorite,
        "userCreatedAt": created,
        "userLastModified": modified or created,
        "originClientId": "pin-1",
        "data": payload,
    }


def decode(envelope: dict) -> MemoryContentEnvelope:
    return MemoryContentEnvelope.from_dict(envelope)


class FakeContentService(ContentServiceInterface):
    """In-process content service with failure injection."""

    def __init__(self, envelopes=()):
        self.envelopes: list[dict] = list(envelopes)
        self.lock = threading.Lock()
        self.page_requests: list[tuple[int, int, int]] = []
        self.item_requests: list[str] = []
        self.downloads: list[tuple[str, FileAsset]] = []
        self.fail_downloads: dict[str, int] = {}
        self.payloads: dict[str, bytes] = {}
        self.fail_pages: set[int] = set()
        self.fail_probe = False

    def fetch_page(self, page: int, size: int) -> ContentPage:
        if size == PROBE_PAGE_SIZE and self.fail_probe:
            raise requests.ConnectionError("probe unreachable")
        if size != PROBE_PAGE_SIZE and page in self.fail_pages:
            raise requests.ConnectionError(f"page {page} unreachable")
        items = self.envelopes[page * size : (page + 1) * size]
        with self.lock:
            self.page_requests.append((page, size, len(items)))
        return ContentPage.from_dict(
            {"content": items, "totalElements": len(self.envelopes)}
        )

    def fetch_item(self, identifier: str) -> MemoryContentEnvelope:
        with self.lock:
            self.item_requests.append(identifier)
        for envelope in self.envelopes:
            if envelope["uuid"] == identifier:
                fresh = decode(envelope)
                capture = fresh.capture
                if capture is None:
                    return fresh
                refreshed = {
                    k: (
                        {**v, "accessToken": v["accessToken"] + "-refreshed"}
                        if isinstance(v, dict)
                        else v
                    )
                    for k, v in envelope["data"].items()
                }
                return decode({**envelope, "data": refreshed})
        raise requests.HTTPError(f"404 {identifier}")

    def download_asset(self, identifier: str, asset: FileAsset) -> bytes:
        with self.lock:
            self.downloads.append((identifier, asset))
            remaining = self.fail_downloads.get(identifier, 0)
            if remaining:
                self.fail_downloads[identifier] = remaining - 1
        if remaining:
            raise requests.ConnectionError(f"download of {identifier} interrupted")
        if identifier in self.payloads:
            return self.payloads[identifier]
        return VIDEO_BYTES if asset.file_uuid.startswith("video") else JPEG_BYTES

    def downloaded_ids(self) -> list[str]:
        with self.lock:
            return [identifier for identifier, _ in self.downloads]


class FakePermissionGate(PermissionGateInterface):
    def __init__(self, status: Authorization = Authorization.AUTHORIZED, grant: bool = True):
        self.status = status
        self.grant = grant
        self.requests = 0

    def query_authorization(self) -> Authorization:
        return self.status

    def request_authorization(self) -> Authorization:
        self.requests += 1
        if self.status is Authorization.NOT_DETERMINED:
            self.status = Authorization.AUTHORIZED if self.grant else Authorization.DENIED
        return self.status


class RecordingLibrary(FolderMediaLibrary):
    """Folder library that records writes and can fail a number of them."""

    def __init__(self, root: Path):
        super().__init__(root)
        self.lock = threading.Lock()
        self.writes: list[str] = []
        self.fail_writes = 0

    def write_asset(self, album, data, filename, kind, creation_date) -> None:
        with self.lock:
            self.writes.append(filename)
            failing = self.fail_writes > 0
            if failing:
                self.fail_writes -= 1
        if failing:
            raise OSError(28, "No space left on device")
        super().write_asset(album, data, filename, kind, creation_date)


@pytest.fixture
def service():
    return FakeContentService()


@pytest.fixture
def library(tmp_path):
    return RecordingLibrary(tmp_path / "library")


@pytest.fixture
def store():
    s = CaptureStore()
    yield s
    s.close()


@pytest.fixture
def gate():
    return FakePermissionGate()


@pytest.fixture
def progress():
    return SyncProgress()


@pytest.fixture
def pipeline(service, library):
    return MediaPipeline(service, library, retry_policy=FAST_RETRY)


@pytest.fixture
def config(tmp_path):
    return SyncConfig(
        page_size=20,
        database_path=tmp_path / "captures.db",
        library_path=tmp_path / "library",
    )


@pytest.fixture
def sync_client(service, store, pipeline, gate, progress, config):
    return CaptureSyncClient(service, store, pipeline, gate, progress, config)
