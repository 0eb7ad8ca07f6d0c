# Copyright: Ankitects Pty Ltd and contributors
# License: GNU AGPL, version 3 or later; http://www.gnu.org/licenses/agpl.html

"""Content service client: wire types, errors and the HTTP transport."""

from __future__ import annotations

import json
import logging
import os
import uuid
import zlib
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Optional, Union

import requests
import zstandard as zstd

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINT = "https://webapi.prod.humane.cloud/"
DEFAULT_ALBUM_NAME = "Ai Pin"
PAGE_SIZE = 20
CAPTURE_SORT = "userCreatedAt,DESC"
MAX_DECOMPRESSED_BYTES = 512 * 1024 * 1024
ENV_PREFIX = "CAPTURESYNC_"


# --- Auth & Config ---


@dataclass
class ServiceAuth:
    """Credentials for the content service."""

    access_token: str = ""
    endpoint: Optional[str] = None
    io_timeout_secs: int = 30

    @classmethod
    def with_endpoint(
        cls, endpoint: str, access_token: str = "", io_timeout_secs: int = 30
    ) -> ServiceAuth:
        if endpoint and not endpoint.endswith("/"):
            endpoint += "/"
        return cls(
            access_token=access_token,
            endpoint=endpoint,
            io_timeout_secs=io_timeout_secs,
        )

    @classmethod
    def from_env(cls) -> ServiceAuth:
        return cls.with_endpoint(
            os.getenv(ENV_PREFIX + "ENDPOINT", DEFAULT_ENDPOINT),
            access_token=os.getenv(ENV_PREFIX + "ACCESS_TOKEN", ""),
            io_timeout_secs=int(os.getenv(ENV_PREFIX + "IO_TIMEOUT", "30")),
        )


def _default_data_dir() -> Path:
    return Path(os.getenv(ENV_PREFIX + "HOME", Path.home() / ".capturesync"))


@dataclass
class SyncConfig:
    """Tunables for a synchronization pass."""

    page_size: int = PAGE_SIZE
    page_workers: int = 4
    item_workers: int = 8
    album_name: str = DEFAULT_ALBUM_NAME
    retry_attempts: int = 3
    retry_initial_backoff: float = 1.0
    retry_max_backoff: float = 10.0
    database_path: Path = field(
        default_factory=lambda: _default_data_dir() / "captures.db"
    )
    library_path: Path = field(default_factory=lambda: _default_data_dir() / "library")

    def __post_init__(self):
        if self.page_size < 1:
            raise ValueError("page_size must be positive")
        if self.page_workers < 1 or self.item_workers < 1:
            raise ValueError("worker counts must be positive")
        if self.retry_attempts < 1:
            raise ValueError("retry_attempts must be at least 1")
        self.database_path = Path(self.database_path)
        self.library_path = Path(self.library_path)

    @classmethod
    def from_env(cls) -> SyncConfig:
        env = os.environ
        kwargs: dict[str, Any] = {}
        for name, cast in (
            ("page_size", int),
            ("page_workers", int),
            ("item_workers", int),
            ("album_name", str),
            ("retry_attempts", int),
            ("retry_initial_backoff", float),
            ("retry_max_backoff", float),
            ("database_path", Path),
            ("library_path", Path),
        ):
            if (value := env.get(ENV_PREFIX + name.upper())) is not None:
                kwargs[name] = cast(value)
        return cls(**kwargs)


# --- Data Classes ---


class MediaKind(Enum):
    PHOTO = "photo"
    VIDEO = "video"


def parse_timestamp(value: str) -> datetime:
    """Parse a service timestamp (ISO-8601, ``Z`` or offset suffix) as UTC."""
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


@dataclass(frozen=True)
class FileAsset:
    """A downloadable resource: file id plus a short-lived access token."""

    file_uuid: str
    access_token: str

    def __repr__(self) -> str:
        return f"FileAsset(file_uuid={self.file_uuid!r})"

    @classmethod
    def from_dict(cls, d: Any) -> Optional[FileAsset]:
        if not isinstance(d, dict):
            return None
        file_uuid, token = d.get("fileUUID"), d.get("accessToken")
        if not file_uuid or not isinstance(token, str):
            return None
        return cls(file_uuid=str(file_uuid), access_token=token)


CAPTURE_KEYS = ("state", "type", "thumbnail", "closeupAsset", "video", "downloadVideo")
VIDEO_KEYS = ("video", "downloadVideo")


@dataclass(frozen=True)
class CaptureEnvelope:
    """
    Capture payload of a memory: state, type and asset descriptors.

    Any descriptor may be missing or undecodable (e.g. while the device is
    still uploading); the payload is still a capture.
    """

    state: str = ""
    type: str = ""
    kind: MediaKind = MediaKind.PHOTO
    thumbnail: Optional[FileAsset] = None
    closeup_asset: Optional[FileAsset] = None
    video: Optional[FileAsset] = None
    download_video: Optional[FileAsset] = None

    @classmethod
    def from_dict(cls, d: Any) -> Optional[CaptureEnvelope]:
        """Decode a capture payload; None if it does not have a capture's shape."""
        if not isinstance(d, dict) or not any(key in d for key in CAPTURE_KEYS):
            return None
        remote_type = str(d.get("type") or "")
        is_video = remote_type.upper() == "VIDEO" or any(
            d.get(key) is not None for key in VIDEO_KEYS
        )
        return cls(
            state=str(d.get("state") or ""),
            type=remote_type,
            kind=MediaKind.VIDEO if is_video else MediaKind.PHOTO,
            thumbnail=FileAsset.from_dict(d.get("thumbnail")),
            closeup_asset=FileAsset.from_dict(d.get("closeupAsset")),
            video=FileAsset.from_dict(d.get("video")),
            download_video=FileAsset.from_dict(d.get("downloadVideo")),
        )


@dataclass(frozen=True)
class UnknownPayload:
    """Placeholder for payload kinds this client does not understand."""

    keys: tuple[str, ...] = ()


Payload = Union[CaptureEnvelope, UnknownPayload]


@dataclass(frozen=True)
class MemoryContentEnvelope:
    """Remote wrapper around one memory and its payload."""

    identifier: str
    favorite: bool
    created_at: datetime
    modified_at: datetime
    data: Payload
    origin_client_id: str = ""
    location: Optional[str] = None

    @property
    def capture(self) -> Optional[CaptureEnvelope]:
        return self.data if isinstance(self.data, CaptureEnvelope) else None

    @classmethod
    def from_dict(cls, d: dict) -> MemoryContentEnvelope:
        try:
            identifier = str(uuid.UUID(str(d["uuid"])))
            created_at = parse_timestamp(d["userCreatedAt"])
            modified_at = parse_timestamp(d["userLastModified"])
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise ServiceError(f"Malformed content envelope: {e}") from e

        raw = d.get("data")
        data: Payload = CaptureEnvelope.from_dict(raw) or UnknownPayload(
            tuple(sorted(raw)) if isinstance(raw, dict) else ()
        )
        return cls(
            identifier=identifier,
            favorite=bool(d.get("favorite", False)),
            created_at=created_at,
            modified_at=modified_at,
            data=data,
            origin_client_id=str(d.get("originClientId") or ""),
            location=d.get("location"),
        )


@dataclass
class ContentPage:
    """One page of the remote capture listing."""

    items: list[MemoryContentEnvelope] = field(default_factory=list)
    total_elements: int = 0

    @classmethod
    def from_dict(cls, d: Any) -> ContentPage:
        if not isinstance(d, dict):
            raise ServiceError("Malformed content page")
        return cls(
            items=[MemoryContentEnvelope.from_dict(e) for e in d.get("content") or []],
            total_elements=int(d.get("totalElements", 0)),
        )


# --- Exceptions ---


class SyncError(Exception):
    pass


class ServiceError(SyncError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class AuthenticationError(ServiceError):
    pass


class SyncFailedError(SyncError):
    """A whole pass failed; progress counters were reset."""


class ProbeFailedError(SyncFailedError):
    pass


class PermissionDeniedError(SyncFailedError):
    def __init__(self, message: str = "No access to media library"):
        super().__init__(message)


class SyncCancelledError(SyncError):
    pass


class PipelineError(SyncError):
    """Failure confined to a single capture."""

    def __init__(self, identifier: str, message: str):
        self.identifier = identifier
        super().__init__(f"{identifier}: {message}")


class InvalidContentError(PipelineError):
    pass


class DownloadFailedError(PipelineError):
    pass


class SaveFailedError(PipelineError):
    pass


# --- Content Service Interface ---


class ContentServiceInterface(ABC):
    """Remote content listing and asset download."""

    @abstractmethod
    def fetch_page(self, page: int, size: int) -> ContentPage: ...
    @abstractmethod
    def fetch_item(self, identifier: str) -> MemoryContentEnvelope: ...
    @abstractmethod
    def download_asset(self, identifier: str, asset: FileAsset) -> bytes: ...


# --- HTTP Client ---


class HttpContentClient(ContentServiceInterface):
    """HTTP client for the capture service."""

    def __init__(self, auth: ServiceAuth, session: Optional[requests.Session] = None):
        self.access_token = auth.access_token
        self.endpoint = auth.endpoint or DEFAULT_ENDPOINT
        self.io_timeout = auth.io_timeout_secs
        self._session = session
        self._owns_session = session is None

    def close(self):
        if self._owns_session and self._session:
            self._session.close()
            self._session = None

    def _request(self, path: str, params: Optional[dict] = None) -> bytes:
        if self._session is None:
            self._session = requests.Session()

        headers = {
            "Accept-Encoding": "zstd, gzip",
            "Accept": "application/json, */*",
        }
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"

        resp = self._session.get(
            f"{self.endpoint.rstrip('/')}/{path}",
            params=params,
            headers=headers,
            timeout=self.io_timeout,
            stream=True,
        )
        try:
            if resp.status_code in (401, 403):
                raise AuthenticationError(
                    f"Not authorized for {path}", status_code=resp.status_code
                )
            if resp.status_code >= 400:
                raise ServiceError(
                    f"{path} returned HTTP {resp.status_code}",
                    status_code=resp.status_code,
                )
            content = resp.raw.read(decode_content=False)
            encoding = resp.headers.get("content-encoding", "")
        finally:
            resp.close()

        # Decompress response
        if encoding == "zstd":
            content = zstd.ZstdDecompressor().decompress(
                content, max_output_size=MAX_DECOMPRESSED_BYTES
            )
        elif encoding == "gzip":
            content = zlib.decompress(content, 16 + zlib.MAX_WBITS)
        return content

    def _json(self, path: str, params: Optional[dict] = None) -> Any:
        body = self._request(path, params)
        try:
            return json.loads(body) if body else None
        except ValueError as e:
            raise ServiceError(f"{path} returned invalid JSON") from e

    def fetch_page(self, page: int, size: int) -> ContentPage:
        logger.debug("Fetching capture page %d (size %d)", page, size)
        return ContentPage.from_dict(
            self._json(
                "capture/captures",
                {
                    "page": str(page),
                    "size": str(size),
                    "sort": CAPTURE_SORT,
                    "onlyContainingFavorited": "false",
                },
            )
        )

    def fetch_item(self, identifier: str) -> MemoryContentEnvelope:
        data = self._json(f"capture/memory/{identifier}")
        if not isinstance(data, dict):
            raise ServiceError(f"Malformed memory response for {identifier}")
        return MemoryContentEnvelope.from_dict(data)

    def download_asset(self, identifier: str, asset: FileAsset) -> bytes:
        return self._request(
            f"capture/memory/{identifier}/file/{asset.file_uuid}/download",
            {"token": asset.access_token, "rawData": "false"},
        )
