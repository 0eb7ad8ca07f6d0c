# Copyright: Ankitects Pty Ltd and contributors
# License: GNU AGPL, version 3 or later; http://www.gnu.org/licenses/agpl.html

"""
Capture Sync - mirrors a remote capture service into a local store and
media library.

Usage:
    from capturesync import (
        CaptureStore, CaptureSyncClient, FolderMediaLibrary, HttpContentClient,
        MediaPipeline, ServiceAuth, StoredPermissionGate,
    )

    service = HttpContentClient(ServiceAuth.with_endpoint(endpoint, token))
    pipeline = MediaPipeline(service, FolderMediaLibrary("~/Pictures/captures"))
    client = CaptureSyncClient(
        service, CaptureStore("captures.db"), pipeline,
        StoredPermissionGate("permission.json", prompt=lambda: True),
    )
    output = client.sync()
"""

from .client import (
    # Auth & Config
    ServiceAuth,
    SyncConfig,
    DEFAULT_ENDPOINT,
    DEFAULT_ALBUM_NAME,
    PAGE_SIZE,
    # Data structures
    MediaKind,
    FileAsset,
    CaptureEnvelope,
    UnknownPayload,
    MemoryContentEnvelope,
    ContentPage,
    # Exceptions
    SyncError,
    ServiceError,
    AuthenticationError,
    SyncFailedError,
    ProbeFailedError,
    PermissionDeniedError,
    SyncCancelledError,
    PipelineError,
    InvalidContentError,
    DownloadFailedError,
    SaveFailedError,
    # Clients
    ContentServiceInterface,
    HttpContentClient,
)
from .media import (
    AlbumHandle,
    FilenameCache,
    FolderMediaLibrary,
    MediaLibraryInterface,
    MediaPipeline,
    RetryPolicy,
    resolve_asset,
)
from .progress import (
    Authorization,
    PermissionGateInterface,
    ProgressSnapshot,
    StoredPermissionGate,
    SyncProgress,
)
from .store import (
    CaptureFilter,
    CaptureRecord,
    CaptureStore,
    LocalStoreInterface,
    ProcessingStatus,
    SortKey,
)
from .sync import CaptureSyncClient, SyncOutput

__all__ = [
    "ServiceAuth",
    "SyncConfig",
    "DEFAULT_ENDPOINT",
    "DEFAULT_ALBUM_NAME",
    "PAGE_SIZE",
    "MediaKind",
    "FileAsset",
    "CaptureEnvelope",
    "UnknownPayload",
    "MemoryContentEnvelope",
    "ContentPage",
    "SyncError",
    "ServiceError",
    "AuthenticationError",
    "SyncFailedError",
    "ProbeFailedError",
    "PermissionDeniedError",
    "SyncCancelledError",
    "PipelineError",
    "InvalidContentError",
    "DownloadFailedError",
    "SaveFailedError",
    "ContentServiceInterface",
    "HttpContentClient",
    "AlbumHandle",
    "FilenameCache",
    "FolderMediaLibrary",
    "MediaLibraryInterface",
    "MediaPipeline",
    "RetryPolicy",
    "resolve_asset",
    "Authorization",
    "PermissionGateInterface",
    "ProgressSnapshot",
    "StoredPermissionGate",
    "SyncProgress",
    "CaptureFilter",
    "CaptureRecord",
    "CaptureStore",
    "LocalStoreInterface",
    "ProcessingStatus",
    "SortKey",
    "CaptureSyncClient",
    "SyncOutput",
]

__version__ = "1.0.0"
