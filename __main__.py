# Copyright: Ankitects Pty Ltd and contributors
# License: GNU AGPL, version 3 or later; http://www.gnu.org/licenses/agpl.html

"""
Command line entry point.

Usage:
    python -m capturesync sync [--yes]
    python -m capturesync list --filter photos --limit 20
    python -m capturesync reset [--forget-permission]
"""

import argparse
import logging
import sys
from pathlib import Path

from .client import HttpContentClient, ServiceAuth, SyncConfig, SyncError
from .media import FolderMediaLibrary, MediaPipeline, RetryPolicy
from .progress import ProgressSnapshot, StoredPermissionGate, SyncProgress
from .store import CaptureFilter, CaptureStore, SortKey
from .sync import CaptureSyncClient

FILTERS = {
    "all": CaptureFilter.all,
    "photos": CaptureFilter.photos,
    "videos": CaptureFilter.videos,
    "favorites": CaptureFilter.favorites,
}
SORTS = {"created": SortKey.CREATED_AT, "modified": SortKey.MODIFIED_AT}


def setup_logging(verbose: bool = False):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _parse_args(argv):
    parser = argparse.ArgumentParser(
        prog="capturesync", description="Mirror captures into a local library."
    )
    parser.add_argument("--db", type=Path, help="capture database path")
    parser.add_argument("--library", type=Path, help="media library root folder")
    parser.add_argument("--album", help="album to save captures into")
    parser.add_argument("-v", "--verbose", action="store_true")
    sub = parser.add_subparsers(dest="command", required=True)

    sync = sub.add_parser("sync", help="run one synchronization pass")
    sync.add_argument(
        "--yes", action="store_true", help="grant media library access without asking"
    )

    ls = sub.add_parser("list", help="list locally mirrored captures")
    ls.add_argument("--filter", choices=sorted(FILTERS), default="all")
    ls.add_argument("--sort", choices=sorted(SORTS), default="created")
    ls.add_argument("--limit", type=int)

    reset = sub.add_parser("reset", help="remove every local capture record")
    reset.add_argument(
        "--forget-permission",
        action="store_true",
        help="ask for media library access again on the next sync",
    )
    return parser.parse_args(argv)


def _prompt() -> bool:
    answer = input("Allow saving captures to the media library? [y/N] ")
    return answer.strip().lower() in ("y", "yes")


def _print_progress(snapshot: ProgressSnapshot):
    if snapshot.is_syncing and snapshot.total_to_sync:
        print(
            f"\r  Synced {snapshot.synced_count}/{snapshot.total_to_sync}"
            f" ({snapshot.fraction:.0%})",
            end="",
            flush=True,
        )


def _build_client(config: SyncConfig, store: CaptureStore, assume_yes: bool):
    service = HttpContentClient(ServiceAuth.from_env())
    pipeline = MediaPipeline(
        service,
        FolderMediaLibrary(config.library_path),
        album_name=config.album_name,
        retry_policy=RetryPolicy.from_config(config),
    )
    gate = StoredPermissionGate(
        config.database_path.parent / "permission.json",
        prompt=(lambda: True) if assume_yes else _prompt,
    )
    progress = SyncProgress()
    progress.subscribe(_print_progress)
    return service, CaptureSyncClient(service, store, pipeline, gate, progress, config)


def main(argv=None) -> int:
    args = _parse_args(argv)
    setup_logging(args.verbose)

    config = SyncConfig.from_env()
    if args.db:
        config.database_path = args.db
    if args.library:
        config.library_path = args.library
    if args.album:
        config.album_name = args.album

    store = CaptureStore(config.database_path)
    try:
        if args.command == "list":
            records = store.fetch(
                FILTERS[args.filter](), sort_by=SORTS[args.sort], limit=args.limit
            )
            photos = videos = 0
            for r in records:
                photos += r.is_photo
                videos += r.is_video
                flag = "*" if r.is_favorite else " "
                done = "downloaded" if r.locally_downloaded else r.processing_status.value
                print(f"{flag} {r.identifier}  {r.kind.value:5}  {r.created_at:%Y-%m-%d %H:%M}  {done}")
            print(f"{len(records)} captures ({photos} photos, {videos} videos)")
            return 0

        service, client = _build_client(config, store, getattr(args, "yes", False))
        try:
            if args.command == "reset":
                print(f"Removed {client.reset_local_state()} captures")
                if args.forget_permission:
                    client.gate.revoke()
                    print("Media library access will be asked for again")
                return 0
            output = client.sync()
            print(
                f"\nSynced {output.processed} captures: {output.downloaded} downloaded, "
                f"{output.skipped} already local, {output.failed} failed, "
                f"{output.deleted} removed"
            )
            return 0
        finally:
            service.close()
    except SyncError as e:
        print(f"\nERROR: {e}", file=sys.stderr)
        return 1
    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())
