#!/usr/bin/env python3
# Copyright: Ankitects Pty Ltd and contributors
# License: GNU AGPL, version 3 or later; http://www.gnu.org/licenses/agpl.html

"""Decoding of the service's memory envelopes and listing pages."""

from datetime import datetime, timezone

import pytest

from .. import (
    CaptureEnvelope,
    CaptureRecord,
    ContentPage,
    FileAsset,
    MediaKind,
    MemoryContentEnvelope,
    ServiceError,
    UnknownPayload,
)
from .conftest import make_envelope


def test_photo_envelope():
    raw = make_envelope(favorite=True, created="2024-05-01T10:00:00.250000Z")
    env = MemoryContentEnvelope.from_dict(raw)

    assert env.identifier == raw["uuid"]
    assert env.favorite is True
    assert env.created_at == datetime(2024, 5, 1, 10, 0, 0, 250000, tzinfo=timezone.utc)
    assert env.origin_client_id == "pin-1"
    assert isinstance(env.data, CaptureEnvelope)
    assert env.capture.kind is MediaKind.PHOTO
    assert env.capture.state == "PROCESSED"
    assert env.capture.closeup_asset.access_token == raw["data"]["closeupAsset"]["accessToken"]


def test_video_envelope():
    env = MemoryContentEnvelope.from_dict(make_envelope(kind="video"))
    assert env.capture.kind is MediaKind.VIDEO
    assert env.capture.download_video is not None


def test_offset_timestamps_are_normalized_to_utc():
    raw = make_envelope(created="2024-05-01T12:00:00+02:00")
    env = MemoryContentEnvelope.from_dict(raw)
    assert env.created_at == datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)
    assert env.modified_at == env.created_at


def test_identifier_is_normalized():
    raw = make_envelope()
    raw["uuid"] = raw["uuid"].upper()
    assert MemoryContentEnvelope.from_dict(raw).identifier == raw["uuid"].lower()


def test_unknown_payload():
    env = MemoryContentEnvelope.from_dict(
        make_envelope(payload={"note": {"text": "x"}, "title": "y"})
    )
    assert env.capture is None
    assert env.data == UnknownPayload(("note", "title"))
    assert CaptureRecord.from_envelope(env) is None


def test_capture_without_usable_asset_is_still_a_capture():
    env = MemoryContentEnvelope.from_dict(
        make_envelope(payload={"state": "PENDING", "thumbnail": {"fileUUID": "t"}})
    )
    assert env.capture == CaptureEnvelope(state="PENDING")
    assert CaptureRecord.from_envelope(env) is not None

    bare = MemoryContentEnvelope.from_dict(
        make_envelope(payload={"state": "PENDING", "type": "PHOTO"})
    )
    assert bare.capture.kind is MediaKind.PHOTO
    assert bare.capture.thumbnail is None


def test_video_kind_does_not_depend_on_tokens():
    raw = make_envelope(kind="video")
    for key in ("video", "downloadVideo"):
        del raw["data"][key]["accessToken"]
    raw["data"]["type"] = ""

    capture = MemoryContentEnvelope.from_dict(raw).capture

    assert capture.kind is MediaKind.VIDEO
    assert capture.video is None and capture.download_video is None
    assert capture.thumbnail is not None


def test_video_kind_from_type():
    raw = make_envelope(payload={"state": "PENDING", "type": "VIDEO"})
    assert MemoryContentEnvelope.from_dict(raw).capture.kind is MediaKind.VIDEO


@pytest.mark.parametrize(
    "field,value",
    [("uuid", "not-a-uuid"), ("userCreatedAt", "yesterday"), ("userLastModified", None)],
)
def test_malformed_envelope(field, value):
    raw = make_envelope()
    raw[field] = value
    with pytest.raises(ServiceError):
        MemoryContentEnvelope.from_dict(raw)


def test_missing_key_is_malformed():
    raw = make_envelope()
    del raw["userCreatedAt"]
    with pytest.raises(ServiceError):
        MemoryContentEnvelope.from_dict(raw)


def test_content_page():
    items = [make_envelope(), make_envelope(kind="video")]
    page = ContentPage.from_dict({"content": items, "totalElements": 41})
    assert page.total_elements == 41
    assert [e.identifier for e in page.items] == [i["uuid"] for i in items]


def test_content_page_without_content():
    page = ContentPage.from_dict({"totalElements": 0})
    assert page.items == []
    assert page.total_elements == 0


def test_content_page_must_be_object():
    with pytest.raises(ServiceError):
        ContentPage.from_dict([])


def test_record_from_envelope():
    raw = make_envelope(kind="video", favorite=True)
    record = CaptureRecord.from_envelope(MemoryContentEnvelope.from_dict(raw))
    assert record.identifier == raw["uuid"]
    assert record.is_video and not record.is_photo
    assert record.is_favorite
    assert record.remote_type == "VIDEO"
    assert record.thumbnail.file_uuid == raw["data"]["thumbnail"]["fileUUID"]
    assert not record.locally_downloaded


def test_file_asset_repr_hides_token():
    asset = FileAsset("f-1", "secret-token")
    assert "secret-token" not in repr(asset)
    assert FileAsset.from_dict({"fileUUID": "f-1"}) is None
    assert FileAsset.from_dict({"fileUUID": "f-1", "accessToken": "secret-token"}) == asset
