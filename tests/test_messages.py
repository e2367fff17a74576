"""Tests for message construction, mirroring and expiry."""
import base64
import json
import re

import pytest

from conftest import PNG_BYTES, png_payload
from errors import InvalidRequest
from messages import generate_secure_filename, parse_ttl
from schemas.messages import ImagePayload

ROOM = "AB-CD-EF"


def test_parse_ttl():
    assert parse_ttl(None) == 86400
    assert parse_ttl("") == 86400
    assert parse_ttl("60") == 60
    assert parse_ttl(0) == 0
    assert parse_ttl(60.0) == 60
    for bad in (-1, "abc", True, "1.5", 1.5, float("nan")):
        with pytest.raises(InvalidRequest):
            parse_ttl(bad)


def test_secure_filename_keeps_only_extension(clock):
    first = generate_secure_filename("Holiday Photo.JPG", "msg_1_abc", clock.now())
    second = generate_secure_filename("Holiday Photo.JPG", "msg_1_abc", clock.now())

    assert re.match(r"^msg_1_abc_\d+_[0-9a-f]{16}\.jpg$", first)
    assert "Holiday" not in first
    assert first != second


class TestTextMessages:
    @pytest.mark.asyncio
    async def test_default_ttl_is_mirrored(self, services, store):
        message = await services.messages.send_text(ROOM, "hello", "agent-1")
        await services.messages.drain()

        assert message.ttl == 86400
        assert message.type == "text"
        assert message.timestamp == "2025-01-01T12:00:00.000Z"
        assert message.id.startswith("msg_")
        key = f"message:{ROOM}:{message.id}"
        assert json.loads(store.data[key])["message"] == "hello"
        assert await store.ttl(key) == 86400

    @pytest.mark.asyncio
    async def test_burn_after_reading_is_never_mirrored(self, services, store):
        await services.messages.send_text(ROOM, "secret", "agent-1", ttl=0)
        await services.messages.drain()

        assert store.data == {}

    @pytest.mark.parametrize("room,text,sender", [("", "hi", "a"), (ROOM, "", "a"), (ROOM, "hi", "")])
    @pytest.mark.asyncio
    async def test_missing_fields_rejected(self, services, store, room, text, sender):
        with pytest.raises(InvalidRequest):
            await services.messages.send_text(room, text, sender)
        assert store.data == {}

    @pytest.mark.asyncio
    async def test_mirror_failure_does_not_fail_send(self, services, store):
        store.fail_writes = True
        message = await services.messages.send_text(ROOM, "hello", "agent-1", ttl=60)
        await services.messages.drain()

        assert message.message == "hello"
        assert store.data == {}

    @pytest.mark.asyncio
    async def test_store_not_ready_skips_mirror(self, services, store):
        store.ready = False
        await services.messages.send_text(ROOM, "hello", "agent-1", ttl=60)
        await services.messages.drain()

        assert store.data == {}

    @pytest.mark.asyncio
    async def test_expiry_notice_two_seconds_later(self, services, clock):
        notified = []

        async def notify(message_id):
            notified.append((message_id, clock.monotonic()))

        message = await services.messages.send_text(ROOM, "secret", "agent-1", ttl=0)
        services.messages.schedule_expiry_notice(message, notify)

        clock.advance(1)
        await services.scheduler.run_due()
        assert notified == []

        clock.advance(1)
        await services.scheduler.run_due()
        assert notified == [(message.id, 1002)]

    @pytest.mark.asyncio
    async def test_no_expiry_notice_for_ttl_messages(self, services):
        async def notify(message_id):
            raise AssertionError("unexpected notice")

        message = await services.messages.send_text(ROOM, "hello", "agent-1", ttl=60)
        assert services.messages.schedule_expiry_notice(message, notify) is None


class TestImageMessages:
    @pytest.mark.asyncio
    async def test_send_image_writes_blob_and_metadata(self, services, store, blobs):
        payload = ImagePayload(**png_payload(id="img-1", dimensions={"width": 4, "height": 4}))
        message = await services.messages.send_image(ROOM, payload, "agent-1", ttl=120, caption="look")
        await services.messages.drain()

        filename = message.imageData.storedFilename
        assert filename.startswith(message.id + "_")
        assert filename.endswith(".png")
        assert message.imageData.url == f"/api/image/{filename}"
        assert message.imageData.imageId == "img-1"
        assert message.imageData.byteSize == len(PNG_BYTES)
        assert message.caption == "look"
        assert await blobs.read(filename) == PNG_BYTES
        assert services.deletions.is_scheduled(filename)

        stored = json.loads(store.data[f"message:{ROOM}:{message.id}"])
        assert stored["imageData"]["storedFilename"] == filename
        assert "data" not in stored["imageData"]
        assert base64.b64encode(PNG_BYTES).decode() not in store.data[f"message:{ROOM}:{message.id}"]

    @pytest.mark.asyncio
    async def test_burn_after_reading_image_deleted_after_grace(self, services, store, blobs, clock):
        message = await services.messages.send_image(ROOM, ImagePayload(**png_payload()), "agent-1", ttl=0)
        await services.messages.drain()
        filename = message.imageData.storedFilename

        assert store.data == {}
        assert await blobs.exists(filename)
        clock.advance(29)
        await services.scheduler.run_due()
        assert await blobs.exists(filename)
        clock.advance(1)
        await services.scheduler.run_due()
        assert not await blobs.exists(filename)

    @pytest.mark.asyncio
    async def test_ttl_image_deleted_after_ttl(self, services, blobs, clock):
        message = await services.messages.send_image(ROOM, ImagePayload(**png_payload()), "agent-1", ttl=30)
        filename = message.imageData.storedFilename

        clock.advance(29)
        await services.scheduler.run_due()
        assert await blobs.exists(filename)
        clock.advance(1)
        await services.scheduler.run_due()
        assert not await blobs.exists(filename)

    @pytest.mark.parametrize("overrides", [
        {"name": "payload.exe"},
        {"mimeType": "application/x-msdownload"},
        {"data": "not base64 at all!"},
        {"data": ""},
    ])
    @pytest.mark.asyncio
    async def test_invalid_image_writes_nothing(self, services, store, blobs, overrides):
        payload = ImagePayload(**{**png_payload(), **overrides})
        with pytest.raises(InvalidRequest):
            await services.messages.send_image(ROOM, payload, "agent-1", ttl=60)
        await services.messages.drain()

        assert await blobs.list() == []
        assert store.data == {}
        assert services.scheduler.pending == 0

    @pytest.mark.asyncio
    async def test_oversized_image_rejected(self, services, blobs):
        services.messages.max_bytes = 16
        with pytest.raises(InvalidRequest):
            await services.messages.send_image(ROOM, ImagePayload(**png_payload(size=None)), "agent-1")
        assert await blobs.list() == []

    @pytest.mark.asyncio
    async def test_missing_image_rejected(self, services):
        with pytest.raises(InvalidRequest):
            await services.messages.send_image(ROOM, None, "agent-1")


class TestUploads:
    @pytest.mark.asyncio
    async def test_store_upload(self, services, blobs):
        result = await services.messages.store_upload("cat.PNG", "image/png", PNG_BYTES, ttl="60")

        assert result.imageId.startswith("img_")
        assert result.filename.endswith(".png")
        assert result.imageUrl == f"/api/image/{result.filename}"
        assert result.size == len(PNG_BYTES)
        assert result.mimeType == "image/png"
        assert await blobs.exists(result.filename)
        assert services.deletions.is_scheduled(result.filename)

    @pytest.mark.asyncio
    async def test_store_upload_uses_client_message_id(self, services):
        result = await services.messages.store_upload("cat.png", "image/png", PNG_BYTES, message_id="msg_42_abc")
        assert result.imageId == "msg_42_abc"
        assert result.filename.startswith("msg_42_abc_")

    @pytest.mark.parametrize("name,mime,message_id", [
        ("run.exe", "application/octet-stream", None),
        ("script.sh", "image/png", None),
        ("cat.png", "text/html", None),
        ("cat.png", None, None),
        ("cat.png", "image/png", "../../etc/passwd"),
    ])
    @pytest.mark.asyncio
    async def test_rejected_upload_writes_nothing(self, services, blobs, name, mime, message_id):
        with pytest.raises(InvalidRequest):
            await services.messages.store_upload(name, mime, PNG_BYTES, message_id=message_id)
        assert await blobs.list() == []
        assert services.scheduler.pending == 0
