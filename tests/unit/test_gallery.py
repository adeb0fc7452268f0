"""Tests for the capture flow and the photo gallery."""

import random
import threading

import pytest

from modules.errors import InvalidTransition
from modules.gallery import CaptureFlow, Notifier, PhotoGallery, Stage
from modules.models import PhotoFile

from modules.upload_client import UploadClient

from tests.conftest import FakeResponse, OverriddenUploads, jpeg_file


@pytest.fixture()
def saved():
    return []


@pytest.fixture()
def flow(camera_rig, client, saved):
    f = CaptureFlow(
        camera=camera_rig.source(),
        client=client,
        owner_id="p1",
        naming_key="SKU1",
        on_saved=saved.append,
    )
    yield f
    f.close()


def _errors(notifier):
    return [n for n in notifier.drain() if n.level == "error"]


class TestCaptureFlow:
    def test_open_starts_in_capturing(self, flow, camera_rig) -> None:
        assert flow.open()
        assert flow.stage is Stage.CAPTURING
        assert camera_rig.events == ["open:0"]

    def test_snapshot_moves_to_editing_and_stops_camera(self, flow, camera_rig) -> None:
        flow.open()
        raw = flow.snapshot()
        assert flow.stage is Stage.EDITING
        assert (raw.width, raw.height) == (1280, 720)
        assert not flow.camera.is_open
        assert camera_rig.stop_count == 1

    def test_full_flow_uploads_and_requeries_gallery(self, flow, photo_api, saved) -> None:
        flow.open()
        flow.snapshot()
        edited = flow.confirm_edit()
        assert flow.stage is Stage.REVIEWING
        assert (edited.width, edited.height) == (800, 450)

        photo = flow.confirm()

        assert flow.stage is Stage.UPLOADED
        assert saved == [photo]
        assert photo_api.calls_to("/api/photos") == [("GET", "/api/photos")]
        assert [p.id for p in flow.gallery.photos] == [photo.id]
        assert flow.gallery.photos[0].is_primary

    def test_capture_keeps_existing_primary(self, flow, client, photo_api) -> None:
        existing = client.upload(jpeg_file(), "p1", "SKU1")
        flow.open()
        flow.snapshot()
        flow.confirm_edit()

        photo = flow.confirm()

        assert not photo.is_primary
        assert [p.id for p in flow.gallery.photos if p.is_primary] == [existing.id]
        assert len(flow.gallery.photos) == 2

    def test_without_review_confirm_edit_uploads(self, camera_rig, client, saved) -> None:
        flow = CaptureFlow(camera_rig.source(), client, "p1", "SKU1", on_saved=saved.append, review=False)
        flow.open()
        flow.snapshot()
        flow.confirm_edit()
        assert flow.stage is Stage.UPLOADED
        assert len(saved) == 1

    def test_cancel_edit_reopens_camera(self, flow, camera_rig) -> None:
        flow.open()
        flow.snapshot()
        assert flow.cancel_edit()
        assert flow.stage is Stage.CAPTURING
        assert flow.raw is None
        assert flow.camera.is_open
        assert camera_rig.events[-1] == "open:0"

    def test_retake_from_review(self, flow) -> None:
        flow.open()
        flow.snapshot()
        flow.confirm_edit()
        flow.retake()
        assert flow.stage is Stage.CAPTURING
        assert flow.edited is None
        assert flow.camera.is_ready

    def test_edit_again_keeps_region(self, flow) -> None:
        flow.open()
        flow.snapshot()
        flow.editor.pointer_down(10, 10)
        flow.editor.pointer_move(410, 310)
        flow.confirm_edit()
        flow.edit_again()
        assert flow.stage is Stage.EDITING
        assert flow.editor.region.width == 400

    def test_close_from_editing_releases_everything(self, flow, camera_rig) -> None:
        flow.open()
        flow.snapshot()
        editor = flow.editor
        flow.close()
        assert flow.stage is Stage.ABORTED
        assert flow.editor is None
        assert editor.preview() is None
        assert not flow.camera.is_open

    def test_close_while_capturing_stops_camera(self, flow, camera_rig) -> None:
        flow.open()
        flow.close()
        flow.close()
        assert camera_rig.stop_count == 1
        assert flow.stage is Stage.ABORTED

    def test_switch_camera(self, flow, camera_rig) -> None:
        flow.open()
        flow.switch_camera()
        assert flow.facing == "front"
        assert camera_rig.events == ["open:0", "release:0", "open:1"]

    def test_invalid_transition(self, flow) -> None:
        flow.open()
        with pytest.raises(InvalidTransition):
            flow.confirm()


class TestCaptureFlowErrors:
    def test_camera_failure_notifies_with_retry(self, flow, camera_rig) -> None:
        camera_rig.available = set()
        assert not flow.open()
        assert flow.stage is Stage.CAPTURING
        errors = _errors(flow.notifier)
        assert len(errors) == 1 and errors[0].retry

        camera_rig.available = {0, 1}
        assert flow.retry_camera()

    def test_snapshot_before_ready_keeps_capturing(self, flow, camera_rig) -> None:
        camera_rig.available = set()
        flow.open()
        assert flow.snapshot() is None
        assert flow.stage is Stage.CAPTURING

    def test_no_region_keeps_editing(self, flow) -> None:
        flow.open()
        flow.snapshot()
        flow.editor.pointer_down(50, 50)
        assert flow.confirm_edit() is None
        assert flow.stage is Stage.EDITING
        assert len(_errors(flow.notifier)) == 1

    def test_transport_error_returns_to_capturing(self, flow, photo_api, saved) -> None:
        flow.open()
        flow.snapshot()
        flow.confirm_edit()
        photo_api.offline = True

        assert flow.confirm() is None

        assert flow.stage is Stage.CAPTURING
        assert flow.camera.is_open
        assert saved == []
        assert _errors(flow.notifier)[0].retry

    def test_malformed_reply_returns_to_capturing(self, camera_rig, photo_api, saved) -> None:
        session = OverriddenUploads(photo_api, FakeResponse(200, None))
        client = UploadClient("http://photo-api.test", session=session)
        flow = CaptureFlow(camera_rig.source(), client, "p1", "SKU1", on_saved=saved.append)
        flow.open()
        flow.snapshot()
        flow.confirm_edit()

        assert flow.confirm() is None

        assert flow.stage is Stage.CAPTURING
        assert saved == []
        assert _errors(flow.notifier)[0].retry
        flow.close()


def test_notifier_is_thread_safe() -> None:
    notifier = Notifier()

    def push():
        for i in range(200):
            notifier.info(f"#{i}")

    threads = [threading.Thread(target=push) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len(notifier.drain()) == 800
    assert len(notifier) == 0


class TestGallery:
    def test_set_primary_leaves_exactly_one(self, client, photo_api) -> None:
        rng = random.Random(7)
        gallery = PhotoGallery(client, "p1", "SKU1")
        photos = [client.upload(jpeg_file(), "p1", "SKU1") for _ in range(5)]
        for trial in range(10):
            for p in photo_api.photos.values():
                p["is_primary"] = rng.random() < 0.5
            target = rng.choice(photos)
            assert gallery.set_primary(target)
            primaries = [p for p in gallery.photos if p.is_primary]
            assert [p.id for p in primaries] == [target.id]

    def test_delete_requeries(self, client, photo_api) -> None:
        gallery = PhotoGallery(client, "p1", "SKU1")
        photo = client.upload(jpeg_file(), "p1", "SKU1")
        gallery.refresh()
        assert gallery.delete(photo)
        assert gallery.photos == []

    def test_failed_delete_notifies(self, client, photo_api) -> None:
        notifier = Notifier()
        gallery = PhotoGallery(client, "p1", "SKU1", notifier=notifier)
        photo = client.upload(jpeg_file(), "p1", "SKU1")
        photo_api.offline = True
        assert not gallery.delete(photo)
        assert _errors(notifier)[0].retry

    def test_primary_property(self, client) -> None:
        gallery = PhotoGallery(client, "p1", "SKU1")
        first = client.upload(jpeg_file(), "p1", "SKU1")
        client.upload(jpeg_file(), "p1", "SKU1")
        gallery.refresh()
        assert gallery.primary.id == first.id


class TestGalleryBatch:
    def test_pending_batch_delivers_each_success_once(self, client) -> None:
        pending = []
        notifier = Notifier()
        gallery = PhotoGallery(client, None, "SKU1", notifier=notifier, on_pending_photo=pending.append)
        files = [jpeg_file("1.jpg"), PhotoFile("2.bmp", b"BM", "image/bmp"), jpeg_file("3.jpg")]

        batch = gallery.upload_files(files)

        assert batch.success_count == 2
        assert batch.failure_count == 1
        assert sorted(p.id for p in pending) == sorted(p.id for p in batch.successes)
        assert len({p.id for p in pending}) == 2
        levels = [n.level for n in notifier.drain()]
        assert levels.count("success") == 1
        assert "error" in levels

    def test_pending_batch_without_callback_is_refused(self, client, photo_api) -> None:
        gallery = PhotoGallery(client, None, "SKU1")
        batch = gallery.upload_files([jpeg_file()])
        assert batch.failure_count == 1
        assert photo_api.calls == []

    def test_owner_batch_is_sequential_with_one_refresh(self, client, photo_api) -> None:
        gallery = PhotoGallery(client, "p1", "SKU1")
        big = PhotoFile("big.jpg", b"\x00" * (11 * 1024 * 1024), "image/jpeg")
        batch = gallery.upload_files([jpeg_file("a.jpg"), big, jpeg_file("b.jpg")])
        assert (batch.success_count, batch.failure_count) == (2, 1)
        assert len(photo_api.calls_to("/api/upload-photo")) == 2
        assert len(photo_api.calls_to("/api/photos")) == 1
        assert len(gallery.photos) == 2

    def test_counts_reported_separately(self, client, photo_api) -> None:
        notifier = Notifier()
        gallery = PhotoGallery(client, "p1", "SKU1", notifier=notifier)
        gallery.upload_files([jpeg_file("a.jpg"), PhotoFile("b.txt", b"", "text/plain")])
        messages = [n.message for n in notifier.drain()]
        assert any(m.startswith("1 枚の写真をアップロードしました") for m in messages)
        assert any(m.startswith("1 枚の写真をアップロードできませんでした") for m in messages)
