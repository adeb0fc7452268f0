"""Shared test fixtures: fake camera, fake photo API, Flask app."""

import os
import tempfile

# Must be set before config is imported anywhere
os.environ.setdefault("STATION_DATA_DIR", tempfile.mkdtemp(prefix="photo-station-"))
os.environ["STATION_DATABASE_URI"] = "sqlite://"
os.environ["PHOTO_STORE_INLINE"] = "1"
os.environ["PHOTO_API_BASE_URL"] = "http://photo-api.test"

import threading
from concurrent.futures import Future
from urllib.parse import urlparse

import numpy as np
import pytest
import requests

from modules.camera import CaptureSource, encode_jpeg
from modules.models import PhotoFile


def make_frame(width: int = 1280, height: int = 720, seed: int = 0) -> np.ndarray:
    """Deterministic BGR frame: gradient plus noise, so JPEG sizes are realistic."""
    rng = np.random.default_rng(seed)
    xs = np.linspace(0, 255, width, dtype=np.float32)
    ys = np.linspace(0, 255, height, dtype=np.float32)
    grad = (xs[None, :] + ys[:, None]) / 2
    frame = np.stack([grad, np.flipud(grad), np.fliplr(grad)], axis=-1)
    frame += rng.normal(0, 25, size=frame.shape)
    return np.clip(frame, 0, 255).astype(np.uint8)


def jpeg_file(name: str = "photo.jpg", width: int = 64, height: int = 48) -> PhotoFile:
    return PhotoFile(name=name, data=encode_jpeg(make_frame(width, height), 0.8), mime_type="image/jpeg")


# ── カメラ ──

class FakeVideoCapture:
    """Stand-in for cv2.VideoCapture driven by a CameraRig."""

    def __init__(self, index, rig):
        self.index = index
        self.rig = rig
        self.opened = index in rig.available
        self.released = False
        self.props = {}

    def isOpened(self):
        return self.opened and not self.released

    def set(self, prop, value):
        self.props[prop] = value
        return True

    def read(self):
        if self.released or not self.opened or self.rig.frames_fail:
            return False, None
        return True, self.rig.frame.copy()

    def release(self):
        if not self.released:
            self.released = True
            self.rig.events.append(f"release:{self.index}")


class CameraRig:
    def __init__(self, frame):
        self.frame = frame
        self.available = {0, 1}
        self.frames_fail = False
        self.events = []
        self.captures = []

    def factory(self, index):
        self.events.append(f"open:{index}")
        cap = FakeVideoCapture(index, self)
        self.captures.append(cap)
        return cap

    @property
    def stop_count(self):
        return sum(1 for e in self.events if e.startswith("release:"))

    def source(self, **kwargs):
        kwargs.setdefault("ready_timeout", 0.1)
        return CaptureSource(capture_factory=self.factory, **kwargs)


@pytest.fixture()
def frame():
    return make_frame()


@pytest.fixture()
def camera_rig(frame):
    return CameraRig(frame)


# ── Photo API ──

class FakeResponse:
    def __init__(self, status_code, body):
        self.status_code = status_code
        self._body = body

    @property
    def ok(self):
        return 200 <= self.status_code < 400

    def json(self):
        if self._body is None:
            raise ValueError("no json")
        return self._body


class FakePhotoApi:
    """In-memory photo API with the same routes as the development server."""

    def __init__(self):
        self.calls = []
        self.photos = {}
        self.offline = False
        self.fail_status = None
        self._next_id = 1
        self._lock = threading.Lock()

    def request(self, method, url, timeout=None, params=None, json=None, data=None, files=None):
        path = urlparse(url).path
        with self._lock:
            self.calls.append((method, path))
            if self.offline:
                raise requests.ConnectionError("network down")
            if self.fail_status:
                return FakeResponse(self.fail_status, {"error": "server exploded"})
            if path == "/api/upload-photo":
                return self._upload(data, files)
            if path == "/api/photos":
                return self._list(params["productId"])
            if path == "/api/photo-actions":
                return self._action(json)
            if path == "/api/test":
                return FakeResponse(200, {"status": "ok"})
        return FakeResponse(404, {"error": "not found"})

    def calls_to(self, path):
        return [c for c in self.calls if c[1] == path]

    def _upload(self, data, files):
        name, payload, mime_type = files["file"]
        product_id = data["productId"] or None
        owned = [p for p in self.photos.values() if p["product_id"] == product_id]
        is_primary = data["isFirst"] == "true" or (product_id is not None and not owned)
        if is_primary and product_id is not None:
            for p in owned:
                p["is_primary"] = False
        record = {
            "id": self._next_id,
            "product_id": product_id,
            "file_name": name,
            "mime_type": mime_type,
            "photo_data": "aGVsbG8=",
            "is_primary": is_primary,
            "created_at": "2026-01-01T00:00:00",
        }
        self.photos[self._next_id] = record
        self._next_id += 1
        return FakeResponse(200, {"data": dict(record)})

    def _list(self, product_id):
        rows = [dict(p) for p in self.photos.values() if p["product_id"] == product_id]
        rows.sort(key=lambda p: (not p["is_primary"], p["id"]))
        return FakeResponse(200, {"data": rows})

    def _action(self, body):
        photo = self.photos.get(int(body.get("photoId", 0) or 0))
        if body["action"] == "setPrimary":
            if photo is None:
                return FakeResponse(404, {"error": "missing"})
            for p in self.photos.values():
                if p["product_id"] == body["productId"]:
                    p["is_primary"] = False
            photo["is_primary"] = True
            return FakeResponse(200, {"data": dict(photo)})
        if body["action"] == "delete":
            if photo is None:
                return FakeResponse(404, {"error": "missing"})
            del self.photos[photo["id"]]
            return FakeResponse(200, {"data": {"deleted": True}})
        if body["action"] == "attach":
            attached = 0
            for photo_id in body["photoIds"]:
                p = self.photos.get(int(photo_id))
                if p is not None and p["product_id"] is None:
                    p["product_id"] = body["productId"]
                    attached += 1
            return FakeResponse(200, {"data": {"attached": attached}})
        return FakeResponse(400, {"error": "bad action"})


class OverriddenUploads:
    """Wraps a FakePhotoApi and answers selected uploads with a fixed reply.

    ``payloads`` picks the uploads by file bytes; None overrides every upload.
    """

    def __init__(self, api, reply, payloads=None):
        self.api = api
        self.reply = reply
        self.payloads = payloads

    def request(self, method, url, **kwargs):
        if urlparse(url).path == "/api/upload-photo":
            payload = kwargs["files"]["file"][1]
            if self.payloads is None or payload in self.payloads:
                with self.api._lock:
                    self.api.calls.append((method, "/api/upload-photo"))
                return self.reply
        return self.api.request(method, url, **kwargs)


@pytest.fixture()
def photo_api():
    return FakePhotoApi()


@pytest.fixture()
def client(photo_api):
    from modules.upload_client import UploadClient

    return UploadClient("http://photo-api.test", session=photo_api)


# ── テスト用 Executor ──

class ManualExecutor:
    """Executor whose jobs run only when the test says so."""

    def __init__(self):
        self.jobs = []

    def submit(self, fn, *args):
        future = Future()
        self.jobs.append((future, fn, args))
        return future

    def start(self, i):
        self.jobs[i][0].set_running_or_notify_cancel()

    def finish(self, i):
        future, fn, args = self.jobs[i]
        if not future.running() and not future.set_running_or_notify_cancel():
            return
        future.set_result(fn(*args))

    def shutdown(self, wait=True):
        pass


# ── Flask ──

@pytest.fixture()
def station(monkeypatch, camera_rig, photo_api):
    """Flask test client with a fake camera and fake photo API wired in."""
    import app as station_app
    from modules.models import db
    from modules.upload_client import UploadClient

    with station_app.app.app_context():
        db.drop_all()
        db.create_all()

    monkeypatch.setattr(station_app, "make_camera", lambda: camera_rig.source())
    monkeypatch.setattr(
        station_app, "make_client",
        lambda: UploadClient("http://photo-api.test", session=photo_api),
    )
    monkeypatch.setattr(station_app, "_flow", None)
    monkeypatch.setattr(station_app, "_pending_photos", [])
    station_app._notifier.drain()
    yield station_app.app.test_client()
    if station_app._flow is not None:
        station_app._flow.close()
