"""
カメラモジュール
Capture source for the photo station, wrapping an OpenCV VideoCapture.

The device is an exclusive resource: ``open`` always releases whatever
stream is currently held before acquiring a new one, and ``close`` is safe
to call any number of times. Use the source as a context manager to get
release on every exit path.

Readiness is a single signal: the first frame that reads back successfully.
If no frame arrives within ``CAMERA_READY_TIMEOUT`` the source is marked
ready anyway, and a failing read in ``snapshot`` raises ``NotReady``.
"""
import os
import sys
import time
from typing import Callable, Optional

import cv2
import numpy as np
from loguru import logger

import config
from modules.errors import CameraUnavailable, DeviceBusy, NoDeviceFound, NotReady
from modules.models import RawCapture


def encode_jpeg(frame: np.ndarray, quality: float) -> bytes:
    """Encode a BGR frame as JPEG at ``quality`` in the 0-1 range."""
    ok, buf = cv2.imencode(
        ".jpg", frame, [int(cv2.IMWRITE_JPEG_QUALITY), int(round(quality * 100))]
    )
    if not ok:
        raise ValueError("JPEG encoding failed")
    return buf.tobytes()


def _diagnose_open_failure(index: int) -> Exception:
    """Map a failed VideoCapture open to the acquisition error taxonomy.

    OpenCV only reports "not opened"; on Linux the device node tells
    missing devices and permission problems apart.
    """
    if sys.platform.startswith("linux"):
        node = f"/dev/video{index}"
        if not os.path.exists(node):
            return NoDeviceFound(f"カメラが見つかりません ({node})", context={"device": index})
        if not os.access(node, os.R_OK | os.W_OK):
            return CameraUnavailable(
                f"カメラへのアクセスが拒否されました ({node})", context={"device": index}
            )
        return DeviceBusy(f"カメラは使用中です ({node})", context={"device": index})
    return NoDeviceFound("カメラを開けませんでした", context={"device": index})


class CaptureSource:
    """Live camera feed with open/close and single-frame snapshots."""

    def __init__(
        self,
        capture_factory: Callable[[int], object] = cv2.VideoCapture,
        width: int = config.CAPTURE_WIDTH,
        height: int = config.CAPTURE_HEIGHT,
        ready_timeout: float = config.CAMERA_READY_TIMEOUT,
        diagnose: Callable[[int], Exception] = _diagnose_open_failure,
    ):
        self._factory = capture_factory
        self._width = width
        self._height = height
        self._ready_timeout = ready_timeout
        self._diagnose = diagnose
        self._capture = None
        self._ready = False
        self.facing: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self._capture is not None

    @property
    def is_ready(self) -> bool:
        return self._capture is not None and self._ready

    def open(self, facing: str = config.DEFAULT_FACING) -> None:
        """Acquire the camera for ``facing`` and wait until it is playable."""
        if facing not in config.FACING_DEVICES:
            raise ValueError(f"Unknown camera facing: {facing!r}")

        self.close()

        index = config.FACING_DEVICES[facing]
        logger.info(f"カメラ起動: facing={facing} device={index}")
        capture = self._factory(index)
        if not capture.isOpened():
            capture.release()
            err = self._diagnose(index)
            logger.warning(f"カメラ起動失敗: {err!r}")
            raise err

        capture.set(cv2.CAP_PROP_FRAME_WIDTH, self._width)
        capture.set(cv2.CAP_PROP_FRAME_HEIGHT, self._height)
        self._capture = capture
        self.facing = facing
        self._wait_ready()

    def _wait_ready(self) -> None:
        deadline = time.monotonic() + self._ready_timeout
        while time.monotonic() < deadline:
            ok, _ = self._capture.read()
            if ok:
                self._ready = True
                logger.debug("カメラ準備完了")
                return
            time.sleep(config.CAMERA_READY_POLL)
        # Fallback: treat the stream as playable after the timeout
        logger.warning(f"カメラ準備タイムアウト ({self._ready_timeout}s)、続行します")
        self._ready = True

    def switch_facing(self) -> str:
        """Close the current stream and reopen with the other facing."""
        new_facing = "front" if self.facing == "back" else "back"
        self.open(new_facing)
        return new_facing

    def snapshot(self, quality: float = config.SNAPSHOT_JPEG_QUALITY) -> RawCapture:
        """Sample the current frame as a JPEG RawCapture."""
        if not self.is_ready:
            raise NotReady("カメラの準備ができていません")

        ok, frame = self._capture.read()
        if not ok or frame is None:
            raise NotReady("フレームを取得できませんでした")

        height, width = frame.shape[:2]
        data = encode_jpeg(frame, quality)
        logger.info(f"スナップショット: {width}x{height} ({len(data) / 1024:.1f}KB)")
        return RawCapture(data=data, width=width, height=height)

    def close(self) -> None:
        """Release the device. Safe to call repeatedly."""
        capture, self._capture = self._capture, None
        self._ready = False
        if capture is not None:
            capture.release()
            logger.info("カメラ停止")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    def __repr__(self):
        return f"CaptureSource(facing={self.facing!r}, open={self.is_open})"
