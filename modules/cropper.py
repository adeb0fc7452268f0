"""
画像編集モジュール — 切り抜き・リサイズ・圧縮
Crop, resize and compress engine for captured photos.

``render`` is a pure function of (source, region, spec): the engine calls
it for the live preview on a single background worker and again for the
final image on confirm. Every input change supersedes the preview that is
still being encoded, so a stale result is never published.
"""
from concurrent.futures import CancelledError, Future, ThreadPoolExecutor
import threading
from typing import Optional

import cv2
import numpy as np
from loguru import logger

from modules.camera import encode_jpeg
from modules.errors import InvalidFormat, NoRegionSelected
from modules.models import CropRegion, EditedImage, OutputSpec, RawCapture


def decode_image(data: bytes) -> np.ndarray:
    """Decode an encoded image buffer into a BGR frame."""
    arr = np.frombuffer(data, dtype=np.uint8)
    frame = cv2.imdecode(arr, cv2.IMREAD_COLOR) if arr.size else None
    if frame is None:
        raise InvalidFormat("画像をデコードできません")
    return frame


def output_size(region: CropRegion, spec: OutputSpec) -> tuple[int, int]:
    """Target pixel size: spec size times scale, shrunk to the region's ratio."""
    if region.is_empty:
        raise NoRegionSelected("切り抜く範囲を選択してください")
    ratio = region.aspect_ratio
    width = spec.width * spec.scale
    height = spec.height * spec.scale
    if width / height > ratio:
        width = height * ratio
    else:
        height = width / ratio
    return max(1, int(round(width))), max(1, int(round(height)))


def render(source: np.ndarray, region: CropRegion, spec: OutputSpec) -> EditedImage:
    """Crop ``region`` out of ``source``, resample it to the spec and encode."""
    src_h, src_w = source.shape[:2]
    region = region.clamp(src_w, src_h)
    target_w, target_h = output_size(region, spec)

    x0, y0 = int(region.x), int(region.y)
    x1 = max(x0 + 1, min(src_w, int(round(region.x + region.width))))
    y1 = max(y0 + 1, min(src_h, int(round(region.y + region.height))))
    crop = source[y0:y1, x0:x1]

    shrinking = target_w < crop.shape[1]
    interpolation = cv2.INTER_AREA if shrinking else cv2.INTER_LINEAR
    resized = cv2.resize(crop, (target_w, target_h), interpolation=interpolation)
    data = encode_jpeg(resized, spec.quality)
    return EditedImage(data=data, width=target_w, height=target_h)


class CropEngine:
    """Interactive crop session over a single RawCapture."""

    def __init__(
        self,
        raw: RawCapture,
        output: Optional[OutputSpec] = None,
        executor: Optional[ThreadPoolExecutor] = None,
    ):
        self._source = decode_image(raw.data)
        self.source_height, self.source_width = self._source.shape[:2]
        self.raw = raw
        self._region = CropRegion.inset(self.source_width, self.source_height)
        self._output = output or OutputSpec()
        self._anchor: Optional[tuple[float, float]] = None

        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="preview"
        )
        self._lock = threading.Lock()
        self._generation = 0
        self._pending: Optional[Future] = None
        self._preview: Optional[EditedImage] = None
        self._closed = False
        self._schedule_preview()

    # ── state ──

    @property
    def region(self) -> CropRegion:
        return self._region

    @property
    def output(self) -> OutputSpec:
        return self._output

    @property
    def is_dragging(self) -> bool:
        return self._anchor is not None

    def set_region(self, region: CropRegion) -> None:
        self._region = region.clamp(self.source_width, self.source_height)
        self._schedule_preview()

    def set_output(self, **changes) -> OutputSpec:
        self._output = self._output.update(**changes)
        self._schedule_preview()
        return self._output

    # ── drag gesture ──

    def to_source(self, x: float, y: float, display_width: float, display_height: float) -> tuple[float, float]:
        """Map a point on the displayed canvas to source pixel coordinates."""
        return (
            x * self.source_width / display_width,
            y * self.source_height / display_height,
        )

    def _clamp_point(self, x: float, y: float) -> tuple[float, float]:
        return (
            min(max(float(x), 0.0), float(self.source_width)),
            min(max(float(y), 0.0), float(self.source_height)),
        )

    def pointer_down(self, x: float, y: float) -> None:
        x, y = self._clamp_point(x, y)
        self._anchor = (x, y)
        self._region = CropRegion(x, y, 0.0, 0.0)
        self._schedule_preview()

    def pointer_move(self, x: float, y: float) -> None:
        if self._anchor is None:
            return
        x, y = self._clamp_point(x, y)
        self._region = CropRegion.from_corners(self._anchor[0], self._anchor[1], x, y)
        self._schedule_preview()

    def pointer_up(self) -> None:
        self._anchor = None

    # pointer leaving the canvas ends the drag the same way
    pointer_leave = pointer_up

    # ── preview ──

    def render_preview(self, region: CropRegion, spec: OutputSpec) -> EditedImage:
        return render(self._source, region, spec)

    def _schedule_preview(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._generation += 1
            if self._pending is not None:
                self._pending.cancel()
                self._pending = None
            if self._region.is_empty:
                self._preview = None
                return
            self._pending = self._executor.submit(
                self._preview_job, self._generation, self._region, self._output
            )

    def _preview_job(self, generation: int, region: CropRegion, spec: OutputSpec) -> None:
        image = self.render_preview(region, spec)
        with self._lock:
            if generation != self._generation:
                logger.debug(f"古いプレビューを破棄 (gen={generation})")
                return
            self._preview = image
            self._pending = None

    def preview(self, timeout: Optional[float] = None) -> Optional[EditedImage]:
        """Latest preview for the current inputs, waiting for its encode."""
        while True:
            with self._lock:
                pending, generation = self._pending, self._generation
                if pending is None:
                    return self._preview
            try:
                pending.result(timeout)
            except CancelledError:
                continue
            with self._lock:
                if generation == self._generation:
                    return self._preview

    # ── finish ──

    def confirm(self) -> EditedImage:
        """Render the current region at final resolution."""
        if self._region.is_empty:
            raise NoRegionSelected("切り抜く範囲を選択してください")
        image = render(self._source, self._region, self._output)
        logger.info(f"画像最適化: {image.width}x{image.height} ({image.size / 1024:.1f}KB)")
        return image

    def cancel(self) -> None:
        """Drop the pending preview and all transient state."""
        with self._lock:
            self._closed = True
            self._generation += 1
            if self._pending is not None:
                self._pending.cancel()
            self._pending = None
            self._preview = None
        self._anchor = None
        if self._owns_executor:
            self._executor.shutdown(wait=False)

    close = cancel
