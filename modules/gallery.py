"""
写真ギャラリー・撮影フロー
Photo collection manager: the capture flow state machine and the gallery
of one product's photos.

The flow moves through capturing → editing → reviewing and ends either
uploaded or aborted. Errors never end the flow: each becomes a
notification, and the flow falls back to ``capturing`` (camera or transport
problems) or stays where it is (sequencing and validation problems).
"""
from dataclasses import dataclass
from enum import Enum
import threading
from typing import Callable, Iterable, Optional

from loguru import logger

import config
from modules.camera import CaptureSource
from modules.cropper import CropEngine
from modules.errors import (
    CaptureError,
    InvalidTransition,
    PhotoStationError,
    TransportError,
)
from modules.models import (
    BatchResult,
    EditedImage,
    OutputSpec,
    PhotoDescriptor,
    PhotoFile,
    RawCapture,
    UploadFailure,
)
from modules.upload_client import UploadClient


# ── 通知 ──

@dataclass(frozen=True)
class Notification:
    level: str  # "success" | "error" | "info"
    message: str
    retry: bool = False

    def to_dict(self) -> dict:
        return {"level": self.level, "message": self.message, "retry": self.retry}


class Notifier:
    """Collects user-visible notifications until the UI drains them."""

    def __init__(self):
        self._items: list[Notification] = []
        self._lock = threading.Lock()

    def _push(self, item: Notification) -> None:
        with self._lock:
            self._items.append(item)

    def success(self, message: str) -> None:
        logger.info(message)
        self._push(Notification("success", message))

    def info(self, message: str) -> None:
        logger.info(message)
        self._push(Notification("info", message))

    def error(self, message: str, retry: bool = False) -> None:
        logger.warning(message)
        self._push(Notification("error", message, retry))

    def drain(self) -> list[Notification]:
        with self._lock:
            items, self._items = self._items, []
        return items

    def __len__(self):
        with self._lock:
            return len(self._items)


# ── ギャラリー ──

class PhotoGallery:
    """Visible list of one product's photos.

    After every mutation the list is re-queried from the API rather than
    patched locally, so ordering and the primary flag always match the
    server.
    """

    def __init__(
        self,
        client: UploadClient,
        owner_id: Optional[str],
        naming_key: str = "unknown",
        notifier: Optional[Notifier] = None,
        on_pending_photo: Optional[Callable[[PhotoDescriptor], None]] = None,
        on_photos_change: Optional[Callable[[list[PhotoDescriptor]], None]] = None,
    ):
        self.client = client
        self.owner_id = owner_id
        self.naming_key = naming_key
        self.notifier = notifier or Notifier()
        self.on_pending_photo = on_pending_photo
        self.on_photos_change = on_photos_change
        self.photos: list[PhotoDescriptor] = []

    @property
    def primary(self) -> Optional[PhotoDescriptor]:
        return next((p for p in self.photos if p.is_primary), None)

    def refresh(self) -> list[PhotoDescriptor]:
        if not self.owner_id:
            return self.photos
        try:
            self.photos = self.client.list_photos(self.owner_id)
        except TransportError as e:
            self.notifier.error(f"写真の読み込みに失敗しました: {e.message}", retry=True)
            return self.photos
        if self.on_photos_change:
            self.on_photos_change(self.photos)
        return self.photos

    def set_primary(self, photo: PhotoDescriptor) -> bool:
        try:
            self.client.set_primary(photo.id, self.owner_id)
        except TransportError as e:
            self.notifier.error(f"メイン写真の設定に失敗しました: {e.message}", retry=True)
            return False
        self.notifier.success("メイン写真を設定しました")
        self.refresh()
        return True

    def delete(self, photo: PhotoDescriptor) -> bool:
        try:
            self.client.delete(photo.id)
        except TransportError as e:
            self.notifier.error(f"写真の削除に失敗しました: {e.message}", retry=True)
            return False
        self.notifier.success("写真を削除しました")
        self.refresh()
        return True

    def photo_url(self, photo: PhotoDescriptor) -> Optional[str]:
        return self.client.resolve_photo_url(photo)

    def upload_files(self, files: Iterable[PhotoFile]) -> BatchResult:
        """Upload picked files, reporting success and failure counts apart."""
        files = list(files)[: config.MAX_BATCH_FILES]
        if not files:
            return BatchResult()

        if not self.owner_id:
            return self._upload_pending(files)

        batch = BatchResult()
        for i, photo_file in enumerate(files):
            try:
                descriptor = self.client.upload(
                    photo_file, self.owner_id, self.naming_key, is_first=not self.photos and i == 0
                )
            except PhotoStationError as e:
                self.notifier.error(f"{photo_file.name}: {e.message}", retry=e.retry)
                batch.failures.append(UploadFailure(photo_file.name, e))
                continue
            batch.successes.append(descriptor)

        self._report(batch)
        if batch.success_count:
            self.refresh()
        return batch

    def _upload_pending(self, files: list[PhotoFile]) -> BatchResult:
        # No product yet: upload now, the caller attaches them once it exists
        if self.on_pending_photo is None:
            self.notifier.error("写真を追加する前に商品を保存してください")
            return BatchResult(failures=[
                UploadFailure(f.name, InvalidTransition("商品が未保存です")) for f in files
            ])

        batch = self.client.upload_many(files, None, self.naming_key)
        for descriptor in batch.successes:
            self.on_pending_photo(descriptor)
        for failure in batch.failures:
            self.notifier.error(f"{failure.file_name}: {failure.error}")
        self._report(batch, pending=True)
        return batch

    def _report(self, batch: BatchResult, pending: bool = False) -> None:
        if batch.success_count:
            suffix = "一時保存しました" if pending else "アップロードしました"
            self.notifier.success(f"{batch.success_count} 枚の写真を{suffix}")
        if batch.failure_count:
            self.notifier.error(f"{batch.failure_count} 枚の写真をアップロードできませんでした")


# ── 撮影フロー ──

class Stage(str, Enum):
    CAPTURING = "capturing"
    EDITING = "editing"
    REVIEWING = "reviewing"
    UPLOADED = "uploaded"
    ABORTED = "aborted"


TERMINAL_STAGES = (Stage.UPLOADED, Stage.ABORTED)


class CaptureFlow:
    """Capture → crop → review → upload for one product.

    ``on_saved`` receives the new PhotoDescriptor after a successful upload.
    With no product id the descriptor is a pending photo that the caller
    attaches once the product is saved.
    """

    def __init__(
        self,
        camera: CaptureSource,
        client: UploadClient,
        owner_id: Optional[str],
        naming_key: str,
        on_saved: Optional[Callable[[PhotoDescriptor], None]] = None,
        review: bool = True,
        notifier: Optional[Notifier] = None,
        gallery: Optional[PhotoGallery] = None,
    ):
        self.camera = camera
        self.client = client
        self.owner_id = owner_id
        self.naming_key = naming_key
        self.on_saved = on_saved
        self.review = review
        self.notifier = notifier or Notifier()
        self.gallery = gallery or PhotoGallery(client, owner_id, naming_key, self.notifier)

        self.stage = Stage.CAPTURING
        self.facing = config.DEFAULT_FACING
        self.raw: Optional[RawCapture] = None
        self.editor: Optional[CropEngine] = None
        self.edited: Optional[EditedImage] = None
        self.saved: Optional[PhotoDescriptor] = None
        self._output: Optional[OutputSpec] = None

    # ── helpers ──

    def _require(self, *stages: Stage) -> None:
        if self.stage not in stages:
            raise InvalidTransition(
                f"現在の状態 ({self.stage.value}) ではこの操作はできません",
                context={"stage": self.stage.value},
            )

    def _start_camera(self) -> bool:
        try:
            self.camera.open(self.facing)
        except CaptureError as e:
            self.notifier.error(e.message, retry=True)
            return False
        return True

    def _discard_editor(self) -> None:
        if self.editor is not None:
            self._output = self.editor.output
            self.editor.cancel()
            self.editor = None

    def _back_to_capturing(self) -> bool:
        self._discard_editor()
        self.raw = None
        self.edited = None
        self.stage = Stage.CAPTURING
        return self._start_camera()

    @property
    def is_finished(self) -> bool:
        return self.stage in TERMINAL_STAGES

    # ── transitions ──

    def open(self, facing: Optional[str] = None) -> bool:
        """Enter ``capturing`` and start the camera. False if the camera failed."""
        if facing:
            self.facing = facing
        self.stage = Stage.CAPTURING
        logger.info(f"撮影開始: product={self.owner_id or '-'} sku={self.naming_key}")
        return self._start_camera()

    def retry_camera(self) -> bool:
        self._require(Stage.CAPTURING)
        return self._start_camera()

    def switch_camera(self) -> bool:
        self._require(Stage.CAPTURING)
        self.facing = "front" if self.facing == "back" else "back"
        return self._start_camera()

    def snapshot(self) -> Optional[RawCapture]:
        self._require(Stage.CAPTURING)
        try:
            raw = self.camera.snapshot()
            editor = CropEngine(raw, output=self._output)
        except PhotoStationError as e:
            self.notifier.error(e.message, retry=e.retry)
            return None
        self.camera.close()
        self.raw = raw
        self.editor = editor
        self.stage = Stage.EDITING
        return raw

    def confirm_edit(self) -> Optional[EditedImage]:
        self._require(Stage.EDITING)
        try:
            edited = self.editor.confirm()
        except PhotoStationError as e:
            self.notifier.error(e.message)
            return None
        self.edited = edited
        if self.review:
            self.stage = Stage.REVIEWING
            return edited
        self._upload()
        return edited

    def cancel_edit(self) -> bool:
        self._require(Stage.EDITING)
        return self._back_to_capturing()

    def retake(self) -> bool:
        self._require(Stage.REVIEWING)
        return self._back_to_capturing()

    def edit_again(self) -> None:
        self._require(Stage.REVIEWING)
        self.edited = None
        self.stage = Stage.EDITING

    def confirm(self) -> Optional[PhotoDescriptor]:
        self._require(Stage.REVIEWING)
        return self._upload()

    def _upload(self) -> Optional[PhotoDescriptor]:
        image = EditedImage(
            data=self.edited.data,
            width=self.edited.width,
            height=self.edited.height,
            mime_type=self.edited.mime_type,
            name=f"{self.naming_key}.jpg",
        )
        try:
            # The API makes the first photo of a product primary on its own
            descriptor = self.client.upload(image, self.owner_id, self.naming_key)
        except TransportError as e:
            self.notifier.error(f"写真の保存に失敗しました: {e.message}", retry=True)
            self._back_to_capturing()
            return None
        except PhotoStationError as e:
            self.notifier.error(e.message)
            return None

        self.notifier.success("写真を保存しました")
        self.saved = descriptor
        self._discard_editor()
        self.raw = None
        self.edited = None
        self.camera.close()
        self.stage = Stage.UPLOADED
        self.gallery.refresh()
        if self.on_saved:
            self.on_saved(descriptor)
        return descriptor

    def close(self) -> None:
        """Abort from any stage, releasing the camera and preview buffers."""
        self.camera.close()
        self._discard_editor()
        self.raw = None
        self.edited = None
        if self.stage is not Stage.UPLOADED:
            self.stage = Stage.ABORTED
        logger.info(f"撮影終了: {self.stage.value}")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    def to_dict(self) -> dict:
        data = {
            "stage": self.stage.value,
            "facing": self.facing,
            "camera_ready": self.camera.is_ready,
            "product_id": self.owner_id,
            "sku": self.naming_key,
            "review": self.review,
            "saved": self.saved.to_dict() if self.saved else None,
        }
        if self.raw is not None:
            data["source"] = {"width": self.raw.width, "height": self.raw.height}
        if self.editor is not None:
            data["region"] = self.editor.region.to_dict()
            data["output"] = self.editor.output.to_dict()
        if self.edited is not None:
            data["edited"] = {
                "width": self.edited.width,
                "height": self.edited.height,
                "size": self.edited.size,
            }
        return data
