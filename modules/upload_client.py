"""
アップロードクライアント
Client for the product photo API.

Type and size are validated locally before anything is sent, so a
rejected file never costs a network call. Transport failures are raised as
``TransportError`` and are never retried here; retry policy belongs to the
caller.
"""
from concurrent.futures import ThreadPoolExecutor
import time
from typing import Iterable, Optional, Protocol

import requests
from loguru import logger

import config
from modules.errors import (
    InvalidFormat,
    PhotoStationError,
    TooLarge,
    TransportError,
    ValidationError,
)
from modules.models import BatchResult, PhotoDescriptor, UploadFailure


class ImagePayload(Protocol):
    data: bytes
    mime_type: str
    name: str


def validate_image(image: ImagePayload) -> None:
    """Raise InvalidFormat / TooLarge for files the API would refuse."""
    mime_type = (image.mime_type or "").lower()
    if mime_type not in config.ALLOWED_MIME_TYPES:
        raise InvalidFormat(
            f"{image.name}: 画像ファイルのみ使用できます",
            context={"file": image.name, "mime_type": image.mime_type},
        )
    if len(image.data) > config.MAX_UPLOAD_BYTES:
        raise TooLarge(
            f"{image.name}: ファイルが大きすぎます (最大 {config.MAX_UPLOAD_BYTES // (1024 * 1024)}MB)",
            context={"file": image.name, "size": len(image.data)},
        )


def build_file_name(naming_key: str, mime_type: str, timestamp_ms: Optional[int] = None) -> str:
    """``<naming_key>_<epoch ms>.<ext>``; the timestamp keeps names unique."""
    if timestamp_ms is None:
        timestamp_ms = int(time.time() * 1000)
    ext = config.MIME_EXTENSIONS.get(mime_type.lower(), "jpg")
    return f"{naming_key or 'unknown'}_{timestamp_ms}.{ext}"


def resolve_photo_url(
    photo: PhotoDescriptor, storage_base: str = config.PHOTO_STORAGE_PUBLIC_URL
) -> Optional[str]:
    """Displayable URI: inline data URI or public storage URL."""
    if photo.photo_data:
        return f"data:{photo.mime_type};base64,{photo.photo_data}"
    if photo.file_path:
        return f"{storage_base.rstrip('/')}/{photo.file_path.lstrip('/')}"
    return None


class UploadClient:
    """Photo API gateway: upload, list, set-primary, delete."""

    def __init__(
        self,
        base_url: str = config.PHOTO_API_BASE_URL,
        session: Optional[requests.Session] = None,
        timeout: float = config.HTTP_TIMEOUT,
    ):
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def _call(self, method: str, path: str, expect_data: bool = True, **kwargs) -> dict:
        try:
            response = self.session.request(method, self._url(path), timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            logger.error(f"通信エラー {method} {path}: {e}")
            raise TransportError("ネットワークエラー", details=str(e)) from e

        try:
            result = response.json()
        except ValueError:
            result = None
        if not isinstance(result, dict):
            result = {}

        if not response.ok:
            message = result.get("error") or f"HTTP {response.status_code}"
            logger.error(f"APIエラー {method} {path}: {response.status_code} {message}")
            # The API reports rejected files with the same codes as local validation
            error_cls = PhotoStationError.from_code(result.get("code") or "")
            if issubclass(error_cls, ValidationError):
                raise error_cls(message, context={"status_code": response.status_code})
            raise TransportError(
                message, status_code=response.status_code, details=result.get("details")
            )

        if expect_data and "data" not in result:
            logger.error(f"不正な応答 {method} {path}: {response.status_code}")
            raise TransportError("不正な応答", status_code=response.status_code)
        return result

    # ── upload ──

    def upload(
        self,
        image: ImagePayload,
        owner_id: Optional[str],
        naming_key: str,
        is_first: bool = False,
    ) -> PhotoDescriptor:
        """Validate locally, then send one photo. Owner may be None (pending)."""
        validate_image(image)

        file_name = build_file_name(naming_key, image.mime_type)
        logger.info(
            f"アップロード: {file_name} ({len(image.data) / 1024:.1f}KB) product={owner_id or '-'}"
        )
        result = self._call(
            "POST",
            "/api/upload-photo",
            files={"file": (file_name, image.data, image.mime_type)},
            data={
                "productId": owner_id or "",
                "sku": naming_key,
                "isFirst": "true" if is_first else "false",
            },
        )
        if not isinstance(result["data"], dict):
            raise TransportError("不正な応答", details=repr(result["data"]))
        return PhotoDescriptor.from_dict(result["data"])

    def upload_many(
        self,
        images: Iterable[ImagePayload],
        owner_id: Optional[str],
        naming_key: str,
        max_workers: int = config.UPLOAD_WORKERS,
    ) -> BatchResult:
        """Upload all images in parallel; one failure never aborts the others."""
        images = list(images)
        batch = BatchResult()
        if not images:
            return batch

        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="upload") as pool:
            futures = [
                pool.submit(self.upload, image, owner_id, naming_key, i == 0)
                for i, image in enumerate(images)
            ]
            for image, future in zip(images, futures):
                try:
                    batch.successes.append(future.result())
                except PhotoStationError as e:
                    logger.warning(f"アップロード失敗 {image.name}: {e.message}")
                    batch.failures.append(UploadFailure(image.name, e))

        logger.info(f"一括アップロード: 成功 {batch.success_count} / 失敗 {batch.failure_count}")
        return batch

    # ── gallery ──

    def list_photos(self, owner_id: str) -> list[PhotoDescriptor]:
        result = self._call("GET", "/api/photos", params={"productId": owner_id})
        return [PhotoDescriptor.from_dict(d) for d in result["data"] or []]

    def set_primary(self, photo_id: str, owner_id: str) -> None:
        self._call(
            "POST",
            "/api/photo-actions",
            json={"action": "setPrimary", "photoId": photo_id, "productId": owner_id},
        )

    def delete(self, photo_id: str) -> None:
        self._call("POST", "/api/photo-actions", json={"action": "delete", "photoId": photo_id})

    def attach_photos(self, photo_ids: list[str], owner_id: str) -> int:
        """Hand pending (owner-less) photos over to a newly saved product."""
        result = self._call(
            "POST",
            "/api/photo-actions",
            json={"action": "attach", "photoIds": list(photo_ids), "productId": owner_id},
        )
        return int((result["data"] or {}).get("attached", 0))

    def ping(self) -> bool:
        """Reachability check against ``/api/test``."""
        try:
            self._call("GET", "/api/test", expect_data=False)
        except TransportError:
            return False
        return True

    def resolve_photo_url(self, photo: PhotoDescriptor) -> Optional[str]:
        return resolve_photo_url(photo)
