"""
エラー定義
Error taxonomy for the photo capture pipeline.

Every failure in the pipeline is recoverable: the station turns it into a
user notification and a safe state instead of aborting. The ``retry`` flag
tells the UI whether to offer a retry action.
"""
from http import HTTPStatus
from typing import Any, ClassVar


class PhotoStationError(Exception):
    """Base exception for all capture pipeline errors.

    Attributes:
        message: Human-readable error description.
        error_code: Machine-readable error code.
        http_status: Status used when the error is returned by a route.
        retry: Whether the UI should offer a retry action.
        context: Additional debugging information.
    """

    error_code: ClassVar[str] = "PHOTO_STATION_ERROR"
    http_status: ClassVar[int] = HTTPStatus.INTERNAL_SERVER_ERROR
    retry: ClassVar[bool] = False

    _registry: ClassVar[dict[str, type["PhotoStationError"]]] = {}

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        cls._registry[cls.error_code] = cls

    def __init__(self, message: str, *, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def to_dict(self) -> dict[str, Any]:
        """Error body for JSON responses (``success`` is always False)."""
        return {
            "success": False,
            "error": self.message,
            "code": self.error_code,
            "retry": self.retry,
            "context": self.context,
        }

    @classmethod
    def from_code(cls, error_code: str) -> type["PhotoStationError"]:
        """Look up a registered error class, falling back to the base."""
        return cls._registry.get(error_code, cls)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r})"


# ── カメラ取得エラー ──

class CaptureError(PhotoStationError):
    """Camera acquisition failed."""

    error_code: ClassVar[str] = "CAPTURE_ERROR"
    http_status: ClassVar[int] = HTTPStatus.SERVICE_UNAVAILABLE
    retry: ClassVar[bool] = True


class CameraUnavailable(CaptureError):
    """Permission to use the camera was denied."""

    error_code: ClassVar[str] = "CAMERA_UNAVAILABLE"


class NoDeviceFound(CaptureError):
    error_code: ClassVar[str] = "NO_DEVICE_FOUND"


class DeviceBusy(CaptureError):
    """The device exists but another process holds it."""

    error_code: ClassVar[str] = "DEVICE_BUSY"


# ── 操作順序エラー ──

class SequenceError(PhotoStationError):
    """An action was requested before its prerequisites were met."""

    error_code: ClassVar[str] = "SEQUENCE_ERROR"
    http_status: ClassVar[int] = HTTPStatus.CONFLICT


class NotReady(SequenceError):
    error_code: ClassVar[str] = "NOT_READY"


class NoRegionSelected(SequenceError):
    error_code: ClassVar[str] = "NO_REGION_SELECTED"


class InvalidTransition(SequenceError):
    """The capture flow is not in a stage that accepts this action."""

    error_code: ClassVar[str] = "INVALID_TRANSITION"


# ── 入力検証エラー ──

class ValidationError(PhotoStationError):
    error_code: ClassVar[str] = "VALIDATION_ERROR"
    http_status: ClassVar[int] = HTTPStatus.BAD_REQUEST


class InvalidFormat(ValidationError):
    """The file is not one of the accepted image types."""

    error_code: ClassVar[str] = "INVALID_FORMAT"
    http_status: ClassVar[int] = HTTPStatus.UNSUPPORTED_MEDIA_TYPE


class TooLarge(ValidationError):
    error_code: ClassVar[str] = "TOO_LARGE"
    http_status: ClassVar[int] = HTTPStatus.REQUEST_ENTITY_TOO_LARGE


class InvalidOutputSpec(ValidationError):
    """Output size, scale or quality outside the accepted range."""

    error_code: ClassVar[str] = "INVALID_OUTPUT_SPEC"


# ── 通信エラー ──

class TransportError(PhotoStationError):
    """The photo API could not be reached or rejected the request.

    Never retried automatically; retrying is up to the caller.
    """

    error_code: ClassVar[str] = "TRANSPORT_ERROR"
    http_status: ClassVar[int] = HTTPStatus.BAD_GATEWAY
    retry: ClassVar[bool] = True

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        details: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        context_dict = context or {}
        if status_code is not None:
            context_dict["status_code"] = status_code
        if details:
            context_dict["details"] = details
        super().__init__(message, context=context_dict)
        self.status_code = status_code
        self.details = details
