"""
データモデル
Value types that flow through the capture pipeline, plus the
``product_photos`` table served by the development photo API.
"""
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Optional

from flask_sqlalchemy import SQLAlchemy

import config
from modules.errors import InvalidOutputSpec

db = SQLAlchemy()


@dataclass(frozen=True)
class RawCapture:
    """Unedited JPEG sampled from the live camera feed."""

    data: bytes
    width: int
    height: int
    mime_type: str = "image/jpeg"

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class CropRegion:
    """Rectangle in source-image pixel coordinates."""

    x: float
    y: float
    width: float
    height: float

    @classmethod
    def inset(cls, source_width: int, source_height: int, margin: float = config.CROP_MARGIN) -> "CropRegion":
        """Centered region leaving ``margin`` of the source on each side."""
        return cls(
            x=source_width * margin,
            y=source_height * margin,
            width=source_width * (1 - 2 * margin),
            height=source_height * (1 - 2 * margin),
        )

    @classmethod
    def from_corners(cls, x1: float, y1: float, x2: float, y2: float) -> "CropRegion":
        """Normalize two opposite corners so width/height are non-negative."""
        return cls(
            x=min(x1, x2),
            y=min(y1, y2),
            width=abs(x2 - x1),
            height=abs(y2 - y1),
        )

    @property
    def is_empty(self) -> bool:
        return self.width <= 0 or self.height <= 0

    @property
    def aspect_ratio(self) -> float:
        return self.width / self.height

    def clamp(self, source_width: int, source_height: int) -> "CropRegion":
        """Return the part of the region that lies inside the source."""
        x1 = min(max(self.x, 0.0), source_width)
        y1 = min(max(self.y, 0.0), source_height)
        x2 = min(max(self.x + self.width, 0.0), source_width)
        y2 = min(max(self.y + self.height, 0.0), source_height)
        return CropRegion(x1, y1, x2 - x1, y2 - y1)

    def to_dict(self) -> dict:
        return {"x": self.x, "y": self.y, "width": self.width, "height": self.height}


@dataclass(frozen=True)
class OutputSpec:
    """Target size, scale factor and JPEG quality of the edited photo."""

    width: int = config.OUTPUT_WIDTH
    height: int = config.OUTPUT_HEIGHT
    scale: float = config.OUTPUT_SCALE
    quality: float = config.OUTPUT_QUALITY

    def __post_init__(self):
        if self.width <= 0 or self.height <= 0:
            raise InvalidOutputSpec(
                "Output size must be positive",
                context={"width": self.width, "height": self.height},
            )
        lo, hi = config.SCALE_RANGE
        if not lo <= self.scale <= hi:
            raise InvalidOutputSpec(
                f"Scale must be between {lo} and {hi}", context={"scale": self.scale}
            )
        lo, hi = config.QUALITY_RANGE
        if not lo <= self.quality <= hi:
            raise InvalidOutputSpec(
                f"Quality must be between {lo} and {hi}", context={"quality": self.quality}
            )

    def update(self, **changes) -> "OutputSpec":
        """Copy with the given fields changed; ``None`` values are ignored."""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})

    def to_dict(self) -> dict:
        return {
            "width": self.width,
            "height": self.height,
            "scale": self.scale,
            "quality": self.quality,
        }


@dataclass(frozen=True)
class EditedImage:
    """Cropped, resized and re-encoded photo ready for upload."""

    data: bytes
    width: int
    height: int
    mime_type: str = "image/jpeg"
    name: str = "capture.jpg"

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class PhotoFile:
    """Image file picked from disk for the multi-file upload path."""

    name: str
    data: bytes
    mime_type: str

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass
class PhotoDescriptor:
    """Server-side record of a stored product photo."""

    id: str
    product_id: Optional[str]
    mime_type: str
    is_primary: bool = False
    file_name: str = ""
    file_path: Optional[str] = None
    photo_data: Optional[str] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PhotoDescriptor":
        created = data.get("created_at")
        if isinstance(created, str):
            try:
                created = datetime.fromisoformat(created)
            except ValueError:
                created = None
        product_id = data.get("product_id")
        return cls(
            id=str(data["id"]),
            product_id=str(product_id) if product_id not in (None, "") else None,
            mime_type=data.get("mime_type") or "image/jpeg",
            is_primary=bool(data.get("is_primary", False)),
            file_name=data.get("file_name") or "",
            file_path=data.get("file_path") or None,
            photo_data=data.get("photo_data") or None,
            created_at=created,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "mime_type": self.mime_type,
            "is_primary": self.is_primary,
            "file_name": self.file_name,
            "file_path": self.file_path,
            "photo_data": self.photo_data,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass
class UploadFailure:
    file_name: str
    error: Exception

    def to_dict(self) -> dict:
        return {"file": self.file_name, "error": str(self.error)}


@dataclass
class BatchResult:
    """Outcome of a multi-file upload: both counts are always reported."""

    successes: list[PhotoDescriptor] = field(default_factory=list)
    failures: list[UploadFailure] = field(default_factory=list)

    @property
    def success_count(self) -> int:
        return len(self.successes)

    @property
    def failure_count(self) -> int:
        return len(self.failures)

    def to_dict(self) -> dict:
        return {
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "successes": [d.to_dict() for d in self.successes],
            "failures": [f.to_dict() for f in self.failures],
        }


class ProductPhoto(db.Model):
    __tablename__ = 'product_photos'

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    product_id = db.Column(db.String(64), nullable=True, index=True)
    sku = db.Column(db.String(100), default="", index=True)
    file_name = db.Column(db.String(255), nullable=False)
    file_path = db.Column(db.String(512), nullable=True)
    photo_data = db.Column(db.Text, nullable=True)  # base64 when stored inline
    mime_type = db.Column(db.String(50), default="image/jpeg")
    file_size_bytes = db.Column(db.Integer, default=0)
    is_primary = db.Column(db.Boolean, default=False, nullable=False, index=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    def to_dict(self):
        return {
            "id": self.id,
            "product_id": self.product_id,
            "sku": self.sku,
            "file_name": self.file_name,
            "file_path": self.file_path,
            "photo_data": self.photo_data,
            "mime_type": self.mime_type,
            "file_size_bytes": self.file_size_bytes,
            "is_primary": self.is_primary,
            "created_at": self.created_at.isoformat(),
        }
