"""
Photo Station 設定ファイル
Configuration for the inventory photo capture station.

Camera capture runs on the station through OpenCV. Edited photos are sent
to the photo API (the hosted service in production, the local development
routes in app.py otherwise).
"""
import os

# ── データディレクトリ ──
BASE_DIR = os.path.dirname(os.path.abspath(__file__))
DATA_DIR = os.environ.get("STATION_DATA_DIR", os.path.join(BASE_DIR, "data"))
PHOTO_DIR = os.path.join(DATA_DIR, "product-photos")
LOG_DIR = os.environ.get("STATION_LOG_DIR", os.path.join(DATA_DIR, "logs"))

# ── カメラ設定 ──
CAPTURE_WIDTH = 1280
CAPTURE_HEIGHT = 720
SNAPSHOT_JPEG_QUALITY = 0.9
CAMERA_READY_TIMEOUT = 1.5  # seconds
CAMERA_READY_POLL = 0.05
# facing hint → OpenCV device index
FACING_DEVICES = {
    "back": 0,
    "front": 1,
}
DEFAULT_FACING = "back"

# ── 画像編集設定 ──
CROP_MARGIN = 0.1
OUTPUT_WIDTH = 800
OUTPUT_HEIGHT = 600
OUTPUT_SCALE = 1.0
OUTPUT_QUALITY = 0.8
SCALE_RANGE = (0.1, 2.0)
QUALITY_RANGE = (0.1, 1.0)

# ── アップロード設定 ──
MAX_UPLOAD_BYTES = 10 * 1024 * 1024  # 10 MiB
ALLOWED_MIME_TYPES = ("image/jpeg", "image/jpg", "image/png", "image/webp")
MIME_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
}
MAX_BATCH_FILES = 10
UPLOAD_WORKERS = 4
HTTP_TIMEOUT = 30  # seconds

# ── Flask 設定 ──
FLASK_HOST = "0.0.0.0"
FLASK_PORT = 5000
FLASK_DEBUG = True

# ── Photo API 設定 ──
PHOTO_API_BASE_URL = os.environ.get(
    "PHOTO_API_BASE_URL", f"http://localhost:{FLASK_PORT}"
)
PHOTO_STORAGE_PUBLIC_URL = os.environ.get(
    "PHOTO_STORAGE_PUBLIC_URL", f"{PHOTO_API_BASE_URL}/storage/product-photos"
)
# Store uploaded photos inline (base64 column) instead of on disk
PHOTO_STORE_INLINE = os.environ.get("PHOTO_STORE_INLINE", "1") == "1"

# ── Database 設定 ──
SQLALCHEMY_DATABASE_URI = os.environ.get(
    "STATION_DATABASE_URI", f"sqlite:///{os.path.join(DATA_DIR, 'photo_station.db')}"
)
SQLALCHEMY_TRACK_MODIFICATIONS = False

# データフォルダを自動作成
for d in [DATA_DIR, PHOTO_DIR, LOG_DIR]:
    os.makedirs(d, exist_ok=True)
