"""
Photo Station — メインアプリケーション
Flask application for the inventory photo capture station.

The station drives one capture flow at a time (camera → crop → review →
upload) and shows the gallery of the product being edited. The /api/*
routes are the development stand-in for the hosted photo API that the
upload client talks to.
"""
import os
import threading

from flask import (
    Flask, request, jsonify,
    send_from_directory, Response,
)
from loguru import logger

import config
from modules.camera import CaptureSource
from modules.errors import InvalidFormat, PhotoStationError, TooLarge
from modules.gallery import CaptureFlow, Notifier, PhotoGallery, Stage
from modules.log import init_logging
from modules.models import PhotoDescriptor, PhotoFile
from modules.photo_store import (
    init_db,
    save_photo,
    list_photos,
    set_primary,
    attach_photos,
    delete_photo,
)
from modules.upload_client import UploadClient, resolve_photo_url, validate_image

app = Flask(__name__)
app.config["SQLALCHEMY_DATABASE_URI"] = config.SQLALCHEMY_DATABASE_URI
app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = config.SQLALCHEMY_TRACK_MODIFICATIONS
app.config["MAX_CONTENT_LENGTH"] = config.MAX_BATCH_FILES * config.MAX_UPLOAD_BYTES + 1024 * 1024
init_db(app)

# Single active capture flow per station
_flow = None
_flow_lock = threading.Lock()
_notifier = Notifier()
# Photos uploaded before their product existed
_pending_photos: list[PhotoDescriptor] = []
_pending_lock = threading.Lock()


def make_camera() -> CaptureSource:
    return CaptureSource()


def make_client() -> UploadClient:
    return UploadClient(config.PHOTO_API_BASE_URL)


def _add_pending(photo: PhotoDescriptor) -> None:
    with _pending_lock:
        _pending_photos.append(photo)


def _as_bool(value, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() not in ("", "0", "false", "no", "off")
    return bool(value)


def _descriptor_json(photo: PhotoDescriptor) -> dict:
    data = photo.to_dict()
    data["url"] = resolve_photo_url(photo)
    return data


def _state():
    body = {
        "success": True,
        "state": _flow.to_dict() if _flow else None,
        "notifications": [n.to_dict() for n in _notifier.drain()],
    }
    return jsonify(body)


def _require_flow():
    if _flow is None or _flow.is_finished:
        return jsonify({"success": False, "error": "撮影が開始されていません"}), 409
    return None


@app.errorhandler(PhotoStationError)
def handle_station_error(e):
    logger.warning(f"{e.error_code}: {e.message}")
    return jsonify(e.to_dict()), e.http_status


# ── 撮影フロー ──

@app.route("/capture/open", methods=["POST"])
def capture_open():
    """撮影モーダルを開く（カメラ起動）"""
    global _flow
    data = request.get_json(silent=True) or {}
    product_id = data.get("product_id") or None
    sku = data.get("sku") or "unknown"
    facing = data.get("facing") or config.DEFAULT_FACING

    if facing not in config.FACING_DEVICES:
        return jsonify({"success": False, "error": "無効なカメラ指定です"}), 400

    def on_saved(photo: PhotoDescriptor):
        if photo.product_id is None:
            _add_pending(photo)

    with _flow_lock:
        if _flow is not None:
            _flow.close()
        _flow = CaptureFlow(
            camera=make_camera(),
            client=make_client(),
            owner_id=product_id,
            naming_key=sku,
            on_saved=on_saved,
            review=_as_bool(data.get("review"), True),
            notifier=_notifier,
        )
        _flow.open(facing)
        return _state()


@app.route("/capture/close", methods=["POST"])
def capture_close():
    """撮影モーダルを閉じる"""
    global _flow
    with _flow_lock:
        if _flow is not None:
            _flow.close()
            _flow = None
        return _state()


@app.route("/capture/state")
def capture_state():
    """撮影フローの現在の状態"""
    with _flow_lock:
        return _state()


@app.route("/capture/retry", methods=["POST"])
def capture_retry():
    """カメラ起動を再試行する"""
    with _flow_lock:
        error = _require_flow()
        if error:
            return error
        _flow.retry_camera()
        return _state()


@app.route("/capture/switch", methods=["POST"])
def capture_switch():
    """前面/背面カメラを切り替える"""
    with _flow_lock:
        error = _require_flow()
        if error:
            return error
        _flow.switch_camera()
        return _state()


@app.route("/capture/snapshot", methods=["POST"])
def capture_snapshot():
    """シャッター"""
    with _flow_lock:
        error = _require_flow()
        if error:
            return error
        _flow.snapshot()
        return _state()


@app.route("/capture/pointer", methods=["POST"])
def capture_pointer():
    """切り抜き範囲のドラッグ操作 (down / move / up / leave)"""
    data = request.get_json(silent=True) or {}
    event = data.get("event", "")
    with _flow_lock:
        error = _require_flow()
        if error:
            return error
        if _flow.stage is not Stage.EDITING:
            return jsonify({"success": False, "error": "編集中ではありません"}), 409

        editor = _flow.editor
        if event in ("up", "leave"):
            editor.pointer_up()
            return _state()

        try:
            x, y = float(data["x"]), float(data["y"])
        except (KeyError, TypeError, ValueError):
            return jsonify({"success": False, "error": "座標が不正です"}), 400
        if data.get("display_width") and data.get("display_height"):
            x, y = editor.to_source(
                x, y, float(data["display_width"]), float(data["display_height"])
            )

        if event == "down":
            editor.pointer_down(x, y)
        elif event == "move":
            editor.pointer_move(x, y)
        else:
            return jsonify({"success": False, "error": "無効なイベントです"}), 400
        return _state()


@app.route("/capture/output", methods=["POST"])
def capture_output():
    """出力サイズ・倍率・画質を変更する"""
    data = request.get_json(silent=True) or {}
    with _flow_lock:
        error = _require_flow()
        if error:
            return error
        if _flow.stage is not Stage.EDITING:
            return jsonify({"success": False, "error": "編集中ではありません"}), 409
        try:
            changes = {
                "width": int(data["width"]) if "width" in data else None,
                "height": int(data["height"]) if "height" in data else None,
                "scale": float(data["scale"]) if "scale" in data else None,
                "quality": float(data["quality"]) if "quality" in data else None,
            }
        except (TypeError, ValueError):
            return jsonify({"success": False, "error": "数値が不正です"}), 400
        _flow.editor.set_output(**changes)
        return _state()


@app.route("/capture/preview")
def capture_preview():
    """編集中のプレビュー画像"""
    with _flow_lock:
        editor = _flow.editor if _flow else None
    if editor is None:
        return "プレビューがありません", 404
    preview = editor.preview()
    if preview is None:
        return "プレビューがありません", 404
    return Response(preview.data, mimetype=preview.mime_type)


@app.route("/capture/edited")
def capture_edited():
    """確認画面の編集済み画像"""
    with _flow_lock:
        edited = _flow.edited if _flow else None
    if edited is None:
        return "画像がありません", 404
    return Response(edited.data, mimetype=edited.mime_type)


@app.route("/capture/confirm", methods=["POST"])
def capture_confirm():
    """編集確定 / 保存確定"""
    with _flow_lock:
        error = _require_flow()
        if error:
            return error
        if _flow.stage is Stage.REVIEWING:
            _flow.confirm()
        else:
            _flow.confirm_edit()
        return _state()


@app.route("/capture/cancel", methods=["POST"])
def capture_cancel():
    """編集をやめて撮影に戻る"""
    with _flow_lock:
        error = _require_flow()
        if error:
            return error
        _flow.cancel_edit()
        return _state()


@app.route("/capture/retake", methods=["POST"])
def capture_retake():
    """撮り直す"""
    with _flow_lock:
        error = _require_flow()
        if error:
            return error
        _flow.retake()
        return _state()


@app.route("/capture/edit", methods=["POST"])
def capture_edit_again():
    """確認画面から編集に戻る"""
    with _flow_lock:
        error = _require_flow()
        if error:
            return error
        _flow.edit_again()
        return _state()


# ── ギャラリー ──

def _gallery(product_id, sku=""):
    return PhotoGallery(
        make_client(),
        product_id or None,
        sku or "unknown",
        notifier=_notifier,
        on_pending_photo=_add_pending,
    )


def _gallery_response(gallery: PhotoGallery, **extra):
    body = {
        "success": True,
        "photos": [_descriptor_json(p) for p in gallery.photos],
        "notifications": [n.to_dict() for n in _notifier.drain()],
    }
    body.update(extra)
    return jsonify(body)


@app.route("/photos")
def photos():
    """商品の写真一覧"""
    product_id = request.args.get("product_id", "")
    if not product_id:
        return jsonify({"success": False, "error": "商品IDがありません"}), 400
    gallery = _gallery(product_id)
    gallery.refresh()
    return _gallery_response(gallery)


@app.route("/photos/<photo_id>/primary", methods=["POST"])
def photos_set_primary(photo_id):
    """メイン写真に設定する"""
    data = request.get_json(silent=True) or {}
    product_id = data.get("product_id", "")
    if not product_id:
        return jsonify({"success": False, "error": "商品IDがありません"}), 400
    gallery = _gallery(product_id)
    ok = gallery.set_primary(PhotoDescriptor(id=photo_id, product_id=product_id, mime_type=""))
    return _gallery_response(gallery, updated=ok)


@app.route("/photos/<photo_id>", methods=["DELETE"])
def photos_delete(photo_id):
    """写真を削除する"""
    product_id = request.args.get("product_id", "")
    gallery = _gallery(product_id)
    ok = gallery.delete(PhotoDescriptor(id=photo_id, product_id=product_id or None, mime_type=""))
    return _gallery_response(gallery, deleted=ok)


@app.route("/photos/upload", methods=["POST"])
def photos_upload():
    """ファイルから写真をまとめてアップロードする"""
    product_id = request.form.get("product_id", "")
    sku = request.form.get("sku", "")
    files = [
        PhotoFile(name=f.filename or "photo", data=f.read(), mime_type=f.mimetype or "")
        for f in request.files.getlist("files")
    ]
    if not files:
        return jsonify({"success": False, "error": "ファイルがありません"}), 400
    gallery = _gallery(product_id, sku)
    if product_id:
        gallery.refresh()
    batch = gallery.upload_files(files)
    return _gallery_response(gallery, batch=batch.to_dict())


@app.route("/photos/pending")
def photos_pending():
    """商品保存前の一時保存写真"""
    with _pending_lock:
        pending = list(_pending_photos)
    return jsonify({"success": True, "photos": [_descriptor_json(p) for p in pending]})


@app.route("/photos/status")
def photos_status():
    """写真 API の接続状態 (停止中はアップロード不可)"""
    online = make_client().ping()
    if not online:
        logger.warning("写真 API に接続できません")
    return jsonify({"success": True, "api_online": online})


@app.route("/photos/attach", methods=["POST"])
def photos_attach():
    """一時保存写真を保存済みの商品に紐付ける"""
    data = request.get_json(silent=True) or {}
    product_id = data.get("product_id", "")
    if not product_id:
        return jsonify({"success": False, "error": "商品IDがありません"}), 400
    with _pending_lock:
        ids = [p.id for p in _pending_photos]
    attached = make_client().attach_photos(ids, product_id) if ids else 0
    with _pending_lock:
        _pending_photos[:] = [p for p in _pending_photos if p.id not in ids]
    gallery = _gallery(product_id)
    gallery.refresh()
    return _gallery_response(gallery, attached=attached)


# ── Photo API (開発用) ──

@app.route("/api/upload-photo", methods=["POST"])
def api_upload_photo():
    """写真を受け取り保存する (開発用 API)"""
    upload = request.files.get("file")
    if upload is None:
        return jsonify({"error": "ファイルがありません"}), 400

    photo = PhotoFile(
        name=upload.filename or "photo.jpg",
        data=upload.read(),
        mime_type=upload.mimetype or "",
    )
    try:
        validate_image(photo)
    except (InvalidFormat, TooLarge) as e:
        return jsonify(e.to_dict()), e.http_status

    record = save_photo(
        photo.data,
        file_name=os.path.basename(photo.name),
        mime_type=photo.mime_type,
        product_id=request.form.get("productId") or None,
        sku=request.form.get("sku", ""),
        is_first=request.form.get("isFirst") == "true",
    )
    return jsonify({"data": record.to_dict()})


@app.route("/api/photo-actions", methods=["POST"])
def api_photo_actions():
    """メイン設定・削除・紐付け (開発用 API)"""
    data = request.get_json(silent=True) or {}
    action = data.get("action")
    try:
        return _photo_action(action, data)
    except (TypeError, ValueError):
        return jsonify({"error": "写真IDが不正です"}), 400


def _photo_action(action, data):
    if action == "setPrimary":
        record = set_primary(data.get("photoId"), data.get("productId"))
        if record is None:
            return jsonify({"error": "写真が見つかりません"}), 404
        return jsonify({"data": record.to_dict()})

    if action == "delete":
        if not delete_photo(data.get("photoId")):
            return jsonify({"error": "写真が見つかりません"}), 404
        return jsonify({"data": {"deleted": True}})

    if action == "attach":
        count = attach_photos(data.get("photoIds", []), data.get("productId"))
        return jsonify({"data": {"attached": count}})

    return jsonify({"error": "無効な操作です"}), 400


@app.route("/api/photos")
def api_photos():
    """商品の写真一覧 (開発用 API)"""
    product_id = request.args.get("productId", "")
    return jsonify({"data": [r.to_dict() for r in list_photos(product_id)]})


@app.route("/api/test")
def api_test():
    """疎通確認 (開発用 API)"""
    return jsonify({"status": "ok"})


@app.route("/storage/product-photos/<path:file_path>")
def storage(file_path):
    """ディスク保存された写真を配信する"""
    return send_from_directory(config.PHOTO_DIR, file_path)


# ── 起動 ──

if __name__ == "__main__":
    init_logging()
    logger.info("=" * 50)
    logger.info("  Photo Station — 商品写真キャプチャステーション")
    logger.info("=" * 50)
    logger.info(f"  データ保存先: {config.DATA_DIR}")
    logger.info(f"  サーバー: http://localhost:{config.FLASK_PORT}")
    logger.info(f"  Photo API: {config.PHOTO_API_BASE_URL}")
    logger.info("=" * 50)

    app.run(
        host=config.FLASK_HOST,
        port=config.FLASK_PORT,
        debug=config.FLASK_DEBUG,
        threaded=True,
    )
