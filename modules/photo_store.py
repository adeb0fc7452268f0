"""
写真保存・管理モジュール
Storage behind the development photo API, using SQLAlchemy.

Photos are kept inline (base64 in ``photo_data``) or as files under
``config.PHOTO_DIR`` with a relative ``file_path``. The primary flag is
changed in one transaction so a product never has two primary photos.
"""
import base64
import os

from loguru import logger
from sqlalchemy import update

import config
from modules.models import db, ProductPhoto


def init_db(app):
    """Initialize DB and create tables."""
    db.init_app(app)
    with app.app_context():
        db.create_all()


def _product_key(product_id):
    return str(product_id) if product_id not in (None, "") else None


def save_photo(
    data: bytes,
    file_name: str,
    mime_type: str,
    product_id=None,
    sku: str = "",
    is_first: bool = False,
    inline: bool = None,
) -> ProductPhoto:
    if inline is None:
        inline = config.PHOTO_STORE_INLINE
    product_id = _product_key(product_id)

    photo_data = None
    file_path = None
    if inline:
        photo_data = base64.b64encode(data).decode("ascii")
    else:
        folder = sku or "unassigned"
        save_dir = os.path.join(config.PHOTO_DIR, folder)
        os.makedirs(save_dir, exist_ok=True)
        with open(os.path.join(save_dir, file_name), "wb") as f:
            f.write(data)
        file_path = f"{folder}/{file_name}"

    # First photo of a product becomes its primary photo
    has_photos = (
        product_id is not None
        and ProductPhoto.query.filter_by(product_id=product_id).first() is not None
    )
    record = ProductPhoto(
        product_id=product_id,
        sku=sku,
        file_name=file_name,
        file_path=file_path,
        photo_data=photo_data,
        mime_type=mime_type,
        file_size_bytes=len(data),
        is_primary=bool(is_first) or (product_id is not None and not has_photos),
    )
    if record.is_primary and product_id is not None:
        db.session.execute(
            update(ProductPhoto)
            .where(ProductPhoto.product_id == product_id)
            .values(is_primary=False)
        )
    db.session.add(record)
    db.session.commit()
    logger.info(f"写真保存: id={record.id} {file_name} product={product_id or '-'}")
    return record


def list_photos(product_id) -> list[ProductPhoto]:
    """Primary photo first, then oldest first."""
    return (
        ProductPhoto.query
        .filter_by(product_id=_product_key(product_id))
        .order_by(ProductPhoto.is_primary.desc(), ProductPhoto.created_at.asc(), ProductPhoto.id.asc())
        .all()
    )


def set_primary(photo_id, product_id) -> ProductPhoto | None:
    record = db.session.get(ProductPhoto, int(photo_id))
    if record is None:
        return None
    requested = _product_key(product_id)
    if requested is not None and requested != record.product_id:
        logger.warning(f"写真 {record.id} は商品 {requested} のものではありません ({record.product_id})")

    # Reset within the photo's own product, not the requested one
    db.session.execute(
        update(ProductPhoto)
        .where(ProductPhoto.product_id == record.product_id)
        .values(is_primary=False)
    )
    record.is_primary = True
    db.session.commit()
    return record


def attach_photos(photo_ids, product_id) -> int:
    """Attach pending photos to a newly saved product."""
    product_id = _product_key(product_id)
    records = ProductPhoto.query.filter(
        ProductPhoto.id.in_([int(i) for i in photo_ids]),
        ProductPhoto.product_id.is_(None),
    ).all()
    has_primary = ProductPhoto.query.filter_by(product_id=product_id, is_primary=True).first() is not None
    for r in records:
        r.product_id = product_id
        r.is_primary = False
    if records and not has_primary:
        records[0].is_primary = True
    db.session.commit()
    return len(records)


def delete_photo(photo_id) -> bool:
    record = db.session.get(ProductPhoto, int(photo_id))
    if record is None:
        return False

    if record.file_path:
        path = os.path.join(config.PHOTO_DIR, record.file_path)
        if os.path.exists(path):
            try:
                os.remove(path)
            except OSError as e:
                logger.warning(f"ファイル削除失敗 {path}: {e}")

    db.session.delete(record)
    db.session.commit()
    return True
