"""
Storage adapters used by the write pipeline.

CatalogStore and ImageStore are the narrow interfaces the pipeline depends on.
SqlCatalogStore backs a catalog collection with a Flask-SQLAlchemy model and
LocalImageStore keeps uploaded images under UPLOAD_FOLDER, served by the app.
"""
import io
import logging
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Mapping, Optional, Protocol

from PIL import Image, ImageOps
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.utils import secure_filename

from errors import ImageStoreError, NotFoundError, UnsupportedImageError, UpstreamError
from models import db

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class UploadedImage:
    public_url: str
    key: str


class CatalogStore(Protocol):
    def find(self, criteria: Optional[Mapping[str, Any]] = None, order_by: Optional[str] = None) -> list: ...

    def find_by_id(self, record_id: str) -> Optional[Any]: ...

    def insert(self, fields: Mapping[str, Any]) -> Any: ...

    def update_by_id(self, record_id: str, fields: Mapping[str, Any]) -> None: ...

    def delete_by_id(self, record_id: str) -> None: ...

    def count(self, criteria: Optional[Mapping[str, Any]] = None) -> int: ...


class ImageStore(Protocol):
    def upload(
        self,
        payload: bytes,
        mimetype: str,
        *,
        namespace: str,
        key: Optional[str] = None,
        overwrite: bool = False,
        invalidate: bool = False,
    ) -> UploadedImage: ...


# -----------------------------
# Catalog (SQLAlchemy)
# -----------------------------
_OPERATORS = {
    "gt": lambda col, v: col > v,
    "ge": lambda col, v: col >= v,
    "lt": lambda col, v: col < v,
    "le": lambda col, v: col <= v,
    "ne": lambda col, v: col != v,
}


class SqlCatalogStore:
    """
    Criteria map a column name to a value (equality) or to an (op, value) pair,
    e.g. {"num_of_stocks": ("gt", 0)}. order_by is a column name, "-" prefix for descending.
    """

    def __init__(self, model):
        self.model = model

    def _column(self, name: str):
        col = getattr(self.model, name, None)
        if col is None:
            raise ValueError(f"{self.model.__name__} has no column {name!r}")
        return col

    def _filtered(self, criteria):
        query = self.model.query
        for name, cond in (criteria or {}).items():
            col = self._column(name)
            if isinstance(cond, tuple):
                op, value = cond
                if op not in _OPERATORS:
                    raise ValueError(f"Unsupported operator {op!r}")
                query = query.filter(_OPERATORS[op](col, value))
            else:
                query = query.filter(col == cond)
        return query

    @contextmanager
    def _upstream(self, action: str):
        try:
            yield
        except SQLAlchemyError as e:
            db.session.rollback()
            raise UpstreamError(f"{self.model.__tablename__}: {action} failed") from e

    def find(self, criteria=None, order_by=None) -> list:
        with self._upstream("find"):
            query = self._filtered(criteria)
            if order_by:
                if order_by.startswith("-"):
                    query = query.order_by(self._column(order_by[1:]).desc())
                else:
                    query = query.order_by(self._column(order_by).asc())
            return query.all()

    def find_by_id(self, record_id):
        if not record_id:
            return None
        with self._upstream("find_by_id"):
            return db.session.get(self.model, record_id)

    def insert(self, fields):
        record = self.model(**fields)
        with self._upstream("insert"):
            db.session.add(record)
            db.session.commit()
        return record

    def update_by_id(self, record_id, fields):
        with self._upstream("update"):
            record = db.session.get(self.model, record_id)
            if record is None:
                raise NotFoundError(f"{self.model.__name__} {record_id} not found")
            for name, value in fields.items():
                setattr(record, name, value)
            db.session.commit()

    def delete_by_id(self, record_id):
        with self._upstream("delete"):
            record = db.session.get(self.model, record_id)
            if record is not None:
                db.session.delete(record)
                db.session.commit()

    def count(self, criteria=None) -> int:
        with self._upstream("count"):
            return self._filtered(criteria).count()


# -----------------------------
# Images (local disk)
# -----------------------------
def process_image(path, max_size: int = 1600):
    """
    Shrinks huge phone photos and fixes sideways rotation using EXIF.
    Overwrites the file at 'path' with an optimized version.
    """
    try:
        img = Image.open(path)
        img = ImageOps.exif_transpose(img)
        img.thumbnail((max_size, max_size))

        if img.mode not in ("RGB", "L"):
            img = img.convert("RGB")

        img.save(path, optimize=True, quality=85)

    except (OSError, ValueError) as e:
        log.warning("Image processing failed for %s: %s", path, e)


# Stored extension comes from the decoded format, never from the client's content type
IMAGE_EXTENSIONS = {"PNG": ".png", "JPEG": ".jpg", "GIF": ".gif", "WEBP": ".webp"}


def detect_extension(payload: bytes) -> str:
    """Decode the payload with Pillow and return the extension for its format."""
    try:
        with Image.open(io.BytesIO(payload)) as img:
            img.verify()
            fmt = img.format
    except (OSError, EOFError, ValueError, SyntaxError, Image.DecompressionBombError) as e:
        raise UnsupportedImageError("Upload is not a readable image") from e

    if fmt not in IMAGE_EXTENSIONS:
        raise UnsupportedImageError(f"Image format {fmt} is not accepted")
    return IMAGE_EXTENSIONS[fmt]


class LocalImageStore:
    def __init__(self, root, base_url: str = "/uploads", max_size: int = 1600):
        self.root = Path(root)
        self.base_url = base_url.rstrip("/")
        self.max_size = max_size

    def _fresh_key(self) -> str:
        ts = datetime.utcnow().strftime("%Y%m%d%H%M%S%f")
        return f"{ts}_{uuid.uuid4().hex[:8]}"

    def upload(self, payload, mimetype, *, namespace, key=None, overwrite=False, invalidate=False):
        folder_name = secure_filename(namespace)
        key = secure_filename(key) if key else self._fresh_key()
        if not folder_name or not key:
            raise ImageStoreError(f"Invalid image location {namespace!r}/{key!r}")

        folder = self.root / folder_name
        stored_name = f"{key}{detect_extension(payload)}"

        try:
            folder.mkdir(parents=True, exist_ok=True)
            existing = list(folder.glob(f"{key}.*"))
            if existing and not overwrite:
                raise ImageStoreError(f"Image {folder_name}/{key} already exists")
            # a replacement may arrive with a different extension
            for old in existing:
                old.unlink()

            path = folder / stored_name
            path.write_bytes(payload)
        except OSError as e:
            raise ImageStoreError(f"Could not store image {folder_name}/{stored_name}") from e

        process_image(path, self.max_size)

        public_url = f"{self.base_url}/{folder_name}/{stored_name}"
        if invalidate:
            public_url = f"{public_url}?v={time.time_ns()}"

        log.info("Stored image %s/%s (%s, %d bytes)", folder_name, stored_name, mimetype, len(payload))
        return UploadedImage(public_url=public_url, key=key)
