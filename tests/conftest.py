"""Shared pytest fixtures: a Flask app on a temp SQLite file, and in-memory stores for the pipeline."""

import io
import uuid
from types import SimpleNamespace

import pytest
from PIL import Image
from werkzeug.datastructures import FileStorage

from app import create_app
from models import db, Item, ItemInstance, Seller, Slot
from pipeline import ItemPipelineConfig, ItemWritePipeline
from stores import UploadedImage


def png_bytes(size=(8, 8), color=(200, 30, 30), fmt="PNG") -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, fmt)
    return buf.getvalue()


def upload(data: bytes = None, filename="sword.png", content_type="image/png") -> FileStorage:
    if data is None:
        data = png_bytes()
    return FileStorage(stream=io.BytesIO(data), filename=filename, content_type=content_type)


class FakeCatalog:
    def __init__(self, kind: str):
        self.kind = kind
        self.records = {}
        self.writes = 0

    def add(self, **fields):
        record_id = fields.pop("id", None) or uuid.uuid4().hex
        record = SimpleNamespace(id=record_id, url=f"/catalog/{self.kind}/{record_id}", **fields)
        self.records[record_id] = record
        return record

    def find(self, criteria=None, order_by=None):
        rows = [
            r for r in self.records.values()
            if all(getattr(r, k, None) == v for k, v in (criteria or {}).items())
        ]
        if order_by:
            rows.sort(key=lambda r: getattr(r, order_by.lstrip("-")), reverse=order_by.startswith("-"))
        return rows

    def find_by_id(self, record_id):
        return self.records.get(record_id)

    def insert(self, fields):
        self.writes += 1
        return self.add(**dict(fields))

    def update_by_id(self, record_id, fields):
        self.writes += 1
        record = self.records[record_id]
        for name, value in fields.items():
            setattr(record, name, value)

    def delete_by_id(self, record_id):
        self.writes += 1
        self.records.pop(record_id, None)

    def count(self, criteria=None):
        return len(self.find(criteria))


class FakeImageStore:
    def __init__(self):
        self.uploads = []

    def upload(self, payload, mimetype, *, namespace, key=None, overwrite=False, invalidate=False):
        self.uploads.append(
            dict(payload=payload, mimetype=mimetype, namespace=namespace, key=key,
                 overwrite=overwrite, invalidate=invalidate)
        )
        key = key or f"img{len(self.uploads)}"
        return UploadedImage(public_url=f"https://images.test/{namespace}/{key}", key=key)


@pytest.fixture
def items():
    return FakeCatalog("item")


@pytest.fixture
def slots():
    catalog = FakeCatalog("slot")
    catalog.add(id="slot-head", name="Head")
    catalog.add(id="slot-chest", name="Chest")
    return catalog


@pytest.fixture
def instances():
    return FakeCatalog("iteminstance")


@pytest.fixture
def images():
    return FakeImageStore()


@pytest.fixture
def pipeline(items, slots, instances, images):
    return ItemWritePipeline(
        items=items,
        slots=slots,
        instances=instances,
        images=images,
        config=ItemPipelineConfig(security_code="123", image_namespace="wow_inventory"),
    )


@pytest.fixture
def app(tmp_path):
    app = create_app(
        {
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / 'catalog.db'}",
            "UPLOAD_FOLDER": str(tmp_path / "uploads"),
            "SECURITY_CODE": "123",
            "AUTH_MODE": "off",
        }
    )
    try:
        yield app
    finally:
        with app.app_context():
            db.session.remove()
            db.engine.dispose()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def catalog(app):
    """A slot, a seller and one item with no instances. Returns their ids."""
    with app.app_context():
        head = Slot(name="Head")
        seller = Seller(name="Grimbooze")
        db.session.add_all([head, seller])
        db.session.commit()

        helm = Item(name="Helm", description="A sturdy helm", quality="Rare", slot_id=head.id)
        db.session.add(helm)
        db.session.commit()

        return SimpleNamespace(slot_id=head.id, seller_id=seller.id, item_id=helm.id)


def add_instance(app, item_id, seller_id, num_of_stocks=1) -> str:
    with app.app_context():
        instance = ItemInstance(item_id=item_id, seller_id=seller_id, num_of_stocks=num_of_stocks)
        db.session.add(instance)
        db.session.commit()
        return instance.id
