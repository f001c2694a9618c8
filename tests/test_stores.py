import pytest

from conftest import add_instance, png_bytes
from errors import ImageStoreError, NotFoundError, UnsupportedImageError, UpstreamError
from models import Item, ItemInstance, Slot
from stores import LocalImageStore, SqlCatalogStore


@pytest.fixture
def ctx(app):
    with app.app_context():
        yield


class TestSqlCatalogStore:
    def test_crud(self, ctx):
        slots = SqlCatalogStore(Slot)
        legs = slots.insert({"name": "Legs"})
        slots.insert({"name": "Feet"})

        assert slots.find_by_id(legs.id).name == "Legs"
        assert [s.name for s in slots.find(order_by="name")] == ["Feet", "Legs"]
        assert [s.name for s in slots.find(order_by="-name")] == ["Legs", "Feet"]

        slots.update_by_id(legs.id, {"name": "Waist"})
        assert slots.find_by_id(legs.id).name == "Waist"

        slots.delete_by_id(legs.id)
        assert slots.find_by_id(legs.id) is None
        assert slots.count() == 1

    def test_find_by_id_with_empty_id(self, ctx):
        assert SqlCatalogStore(Slot).find_by_id("") is None

    def test_update_missing_record(self, ctx):
        with pytest.raises(NotFoundError):
            SqlCatalogStore(Slot).update_by_id("missing", {"name": "x"})

    def test_delete_missing_record_is_a_no_op(self, ctx):
        SqlCatalogStore(Slot).delete_by_id("missing")

    def test_criteria(self, app, catalog):
        add_instance(app, catalog.item_id, catalog.seller_id, num_of_stocks=0)
        add_instance(app, catalog.item_id, catalog.seller_id, num_of_stocks=4)

        with app.app_context():
            instances = SqlCatalogStore(ItemInstance)
            assert instances.count() == 2
            assert instances.count({"num_of_stocks": ("gt", 0)}) == 1
            assert len(instances.find({"item_id": catalog.item_id})) == 2
            assert instances.find({"item_id": "other"}) == []
            # relationships come back populated
            [stocked] = instances.find({"num_of_stocks": ("ge", 1)})
            assert stocked.seller.name == "Grimbooze"
            assert stocked.item.slot.name == "Head"

    def test_unknown_column_or_operator(self, ctx):
        slots = SqlCatalogStore(Slot)
        with pytest.raises(ValueError):
            slots.find({"colour": "red"})
        with pytest.raises(ValueError):
            slots.count({"name": ("like", "H%")})

    def test_broken_reference_is_an_upstream_error(self, ctx):
        items = SqlCatalogStore(Item)
        with pytest.raises(UpstreamError):
            items.insert({"name": "Orphan", "description": "No slot", "quality": "Poor", "slot_id": "nope"})
        assert items.count() == 0


class TestLocalImageStore:
    def test_upload_under_namespace(self, tmp_path):
        store = LocalImageStore(tmp_path, base_url="/uploads/")
        uploaded = store.upload(png_bytes(), "image/png", namespace="wow_inventory")

        assert uploaded.public_url == f"/uploads/wow_inventory/{uploaded.key}.png"
        assert (tmp_path / "wow_inventory" / f"{uploaded.key}.png").exists()

    def test_fresh_keys_do_not_collide(self, tmp_path):
        store = LocalImageStore(tmp_path)
        a = store.upload(png_bytes(), "image/png", namespace="ns")
        b = store.upload(png_bytes(), "image/png", namespace="ns")
        assert a.key != b.key

    def test_existing_key_needs_overwrite(self, tmp_path):
        store = LocalImageStore(tmp_path)
        store.upload(png_bytes(), "image/png", namespace="ns", key="item1")
        with pytest.raises(ImageStoreError):
            store.upload(png_bytes(), "image/png", namespace="ns", key="item1")

    def test_overwrite_and_invalidate(self, tmp_path):
        store = LocalImageStore(tmp_path)
        store.upload(png_bytes(fmt="GIF"), "image/gif", namespace="ns", key="item1")
        assert (tmp_path / "ns" / "item1.gif").exists()
        uploaded = store.upload(
            png_bytes(color=(0, 0, 255)), "image/png", namespace="ns", key="item1",
            overwrite=True, invalidate=True,
        )

        path, _, version = uploaded.public_url.partition("?v=")
        assert path == "/uploads/ns/item1.png"
        assert version.isdigit()
        assert [p.name for p in (tmp_path / "ns").iterdir()] == ["item1.png"]

    def test_large_images_are_shrunk(self, tmp_path):
        from PIL import Image

        store = LocalImageStore(tmp_path, max_size=16)
        uploaded = store.upload(png_bytes(size=(64, 32)), "image/png", namespace="ns", key="big")
        with Image.open(tmp_path / "ns" / "big.png") as img:
            assert img.size == (16, 8)
        assert uploaded.key == "big"

    def test_undecodable_payload_is_rejected(self, tmp_path):
        store = LocalImageStore(tmp_path)
        with pytest.raises(UnsupportedImageError):
            store.upload(b"not really a png", "image/png", namespace="ns", key="odd")
        assert not (tmp_path / "ns").exists()

    def test_extension_follows_decoded_format_not_content_type(self, tmp_path):
        store = LocalImageStore(tmp_path)
        uploaded = store.upload(png_bytes(fmt="JPEG"), "image/html", namespace="ns", key="helm")
        assert uploaded.public_url == "/uploads/ns/helm.jpg"
        assert [p.name for p in (tmp_path / "ns").iterdir()] == ["helm.jpg"]

    def test_html_declared_as_image_is_rejected(self, tmp_path):
        store = LocalImageStore(tmp_path)
        with pytest.raises(UnsupportedImageError):
            store.upload(b"<script>alert(document.cookie)</script>", "image/html", namespace="ns")

    def test_rejected_replacement_keeps_existing_file(self, tmp_path):
        store = LocalImageStore(tmp_path)
        store.upload(png_bytes(), "image/png", namespace="ns", key="item1")
        with pytest.raises(UnsupportedImageError):
            store.upload(b"not an image at all", "image/gif", namespace="ns", key="item1", overwrite=True)
        assert [p.name for p in (tmp_path / "ns").iterdir()] == ["item1.png"]

    def test_unaccepted_format_is_rejected(self, tmp_path):
        store = LocalImageStore(tmp_path)
        with pytest.raises(UnsupportedImageError):
            store.upload(png_bytes(fmt="BMP"), "image/bmp", namespace="ns")
