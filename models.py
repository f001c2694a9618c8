import uuid
from datetime import datetime
from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()

NO_IMAGE = "#"


def new_id() -> str:
    return uuid.uuid4().hex


class Slot(db.Model):
    __tablename__ = "slots"

    id = db.Column(db.String(32), primary_key=True, default=new_id)
    name = db.Column(db.String(120), nullable=False)

    items = db.relationship("Item", back_populates="slot")

    @property
    def url(self) -> str:
        return f"/catalog/slot/{self.id}"


class Seller(db.Model):
    __tablename__ = "sellers"

    id = db.Column(db.String(32), primary_key=True, default=new_id)
    name = db.Column(db.String(120), nullable=False)

    instances = db.relationship("ItemInstance", back_populates="seller")

    @property
    def url(self) -> str:
        return f"/catalog/seller/{self.id}"


class Item(db.Model):
    """
    img_url holds the public URL from the image store, or "#" when the item has no image.
    """
    __tablename__ = "items"

    id = db.Column(db.String(32), primary_key=True, default=new_id)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=False)
    quality = db.Column(db.String(60), nullable=False)
    slot_id = db.Column(db.String(32), db.ForeignKey("slots.id"), nullable=False)
    img_url = db.Column(db.String(500), nullable=False, default=NO_IMAGE)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    slot = db.relationship("Slot", back_populates="items")
    instances = db.relationship("ItemInstance", back_populates="item")

    @property
    def url(self) -> str:
        return f"/catalog/item/{self.id}"

    @property
    def has_image(self) -> bool:
        return bool(self.img_url) and self.img_url != NO_IMAGE


class ItemInstance(db.Model):
    __tablename__ = "item_instances"

    id = db.Column(db.String(32), primary_key=True, default=new_id)
    item_id = db.Column(db.String(32), db.ForeignKey("items.id"), nullable=False)
    seller_id = db.Column(db.String(32), db.ForeignKey("sellers.id"), nullable=False)
    num_of_stocks = db.Column(db.Integer, nullable=False, default=0)

    item = db.relationship("Item", back_populates="instances")
    seller = db.relationship("Seller", back_populates="instances")

    __table_args__ = (
        db.CheckConstraint("num_of_stocks >= 0", name="ck_item_instances_stock_non_negative"),
    )

    @property
    def url(self) -> str:
        return f"/catalog/iteminstance/{self.id}"

    @property
    def in_stock(self) -> bool:
        return (self.num_of_stocks or 0) > 0
