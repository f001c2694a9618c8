import logging
import os
from functools import wraps
from pathlib import Path

from flask import Flask, abort, flash, redirect, render_template, request, send_from_directory, url_for
from flask_httpauth import HTTPBasicAuth
from sqlalchemy import event
from werkzeug.exceptions import HTTPException
from werkzeug.security import check_password_hash

from errors import CatalogError, ValidationError
from models import db, Item, ItemInstance, Seller, Slot
from pipeline import (
    CreateItem,
    DeleteItem,
    ItemPipelineConfig,
    ItemWritePipeline,
    NotFound,
    Redirect,
    UpdateItem,
)
from stores import LocalImageStore, SqlCatalogStore
from validation import ITEM_INSTANCE_FORM, SELLER_FORM, SLOT_FORM


def load_config(app: Flask, overrides=None):
    app.config["SECRET_KEY"] = os.environ.get("FLASK_SECRET_KEY", "dev-secret-change-me")
    app.config["SQLALCHEMY_DATABASE_URI"] = os.environ.get(
        "SQLALCHEMY_DATABASE_URI",
        "sqlite:///wow_inventory.db"
    )
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False

    app.config["UPLOAD_FOLDER"] = os.environ.get("UPLOAD_FOLDER", str(Path("uploads").resolve()))
    app.config["IMAGE_NAMESPACE"] = os.environ.get("IMAGE_NAMESPACE", "wow_inventory")
    app.config["IMAGE_MAX_SIZE"] = int(os.environ.get("IMAGE_MAX_SIZE", "1600"))

    # Shared secret for updates and deletes
    app.config["SECURITY_CODE"] = os.environ.get("SECURITY_CODE", "123")

    app.config["AUTH_MODE"] = (os.environ.get("AUTH_MODE", "off") or "off").lower()
    app.config["BASIC_AUTH_USER"] = os.environ.get("BASIC_AUTH_USER")
    app.config["BASIC_AUTH_PASSWORD_HASH"] = os.environ.get("BASIC_AUTH_PASSWORD_HASH")

    app.config["LOG_LEVEL"] = os.environ.get("LOG_LEVEL", "INFO").upper()

    if overrides:
        app.config.update(overrides)


def _sqlite_enforce_foreign_keys(dbapi_connection, connection_record):
    # SQLite leaves foreign key checks off unless asked per connection
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def build_item_pipeline(app: Flask) -> ItemWritePipeline:
    images = LocalImageStore(
        app.config["UPLOAD_FOLDER"],
        base_url="/uploads",
        max_size=app.config["IMAGE_MAX_SIZE"],
    )
    config = ItemPipelineConfig(
        security_code=str(app.config["SECURITY_CODE"]),
        image_namespace=app.config["IMAGE_NAMESPACE"],
    )
    return ItemWritePipeline(
        items=SqlCatalogStore(Item),
        slots=SqlCatalogStore(Slot),
        instances=SqlCatalogStore(ItemInstance),
        images=images,
        config=config,
    )


def respond(outcome):
    if isinstance(outcome, Redirect):
        if outcome.message:
            flash(outcome.message, "success")
        return redirect(outcome.location)
    if isinstance(outcome, NotFound):
        abort(404, description=outcome.message)
    return render_template(outcome.template, **outcome.context)


def create_app(config=None):
    app = Flask(__name__)
    load_config(app, config)

    logging.basicConfig(
        level=app.config["LOG_LEVEL"],
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app.logger.setLevel(app.config["LOG_LEVEL"])

    Path(app.config["UPLOAD_FOLDER"]).mkdir(parents=True, exist_ok=True)

    db.init_app(app)

    with app.app_context():
        if app.config["SQLALCHEMY_DATABASE_URI"].startswith("sqlite"):
            event.listen(db.engine, "connect", _sqlite_enforce_foreign_keys)
        db.create_all()

    items = SqlCatalogStore(Item)
    slots = SqlCatalogStore(Slot)
    sellers = SqlCatalogStore(Seller)
    instances = SqlCatalogStore(ItemInstance)
    pipeline = build_item_pipeline(app)
    app.extensions["item_pipeline"] = pipeline

    # -----------------------------
    # Auth config
    # -----------------------------
    basic_auth = HTTPBasicAuth()

    @basic_auth.verify_password
    def verify_password(username, password):
        user = app.config["BASIC_AUTH_USER"]
        pass_hash = app.config["BASIC_AUTH_PASSWORD_HASH"]
        if not user or not pass_hash:
            return False
        return username == user and check_password_hash(pass_hash, password or "")

    def auth_required(view_func):
        @wraps(view_func)
        def wrapper(*args, **kwargs):
            mode = app.config["AUTH_MODE"]
            if mode == "off":
                return view_func(*args, **kwargs)

            if mode == "basic":
                return basic_auth.login_required(view_func)(*args, **kwargs)

            return ("Auth misconfigured", 500)
        return wrapper

    # -----------------------------
    # Error pages
    # -----------------------------
    @app.errorhandler(HTTPException)
    def http_error(e):
        return render_template("error.html", title=e.name, message=e.description, status=e.code), e.code

    @app.errorhandler(CatalogError)
    def catalog_error(e):
        app.logger.exception("Catalog error on %s %s", request.method, request.path)
        return render_template("error.html", title="Error", message=str(e), status=e.status_code), e.status_code

    @app.errorhandler(Exception)
    def unhandled_error(e):
        app.logger.exception("Unhandled error on %s %s", request.method, request.path)
        return render_template(
            "error.html", title="Error", message="Something went wrong.", status=500
        ), 500

    @app.route("/uploads/<path:filename>")
    @auth_required
    def uploaded_file(filename):
        return send_from_directory(app.config["UPLOAD_FOLDER"], filename)

    @app.route("/")
    def root():
        return redirect(url_for("index"))

    @app.route("/catalog/")
    @auth_required
    def index():
        return render_template(
            "index.html",
            title="WoW Inventory Home",
            item_count=items.count(),
            item_instance_count=instances.count(),
            item_instance_stock_count=instances.count({"num_of_stocks": ("gt", 0)}),
            seller_count=sellers.count(),
            slot_count=slots.count(),
        )

    # -----------------------------
    # Items
    # -----------------------------
    @app.route("/catalog/items")
    @auth_required
    def item_list():
        return render_template("item_list.html", title="Item List", item_list=items.find(order_by="quality"))

    @app.route("/catalog/item/<item_id>")
    @auth_required
    def item_detail(item_id: str):
        item = items.find_by_id(item_id)
        if item is None:
            abort(404, description="Item not found")
        return render_template(
            "item_detail.html",
            title="Item Detail",
            item=item,
            item_instances=instances.find({"item_id": item_id}),
        )

    @app.route("/catalog/item/create", methods=["GET", "POST"])
    @auth_required
    def item_create():
        if request.method == "POST":
            return respond(pipeline.execute(CreateItem(request.form, request.files.get("item_image"))))

        return render_template("item_form.html", title="Create Item", slots=slots.find(order_by="name"))

    @app.route("/catalog/item/<item_id>/update", methods=["GET", "POST"])
    @auth_required
    def item_update(item_id: str):
        if request.method == "POST":
            op = UpdateItem(
                item_id,
                request.form,
                request.files.get("item_image"),
                request.form.get("security_code"),
            )
            return respond(pipeline.execute(op))

        item = items.find_by_id(item_id)
        if item is None:
            abort(404, description="Item not found")
        return render_template(
            "item_form.html",
            title="Update Item",
            item=item,
            slots=slots.find(order_by="name"),
            form_type="update",
        )

    @app.route("/catalog/item/<item_id>/delete", methods=["GET", "POST"])
    @auth_required
    def item_delete(item_id: str):
        if request.method == "POST":
            return respond(pipeline.execute(DeleteItem(item_id, request.form.get("security_code"))))

        item = items.find_by_id(item_id)
        if item is None:
            return redirect(url_for("item_list"))
        return render_template(
            "item_delete.html",
            title="Delete Item",
            item=item,
            item_instances=instances.find({"item_id": item_id}),
        )

    # -----------------------------
    # Slots
    # -----------------------------
    @app.route("/catalog/slots")
    @auth_required
    def slot_list():
        return render_template("slot_list.html", title="Slot List", slot_list=slots.find(order_by="name"))

    @app.route("/catalog/slot/<slot_id>")
    @auth_required
    def slot_detail(slot_id: str):
        slot = slots.find_by_id(slot_id)
        if slot is None:
            abort(404, description="Slot not found")
        return render_template(
            "slot_detail.html",
            title="Slot Detail",
            slot=slot,
            slot_items=items.find({"slot_id": slot_id}, order_by="name"),
        )

    @app.route("/catalog/slot/create", methods=["GET", "POST"])
    @auth_required
    def slot_create():
        if request.method == "POST":
            cleaned, errors = SLOT_FORM.validate(request.form)
            if errors:
                return render_template(
                    "name_form.html", title="Create Slot", record=cleaned, errors=errors.as_list()
                )
            slot = slots.insert({"name": cleaned["name"]})
            app.logger.info("Created slot %s (%s)", slot.id, slot.name)
            flash(f"Created slot {slot.name}.", "success")
            return redirect(slot.url)

        return render_template("name_form.html", title="Create Slot")

    # -----------------------------
    # Sellers
    # -----------------------------
    @app.route("/catalog/sellers")
    @auth_required
    def seller_list():
        return render_template("seller_list.html", title="Seller List", seller_list=sellers.find(order_by="name"))

    @app.route("/catalog/seller/<seller_id>")
    @auth_required
    def seller_detail(seller_id: str):
        seller = sellers.find_by_id(seller_id)
        if seller is None:
            abort(404, description="Seller not found")
        return render_template(
            "seller_detail.html",
            title="Seller Detail",
            seller=seller,
            seller_instances=instances.find({"seller_id": seller_id}),
        )

    @app.route("/catalog/seller/create", methods=["GET", "POST"])
    @auth_required
    def seller_create():
        if request.method == "POST":
            cleaned, errors = SELLER_FORM.validate(request.form)
            if errors:
                return render_template(
                    "name_form.html", title="Create Seller", record=cleaned, errors=errors.as_list()
                )
            seller = sellers.insert({"name": cleaned["name"]})
            app.logger.info("Created seller %s (%s)", seller.id, seller.name)
            flash(f"Created seller {seller.name}.", "success")
            return redirect(seller.url)

        return render_template("name_form.html", title="Create Seller")

    # -----------------------------
    # Item instances
    # -----------------------------
    @app.route("/catalog/iteminstances")
    @auth_required
    def iteminstance_list():
        return render_template(
            "iteminstance_list.html",
            title="Item Instance List",
            iteminstance_list=instances.find(order_by="-num_of_stocks"),
        )

    @app.route("/catalog/iteminstance/<instance_id>")
    @auth_required
    def iteminstance_detail(instance_id: str):
        instance = instances.find_by_id(instance_id)
        if instance is None:
            abort(404, description="Item instance not found")
        return render_template("iteminstance_detail.html", title="Item Instance Detail", iteminstance=instance)

    @app.route("/catalog/iteminstance/create", methods=["GET", "POST"])
    @auth_required
    def iteminstance_create():
        form_lists = dict(
            item_list=items.find(order_by="name"),
            seller_list=sellers.find(order_by="name"),
        )

        if request.method == "POST":
            cleaned, errors = ITEM_INSTANCE_FORM.validate(request.form)
            if "item" not in errors.fields() and items.find_by_id(cleaned["item"]) is None:
                errors.add(ValidationError("item", "Selected item does not exist."))
            if "seller" not in errors.fields() and sellers.find_by_id(cleaned["seller"]) is None:
                errors.add(ValidationError("seller", "Selected seller does not exist."))

            if errors:
                return render_template(
                    "iteminstance_form.html",
                    title="Create Item Instance",
                    iteminstance=cleaned,
                    errors=errors.as_list(),
                    **form_lists,
                )

            instance = instances.insert(
                {
                    "item_id": cleaned["item"],
                    "seller_id": cleaned["seller"],
                    "num_of_stocks": cleaned["num_of_stocks"],
                }
            )
            app.logger.info("Created item instance %s for item %s", instance.id, instance.item_id)
            flash("Created item instance.", "success")
            return redirect(instance.url)

        return render_template("iteminstance_form.html", title="Create Item Instance", **form_lists)

    @app.route("/catalog/iteminstance/<instance_id>/delete", methods=["GET", "POST"])
    @auth_required
    def iteminstance_delete(instance_id: str):
        instance = instances.find_by_id(instance_id)
        if instance is None:
            return redirect(url_for("iteminstance_list"))

        if request.method == "POST":
            code = request.form.get("security_code")
            if code != pipeline.config.security_code:
                app.logger.warning("Item instance delete refused for %s: wrong security code", instance_id)
                return render_template(
                    "iteminstance_delete.html",
                    title="Delete Item Instance",
                    iteminstance=instance,
                    code=code,
                    error="Wrong security code.",
                )
            instances.delete_by_id(instance_id)
            app.logger.info("Deleted item instance %s", instance_id)
            flash("Deleted item instance.", "success")
            return redirect(url_for("iteminstance_list"))

        return render_template("iteminstance_delete.html", title="Delete Item Instance", iteminstance=instance)

    return app


if __name__ == "__main__":
    app = create_app()
    app.run(host="0.0.0.0", port=5055, debug=True)
