"""
Item write pipeline: validate -> upload image -> persist -> redirect.

Each write is an explicit operation (CreateItem, UpdateItem, DeleteItem) run by
ItemWritePipeline.execute(). Every run ends in exactly one outcome:

- Redirect: the write happened (or there was nothing to do) and the browser moves on.
- Render: the write was refused; the form is shown again with errors and echoed input.
- NotFound: the item being written does not exist.

Refusals never mutate the stores, so repeating a refused request gives the same
outcome. Store and image host failures are not handled here.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Union

from errors import AuthorizationError, UnsupportedImageError, ValidationError
from models import NO_IMAGE
from stores import CatalogStore, ImageStore
from validation import IMAGE_FILE_MSG, ValidationErrorSet, has_upload, validate_item

log = logging.getLogger(__name__)

ITEM_LIST_URL = "/catalog/items"
INSTANCES_BLOCK_DELETE = "Delete all instances of this item before deleting it."
UNKNOWN_SLOT = "Selected slot does not exist."


@dataclass(frozen=True)
class ItemPipelineConfig:
    security_code: str
    image_namespace: str = "wow_inventory"


# -----------------------------
# Operations
# -----------------------------
@dataclass(frozen=True)
class CreateItem:
    fields: Mapping[str, Any]
    file: Any = None


@dataclass(frozen=True)
class UpdateItem:
    item_id: str
    fields: Mapping[str, Any]
    file: Any = None
    security_code: Optional[str] = None


@dataclass(frozen=True)
class DeleteItem:
    item_id: str
    security_code: Optional[str] = None


# -----------------------------
# Outcomes
# -----------------------------
@dataclass(frozen=True)
class Redirect:
    location: str
    message: Optional[str] = None


@dataclass(frozen=True)
class Render:
    template: str
    context: dict = field(default_factory=dict)

    @property
    def errors(self) -> list:
        return self.context.get("errors", [])


@dataclass(frozen=True)
class NotFound:
    message: str


Outcome = Union[Redirect, Render, NotFound]


class ItemWritePipeline:
    def __init__(
        self,
        items: CatalogStore,
        slots: CatalogStore,
        instances: CatalogStore,
        images: ImageStore,
        config: ItemPipelineConfig,
    ):
        self.items = items
        self.slots = slots
        self.instances = instances
        self.images = images
        self.config = config

    def execute(self, op) -> Outcome:
        if isinstance(op, CreateItem):
            return self.create(op)
        if isinstance(op, UpdateItem):
            return self.update(op)
        if isinstance(op, DeleteItem):
            return self.delete(op)
        raise TypeError(f"Unknown item operation: {type(op).__name__}")

    def _code_matches(self, code) -> bool:
        return code is not None and str(code) == self.config.security_code

    @staticmethod
    def _candidate(cleaned: Mapping[str, Any]) -> dict:
        return {
            "name": cleaned["name"],
            "description": cleaned["description"],
            "quality": cleaned["quality"],
            "slot_id": cleaned["slot"],
        }

    def _check_slot(self, cleaned: Mapping[str, Any], errors: ValidationErrorSet):
        if "slot" not in errors.fields() and self.slots.find_by_id(cleaned["slot"]) is None:
            errors.add(ValidationError("slot", UNKNOWN_SLOT))

    def _upload(self, file, errors: ValidationErrorSet, key: Optional[str] = None) -> Optional[str]:
        """Store the file and return its URL. An undecodable image becomes a field error."""
        if key is None:
            options = dict(namespace=self.config.image_namespace)
        else:
            options = dict(namespace=self.config.image_namespace, key=key, overwrite=True, invalidate=True)

        try:
            uploaded = self.images.upload(file.read(), file.mimetype, **options)
        except UnsupportedImageError as e:
            log.warning("Rejected item image %r: %s", file.filename, e)
            errors.add(ValidationError("item_image", IMAGE_FILE_MSG))
            return None
        return uploaded.public_url

    # Create
    def create(self, op: CreateItem) -> Outcome:
        cleaned, errors = validate_item(op.fields, op.file)
        self._check_slot(cleaned, errors)
        candidate = self._candidate(cleaned)

        if not errors:
            if has_upload(op.file):
                candidate["img_url"] = self._upload(op.file, errors)
            else:
                candidate["img_url"] = NO_IMAGE

        if errors:
            log.warning("Item create refused: %s", errors.fields())
            return Render(
                "item_form.html",
                {
                    "title": "Create Item",
                    "item": candidate,
                    "slots": self.slots.find(order_by="name"),
                    "errors": errors.as_list(),
                },
            )

        item = self.items.insert(candidate)
        log.info("Created item %s (%s)", item.id, item.name)
        return Redirect(item.url, f"Created item {item.name}.")

    # Update
    def update(self, op: UpdateItem) -> Outcome:
        stored = self.items.find_by_id(op.item_id)
        if stored is None:
            return NotFound("Item not found")

        cleaned, errors = validate_item(op.fields, op.file)
        self._check_slot(cleaned, errors)
        candidate = self._candidate(cleaned)
        code_ok = self._code_matches(op.security_code)

        # without a new upload the stored image is kept
        if not errors and code_ok and has_upload(op.file):
            img_url = self._upload(op.file, errors, key=op.item_id)
            if img_url is not None:
                candidate["img_url"] = img_url

        if errors or not code_ok:
            log.warning(
                "Item update refused for %s: fields=%s code_ok=%s", op.item_id, errors.fields(), code_ok,
            )
            return Render(
                "item_form.html",
                {
                    "title": "Update Item",
                    "item": stored,
                    "slots": self.slots.find(order_by="name"),
                    "errors": errors.as_list(),
                    "code": op.security_code,
                    "form_type": "update",
                    "error": "" if code_ok else AuthorizationError().msg,
                },
            )

        self.items.update_by_id(op.item_id, candidate)
        log.info("Updated item %s", op.item_id)
        return Redirect(stored.url, f"Updated item {candidate['name']}.")


    # Delete
    def delete_blockers(self, item_instances, code) -> ValidationErrorSet:
        errors = ValidationErrorSet()
        if len(item_instances) > 0:
            errors.add(ValidationError("item_instances", INSTANCES_BLOCK_DELETE))
        if not self._code_matches(code):
            errors.add(AuthorizationError())
        return errors

    def delete(self, op: DeleteItem) -> Outcome:
        item = self.items.find_by_id(op.item_id)
        item_instances = self.instances.find({"item_id": op.item_id})

        if item is None:
            return Redirect(ITEM_LIST_URL)

        errors = self.delete_blockers(item_instances, op.security_code)
        if errors:
            log.warning("Item delete refused for %s: %s", op.item_id, errors.fields())
            return Render(
                "item_delete.html",
                {
                    "title": "Delete Item",
                    "item": item,
                    "item_instances": item_instances,
                    "code": op.security_code,
                    "errors": errors.as_list(),
                },
            )

        self.items.delete_by_id(op.item_id)
        log.info("Deleted item %s", op.item_id)
        return Redirect(ITEM_LIST_URL, f"Deleted item {item.name}.")
