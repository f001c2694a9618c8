"""
Declarative form validation.

A FormSchema is a list of field rules plus an optional upload check. Running it
returns the sanitized values (trimmed, HTML-escaped) together with a
ValidationErrorSet; invalid input never raises.
"""
from dataclasses import dataclass
from typing import Iterable, Mapping, Optional

from markupsafe import escape
from werkzeug.datastructures import FileStorage

from errors import ValidationError

IMAGE_FILE_MSG = "Please submit a image file"


def sanitize(value) -> str:
    if value is None:
        return ""
    return str(escape(str(value).strip()))


def has_upload(file: Optional[FileStorage]) -> bool:
    return bool(file) and bool(file.filename)


class ValidationErrorSet:
    """Ordered (field, message) pairs. Empty means the input was accepted."""

    def __init__(self, errors: Iterable[ValidationError] = ()):
        self._errors = list(errors)

    def add(self, error: ValidationError):
        self._errors.append(error)

    def extend(self, errors: Iterable[ValidationError]):
        self._errors.extend(errors)

    def is_empty(self) -> bool:
        return not self._errors

    def fields(self) -> list:
        return [e.field for e in self._errors]

    def messages(self) -> list:
        return [e.msg for e in self._errors]

    def as_list(self) -> list:
        return [{"field": e.field, "msg": e.msg} for e in self._errors]

    def __iter__(self):
        return iter(self._errors)

    def __len__(self):
        return len(self._errors)

    def __bool__(self):
        return bool(self._errors)

    def __repr__(self):
        return f"ValidationErrorSet({self._errors!r})"


@dataclass(frozen=True)
class Length:
    field: str
    msg: str
    min: int = 1

    def check(self, raw) -> bool:
        return len((raw or "").strip()) >= self.min

    def clean(self, raw):
        return sanitize(raw)


@dataclass(frozen=True)
class NonNegativeInt:
    field: str
    msg: str

    def check(self, raw) -> bool:
        try:
            return int(str(raw).strip()) >= 0
        except (TypeError, ValueError):
            return False

    def clean(self, raw):
        # invalid values are echoed back as text so the form can show them
        if self.check(raw):
            return int(str(raw).strip())
        return sanitize(raw)


@dataclass(frozen=True)
class ImageFile:
    field: str
    msg: str = IMAGE_FILE_MSG

    def check(self, file: Optional[FileStorage]) -> bool:
        if not has_upload(file):
            return True
        return (file.mimetype or "").startswith("image/")


class FormSchema:
    def __init__(self, rules, file_rule: Optional[ImageFile] = None):
        self.rules = list(rules)
        self.file_rule = file_rule

    def validate(self, form: Mapping, file: Optional[FileStorage] = None):
        cleaned = {}
        errors = ValidationErrorSet()

        for rule in self.rules:
            raw = form.get(rule.field)
            if not rule.check(raw):
                errors.add(ValidationError(rule.field, rule.msg))
            cleaned[rule.field] = rule.clean(raw)

        if self.file_rule is not None and not self.file_rule.check(file):
            errors.add(ValidationError(self.file_rule.field, self.file_rule.msg))

        return cleaned, errors


ITEM_FORM = FormSchema(
    [
        Length("name", "Name must not be empty."),
        Length("description", "Description must not be empty.", min=3),
        Length("quality", "Quality must not be empty."),
        Length("slot", "Slot must not be empty"),
    ],
    file_rule=ImageFile("item_image"),
)

SLOT_FORM = FormSchema([Length("name", "Name must not be empty.")])

SELLER_FORM = FormSchema([Length("name", "Name must not be empty.")])

ITEM_INSTANCE_FORM = FormSchema(
    [
        Length("item", "Item must be specified"),
        Length("seller", "Seller must be specified"),
        NonNegativeInt("num_of_stocks", "Number of stocks must be a non-negative integer."),
    ]
)


def validate_item(form: Mapping, file: Optional[FileStorage] = None):
    return ITEM_FORM.validate(form, file)
