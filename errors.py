"""
Error taxonomy for the catalog.

ValidationError and AuthorizationError never leave the write pipeline as
exceptions: they are collected as data and re-rendered in the form. NotFoundError
maps to a 404 page. UpstreamError wraps store and image host failures and is left
to the app-wide error handler.
"""
from dataclasses import dataclass


class CatalogError(Exception):
    status_code = 500


@dataclass(frozen=True)
class ValidationError:
    """A single field-scoped problem with submitted form input."""
    field: str
    msg: str


@dataclass(frozen=True)
class AuthorizationError(ValidationError):
    """Wrong security code. Shown to the user the same way as a field error."""
    field: str = "security_code"
    msg: str = "Wrong security code."


class NotFoundError(CatalogError):
    status_code = 404


class UpstreamError(CatalogError):
    status_code = 502


class ImageStoreError(UpstreamError):
    pass


class UnsupportedImageError(ImageStoreError):
    """The payload is not an image in one of the accepted formats."""
    status_code = 415
