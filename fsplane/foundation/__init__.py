"""Foundation layer for shared infrastructure modules."""

from . import common, errors

__all__ = ["common", "errors"]
