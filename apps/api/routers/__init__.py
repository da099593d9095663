"""Routers package."""

from . import (
    health,
    uploads,
    tables,
    storage,
)
