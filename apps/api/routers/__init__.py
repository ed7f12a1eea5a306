"""Routers package."""

from . import (
    health,
    auth,
    billing,
    search,
    enrichment,
)
