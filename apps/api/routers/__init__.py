"""Routers package."""

from . import (
    health,
    auth,
    edits,
    history,
    subscription,
)
