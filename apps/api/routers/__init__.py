"""Routers package."""

from . import (
    health,
    gateway,
    sessions,
    api_keys,
    billing,
    vouchers,
    payments,
    admin,
)
