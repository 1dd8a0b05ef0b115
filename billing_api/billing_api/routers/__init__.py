"""API router modules for the billing service."""

from __future__ import annotations

from billing_api.routers import billing, health, leads, webhooks

__all__ = [
    "billing",
    "health",
    "leads",
    "webhooks",
]
