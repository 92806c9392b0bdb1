"""Moderation package integration helpers exposed to the application."""

from app.moderation.api import router
from app.moderation.api.errors import install_error_handlers
from app.moderation.domain.container import configure, configure_postgres

__all__ = ["router", "configure", "configure_postgres", "install_error_handlers"]
