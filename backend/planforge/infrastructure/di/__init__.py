"""Dependency injection container and providers."""

from .container import Container
from .scopes import Scope
from .providers import build_container, close_container, configure_container

__all__ = [
    "Container",
    "Scope",
    "build_container",
    "close_container",
    "configure_container",
]
