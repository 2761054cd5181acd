"""Small dependency injection container.

Instances are created explicitly and passed around; there is no
process-wide container.
"""
from __future__ import annotations

from typing import Any, Callable, Dict, List, Type, TypeVar

from .scopes import Scope

T = TypeVar("T")

Factory = Callable[["Container"], Any]


class Container:
    def __init__(self) -> None:
        self._factories: Dict[Type, Factory] = {}
        self._scopes: Dict[Type, Scope] = {}
        self._singletons: Dict[Type, Any] = {}
        self._resolving: List[Type] = []

    def register(
        self,
        interface: Type[T],
        factory: Callable[["Container"], T],
        scope: Scope = Scope.SINGLETON,
    ) -> None:
        self._factories[interface] = factory
        self._scopes[interface] = scope
        # re-registration replaces any instance built by the previous factory
        self._singletons.pop(interface, None)

    def register_instance(self, interface: Type[T], instance: T) -> None:
        self.register(interface, lambda c: instance)
        self._singletons[interface] = instance

    def resolve(self, interface: Type[T]) -> T:
        if interface not in self._factories:
            raise KeyError(f"No registration found for {interface.__name__}")
        if interface in self._singletons:
            return self._singletons[interface]
        if interface in self._resolving:
            chain = " -> ".join(t.__name__ for t in [*self._resolving, interface])
            raise RuntimeError(f"Circular dependency: {chain}")

        self._resolving.append(interface)
        try:
            instance = self._factories[interface](self)
        finally:
            self._resolving.pop()

        if self._scopes[interface] == Scope.SINGLETON:
            self._singletons[interface] = instance
        return instance

    def is_registered(self, interface: Type) -> bool:
        return interface in self._factories

    def is_resolved(self, interface: Type) -> bool:
        """Whether a singleton has already been built for ``interface``."""
        return interface in self._singletons
