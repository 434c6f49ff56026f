"""
Process-wide registry of row handlers and their dependencies.

Jobs only store names. A worker process imports the modules listed in
HANDLER_MODULES at start-up; those modules register their handlers here, so
the same names resolve in the submitting process and in the worker.

    from csv_importer.services.handler_registry import registry

    @registry.handler("import_products")
    def import_products(row, index, dependencies):
        ...

    registry.register_dependency("products", lambda: ProductService())
"""
import importlib
from typing import Any, Callable, Dict, Iterable, Optional

from csv_importer.exceptions import HandlerNotFoundError
from csv_importer.app.logging_config import get_logger

logger = get_logger(__name__)

RowHandler = Callable[..., Any]
DependencyFactory = Callable[[], Any]


class HandlerRegistry:
    """Named row handlers and dependency factories."""

    def __init__(self):
        self._handlers: Dict[str, RowHandler] = {}
        self._dependencies: Dict[str, DependencyFactory] = {}

    def register(self, name: str, handler: RowHandler) -> RowHandler:
        if not callable(handler):
            raise TypeError(f"Row handler {name!r} is not callable")
        self._handlers[name] = handler
        logger.debug("Row handler registered", extra={"handler": name})
        return handler

    def handler(self, name: str) -> Callable[[RowHandler], RowHandler]:
        """Decorator form of register()."""
        def decorator(func: RowHandler) -> RowHandler:
            return self.register(name, func)
        return decorator

    def register_dependency(self, name: str, factory: DependencyFactory) -> None:
        if not callable(factory):
            raise TypeError(f"Dependency factory {name!r} is not callable")
        self._dependencies[name] = factory
        logger.debug("Dependency registered", extra={"dependency": name})

    def has_handler(self, name: Optional[str]) -> bool:
        if not name:
            return False
        try:
            self.resolve_handler(name)
        except HandlerNotFoundError:
            return False
        return True

    def has_dependency(self, name: str) -> bool:
        if name in self._dependencies:
            return True
        if ":" in name:
            try:
                _import_object(name)
            except HandlerNotFoundError:
                return False
            return True
        return False

    def resolve_handler(self, name: str) -> RowHandler:
        """
        Look up a handler by name.

        Unregistered names of the form ``package.module:attribute`` are
        imported, so plain module-level functions need no registration.

        Raises:
            HandlerNotFoundError: If the name cannot be resolved
        """
        if name in self._handlers:
            return self._handlers[name]

        if ":" in name:
            handler = _import_object(name)
            if callable(handler):
                return handler

        raise HandlerNotFoundError(f"Row handler {name!r} is not registered", name=name)

    def resolve_dependencies(self, names: Optional[Iterable[str]]) -> Dict[str, Any]:
        """
        Build every named dependency.

        Raises:
            HandlerNotFoundError: If a name has no factory
        """
        resolved: Dict[str, Any] = {}
        for name in names or []:
            if name in self._dependencies:
                resolved[name] = self._dependencies[name]()
            elif ":" in name:
                resolved[name] = _import_object(name)
            else:
                raise HandlerNotFoundError(f"Dependency {name!r} is not registered", name=name)
        return resolved

    def clear(self) -> None:
        self._handlers.clear()
        self._dependencies.clear()


def _import_object(path: str) -> Any:
    module_name, _, attribute = path.partition(":")
    try:
        module = importlib.import_module(module_name)
        return getattr(module, attribute)
    except (ImportError, AttributeError) as e:
        raise HandlerNotFoundError(f"Cannot import {path!r}: {e}", name=path) from e


def load_handler_modules(modules: Iterable[str]) -> None:
    """Import modules whose import registers handlers."""
    for module_name in modules:
        importlib.import_module(module_name)
        logger.debug("Handler module loaded", extra={"module": module_name})


# Singleton instance
registry = HandlerRegistry()
