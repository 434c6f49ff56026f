"""
Row handler invocation and result interpretation.
"""
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence

from csv_importer.services.handler_registry import HandlerRegistry, registry as default_registry
from csv_importer.app.logging_config import get_logger

logger = get_logger(__name__)

ACTION_CREATE = "create"
ACTION_UPDATE = "update"
ACTION_NONE = "none"
ACTIONS = (ACTION_CREATE, ACTION_UPDATE, ACTION_NONE)


@dataclass
class RowResult:
    """Result a row handler returns."""
    status_code: int
    action: str = ACTION_NONE
    error: Optional[str] = None

    @property
    def is_success(self) -> bool:
        return 200 <= self.status_code < 300


@dataclass
class RowOutcome:
    """How one row ended up, after exceptions were absorbed."""
    success: bool
    action: str = ACTION_NONE
    data_error: Optional[str] = None
    system_error: Optional[str] = None


def coerce_result(value: Any) -> RowResult:
    """
    Normalize whatever a handler returned into a RowResult.

    Accepts a RowResult or a mapping with ``status_code`` (or ``code``),
    ``action`` and ``error`` keys.

    Raises:
        TypeError: If the value has no status code
    """
    if isinstance(value, RowResult):
        return value

    if isinstance(value, Mapping):
        code = value.get("status_code", value.get("code"))
        if code is None:
            raise TypeError("Row handler result has no status_code")
        action = value.get("action") or ACTION_NONE
        return RowResult(status_code=int(code), action=str(action), error=value.get("error"))

    raise TypeError(f"Row handler returned unsupported type {type(value).__name__}")


class RowHandlerInvoker:
    """Calls the job's row handler with its resolved dependencies."""

    def __init__(
        self,
        handler_name: str,
        dependency_names: Optional[Sequence[str]] = None,
        handlers: Optional[HandlerRegistry] = None
    ):
        """
        Initialize invoker.

        Args:
            handler_name: Registered handler name or import path
            dependency_names: Names of dependencies to resolve per chunk
            handlers: Registry to resolve names from

        Raises:
            HandlerNotFoundError: If the handler cannot be resolved
        """
        self.handlers = handlers or default_registry
        self.handler_name = handler_name
        self.dependency_names: List[str] = list(dependency_names or [])
        self.handler = self.handlers.resolve_handler(handler_name)

    def load_dependencies(self) -> Dict[str, Any]:
        """Resolve dependencies once; the caller reuses them for a whole chunk."""
        return self.handlers.resolve_dependencies(self.dependency_names)

    def invoke(self, row: List[str], index: int, dependencies: Dict[str, Any]) -> RowOutcome:
        """
        Run the handler for one row.

        Exceptions raised by the handler are recorded as a system error for
        this row only.

        Args:
            row: Field values in file order
            index: 1-based position among content rows
            dependencies: Mapping from dependency name to object

        Returns:
            RowOutcome for counter and error bookkeeping
        """
        try:
            result = coerce_result(self.handler(row, index, dependencies))
        except Exception as e:
            logger.warning(
                "Row handler raised",
                extra={"row_index": index, "handler": self.handler_name, "error": str(e)},
                exc_info=True
            )
            return RowOutcome(success=False, system_error=f"Row {index}: {e}")

        if result.is_success:
            action = result.action if result.action in ACTIONS else ACTION_NONE
            return RowOutcome(success=True, action=action)

        return RowOutcome(success=False, data_error=result.error or None)
