"""
Submission validation logic.
"""
import os
from dataclasses import dataclass
from typing import Iterable, Optional

from csv_importer.services.handler_registry import HandlerRegistry
from csv_importer.app.logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class ValidationResult:
    """Validation result."""
    is_valid: bool
    field: Optional[str] = None
    message: Optional[str] = None


class SubmissionValidator:
    """Validator for a file and handler submitted for import."""

    @staticmethod
    def validate_file(filepath: str, allowed_extensions: Iterable[str]) -> ValidationResult:
        """
        Validate the source file.

        Args:
            filepath: Path to the file
            allowed_extensions: Lower-case extensions including the dot

        Returns:
            ValidationResult with validation status
        """
        if not filepath:
            return ValidationResult(False, "filepath", "File path is required")

        if not os.path.exists(filepath):
            return ValidationResult(False, "filepath", f"CSV file not found: {filepath}")

        if not os.path.isfile(filepath):
            return ValidationResult(False, "filepath", f"Not a regular file: {filepath}")

        if not os.access(filepath, os.R_OK):
            return ValidationResult(False, "filepath", f"CSV file is not readable: {filepath}")

        extension = os.path.splitext(filepath)[1].lower()
        allowed = [ext.lower() for ext in allowed_extensions]
        if extension not in allowed:
            return ValidationResult(
                False,
                "filepath",
                f"Unsupported file extension {extension or '(none)'}; expected one of {', '.join(allowed)}"
            )

        return ValidationResult(is_valid=True)

    @staticmethod
    def validate_handler(
        callback: Optional[str],
        callback_model: Iterable[str],
        handlers: HandlerRegistry
    ) -> ValidationResult:
        """
        Validate that the handler and its dependencies can be resolved.

        Args:
            callback: Handler name
            callback_model: Dependency names
            handlers: Registry to resolve against

        Returns:
            ValidationResult with validation status
        """
        if not callback:
            return ValidationResult(False, "callback", "Callback function must be set before processing")

        if not handlers.has_handler(callback):
            return ValidationResult(False, "callback", f"Row handler {callback!r} is not registered")

        for name in callback_model:
            if not handlers.has_dependency(name):
                return ValidationResult(False, "callback_model", f"Dependency {name!r} is not registered")

        return ValidationResult(is_valid=True)
