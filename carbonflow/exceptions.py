"""CarbonFlow Exception Hierarchy.

Every failure the graph service can report carries an error code, a
human-readable message and a context dictionary so that the action
processor can log it and fold it into an acknowledgement without losing
detail.

Exception Hierarchy:
    CarbonFlowException (base)
    ├── ValidationError          invariant violated, blocks one mutation
    ├── ProcessingFailure        malformed payload or unresolved id
    │   └── ActionDecodeError    action rejected at the decode boundary
    ├── MatchingFailure          factor search failed or found nothing
    ├── GraphStoreError          store integrity breach (duplicate id)
    ├── UnitConversionError      unknown or incompatible units
    └── ConfigurationError       invalid service configuration

Example:
    >>> from carbonflow.exceptions import ValidationError
    >>> raise ValidationError(
    ...     message="Edge would create a cycle",
    ...     context={"source": "n3", "target": "n1"},
    ... )

Author: GreenLang Platform Team
Date: October 2026
Status: Production Ready
"""

import json
import re
from datetime import datetime
from typing import Any, Dict, Optional


# ==============================================================================
# Base Exception
# ==============================================================================

class CarbonFlowException(Exception):
    """Base exception for all CarbonFlow errors.

    Attributes:
        message: Human-readable error message
        error_code: Unique error identifier (e.g., "GL_CF_VALIDATION_ERROR")
        context: Dictionary with error-specific details
        timestamp: When the error occurred
    """

    ERROR_PREFIX = "GL_CF"

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self._generate_error_code()
        self.context = context or {}
        self.timestamp = datetime.now()

    def _generate_error_code(self) -> str:
        """Generate error code like "GL_CF_MATCHING_FAILURE" from the class name."""
        class_name = self.__class__.__name__
        error_type = re.sub(r'(?<!^)(?=[A-Z])', '_', class_name).upper()
        return f"{self.ERROR_PREFIX}_{error_type}"

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for serialization.

        Returns:
            Dictionary with all error details
        """
        return {
            "error_type": self.__class__.__name__,
            "error_code": self.error_code,
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
        }

    def to_json(self) -> str:
        """Convert exception to JSON string."""
        return json.dumps(self.to_dict(), indent=2, default=str)

    def __str__(self) -> str:
        return f"[{self.error_code}] - {self.message}"

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"message='{self.message}', "
            f"error_code='{self.error_code}')"
        )


# ==============================================================================
# Validation
# ==============================================================================

class ValidationError(CarbonFlowException):
    """A graph invariant would be violated.

    Raised when a mutation is blocked, for example a ``connect`` that
    would close a cycle or duplicate an existing edge.

    Example:
        >>> raise ValidationError(
        ...     message="Edge endpoints must differ",
        ...     invalid_fields={"target": "same as source"},
        ... )
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        invalid_fields: Optional[Dict[str, str]] = None,
    ):
        """Initialize validation error.

        Args:
            message: Error message
            context: Error context
            invalid_fields: Dictionary of field_name -> reason
        """
        if invalid_fields:
            context = context or {}
            context["invalid_fields"] = invalid_fields
        super().__init__(message, context=context)


# ==============================================================================
# Processing
# ==============================================================================

class ProcessingFailure(CarbonFlowException):
    """An action could not be applied.

    Raised for malformed payloads and unresolved node ids. The action
    processor converts it into a logged no-op.
    """

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        node_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        context = context or {}
        if operation:
            context["operation"] = operation
        if node_id:
            context["node_id"] = node_id
        super().__init__(message, context=context)
        self.operation = operation
        self.node_id = node_id


class ActionDecodeError(ProcessingFailure):
    """An action message failed decoding before reaching the processor."""


class MatchingFailure(CarbonFlowException):
    """Emission-factor search returned nothing or failed.

    Never propagated out of a match batch; the message becomes the
    ``reason`` of the node's entry in the batch's ``failed`` list.
    """

    def __init__(
        self,
        message: str,
        node_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        context = context or {}
        if node_id:
            context["node_id"] = node_id
        super().__init__(message, context=context)
        self.node_id = node_id


# ==============================================================================
# Infrastructure
# ==============================================================================

class GraphStoreError(CarbonFlowException):
    """The graph store refused a mutation that would corrupt it."""


class UnitConversionError(CarbonFlowException):
    """Unit conversion failed because a unit is unknown or incompatible."""


class ConfigurationError(CarbonFlowException):
    """Service configuration is invalid or a collaborator is missing."""


__all__ = [
    "CarbonFlowException",
    "ValidationError",
    "ProcessingFailure",
    "ActionDecodeError",
    "MatchingFailure",
    "GraphStoreError",
    "UnitConversionError",
    "ConfigurationError",
]
