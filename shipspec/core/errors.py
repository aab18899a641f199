# Copyright 2025 Vijaykumar Singh <singhvjd@gmail.com>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Error types shared across ShipSpec.

This module provides:
- Error categories used to map failures onto wire error codes
- A structured base exception with recovery hints
- Usage, runtime, provider and scanner error types
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from shipspec.utils.redaction import sanitize_error


# =============================================================================
# Error Categories
# =============================================================================


class ErrorCategory(Enum):
    """Categories of errors for classification and handling."""

    USAGE = "usage"
    RUNTIME = "runtime"
    PROVIDER_CONNECTION = "provider_connection"
    PROVIDER_AUTH = "provider_auth"
    PROVIDER_INVALID_RESPONSE = "provider_invalid_response"
    TOOL_UNAVAILABLE = "tool_unavailable"
    VALIDATION_ERROR = "validation_error"
    CONFIG_INVALID = "config_invalid"
    UNKNOWN = "unknown"


# =============================================================================
# Custom Exception Types
# =============================================================================


class ShipSpecError(Exception):
    """Base exception for all ShipSpec errors.

    Carries a category, structured details and an optional recovery hint.
    ``str(error)`` is the plain message so it can be shown to users.
    """

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        details: Optional[dict[str, Any]] = None,
        recovery_hint: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category
        self.details = details or {}
        self.recovery_hint = recovery_hint
        self.cause = cause
        self.correlation_id = str(uuid.uuid4())[:8]
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "error": self.message,
            "category": self.category.value,
            "correlation_id": self.correlation_id,
            "recovery_hint": self.recovery_hint,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
        }

    def __str__(self) -> str:
        return self.message


class ShipSpecUsageError(ShipSpecError):
    """The caller asked for something invalid (bad flag, bad id, missing consent)."""

    def __init__(self, message: str, **kwargs: Any):
        kwargs.setdefault("category", ErrorCategory.USAGE)
        super().__init__(message, **kwargs)


class ResumeResponseError(ShipSpecUsageError):
    """Resume response of the wrong shape for the pending interrupt."""

    def __init__(self, message: str, expected: str, received: str):
        super().__init__(
            message,
            details={"expected": expected, "received": received},
            recovery_hint=f"Resume again with a {expected} response.",
        )
        self.expected = expected
        self.received = received


class ShipSpecRuntimeError(ShipSpecError):
    """A valid request failed while running."""

    def __init__(self, message: str, cause: Optional[BaseException] = None, **kwargs: Any):
        kwargs.setdefault("category", ErrorCategory.RUNTIME)
        super().__init__(message, cause=cause, **kwargs)

    def to_public_string(self) -> str:
        """Message safe to show on the wire, including a sanitized cause."""
        if self.cause is None:
            return sanitize_error(self.message)
        return sanitize_error(f"{self.message}: {sanitize_error(self.cause)}")


class ProviderError(ShipSpecRuntimeError):
    """Errors returned by an LLM or search provider."""

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        status_code: Optional[int] = None,
        **kwargs: Any,
    ):
        kwargs.setdefault("category", ErrorCategory.PROVIDER_CONNECTION)
        super().__init__(message, **kwargs)
        self.provider = provider
        self.status_code = status_code
        self.details["provider"] = provider
        if status_code is not None:
            self.details["status_code"] = status_code


class ProviderAuthError(ProviderError):
    """Provider rejected the credentials."""

    def __init__(self, message: str, provider: Optional[str] = None, **kwargs: Any):
        super().__init__(
            message,
            provider=provider,
            category=ErrorCategory.PROVIDER_AUTH,
            recovery_hint="Run `shipspec connect` to store a valid API key.",
            **kwargs,
        )


class ToolUnavailableError(ShipSpecError):
    """An external tool is not installed or could not be started.

    Batch callers record this as a skipped entry and keep going.
    """

    def __init__(self, tool: str, reason: str):
        super().__init__(
            f"{tool} failed: {reason}",
            category=ErrorCategory.TOOL_UNAVAILABLE,
            details={"tool": tool},
        )
        self.tool = tool
        self.reason = reason


class ScannerValidationError(ShipSpecRuntimeError):
    """Scanner output did not match the expected result schema. Fatal for the run."""

    def __init__(self, message: str, **kwargs: Any):
        kwargs.setdefault("category", ErrorCategory.VALIDATION_ERROR)
        super().__init__(message, **kwargs)


__all__ = [
    "ErrorCategory",
    "ProviderAuthError",
    "ProviderError",
    "ResumeResponseError",
    "ScannerValidationError",
    "ShipSpecError",
    "ShipSpecRuntimeError",
    "ShipSpecUsageError",
    "ToolUnavailableError",
]
