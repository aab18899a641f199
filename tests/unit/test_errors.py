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

"""Tests for shipspec.core.errors."""

from shipspec.core.errors import (
    ErrorCategory,
    ProviderAuthError,
    ProviderError,
    ScannerValidationError,
    ShipSpecError,
    ShipSpecRuntimeError,
    ShipSpecUsageError,
    ToolUnavailableError,
)


class TestShipSpecError:
    """Tests for the base error."""

    def test_str_is_message(self):
        """str() returns the plain message."""
        assert str(ShipSpecError("boom")) == "boom"

    def test_to_dict(self):
        """to_dict carries category, hint and details."""
        error = ShipSpecError(
            "boom", category=ErrorCategory.RUNTIME, details={"a": 1}, recovery_hint="retry"
        )
        data = error.to_dict()
        assert data["error"] == "boom"
        assert data["category"] == "runtime"
        assert data["details"] == {"a": 1}
        assert data["recovery_hint"] == "retry"
        assert len(data["correlation_id"]) == 8


class TestErrorCategories:
    """Tests for the default categories of subclasses."""

    def test_usage(self):
        """Usage errors default to the usage category."""
        assert ShipSpecUsageError("bad").category is ErrorCategory.USAGE

    def test_runtime(self):
        """Runtime errors default to the runtime category."""
        assert ShipSpecRuntimeError("bad").category is ErrorCategory.RUNTIME

    def test_provider_auth(self):
        """Auth errors carry a recovery hint pointing at connect."""
        error = ProviderAuthError("denied", provider="openrouter")
        assert isinstance(error, ProviderError)
        assert error.category is ErrorCategory.PROVIDER_AUTH
        assert "shipspec connect" in error.recovery_hint
        assert error.details["provider"] == "openrouter"

    def test_provider_status_code(self):
        """Status codes land in details."""
        error = ProviderError("rate limited", provider="openrouter", status_code=429)
        assert error.details["status_code"] == 429

    def test_scanner_validation_is_runtime(self):
        """Scanner validation errors are fatal runtime errors."""
        error = ScannerValidationError("bad output")
        assert isinstance(error, ShipSpecRuntimeError)
        assert error.category is ErrorCategory.VALIDATION_ERROR

    def test_tool_unavailable(self):
        """Tool errors name the tool and reason."""
        error = ToolUnavailableError("semgrep", "not installed")
        assert str(error) == "semgrep failed: not installed"
        assert error.tool == "semgrep"


class TestPublicString:
    """Tests for ShipSpecRuntimeError.to_public_string."""

    def test_without_cause(self):
        """The message alone is returned."""
        assert ShipSpecRuntimeError("Indexing failed").to_public_string() == "Indexing failed"

    def test_with_cause(self):
        """The sanitized cause is appended."""
        error = ShipSpecRuntimeError("Indexing failed", cause=OSError("disk full"))
        assert error.to_public_string() == "Indexing failed: disk full"

    def test_cause_is_redacted(self):
        """Secrets in the cause never reach the public string."""
        error = ShipSpecRuntimeError("Call failed", cause=RuntimeError("key sk-" + "d" * 30))
        assert "sk-ddd" not in error.to_public_string()
