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

"""Redaction of secrets from text and structured payloads.

Everything that leaves the process (wire events, artifacts written to disk,
prompts sent to cloud providers) passes through these helpers first.
"""

from __future__ import annotations

import re
from typing import Any

MAX_REDACTION_LENGTH = 50000
REDACTED = "[REDACTED]"

SECRET_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"sk-[a-zA-Z0-9]{20,1000}"),
    re.compile(r"sk-ant-[a-zA-Z0-9_-]{10,1000}"),
    re.compile(r"\beyJ[A-Za-z0-9_-]{10,10000}\.[A-Za-z0-9_-]{10,10000}\.[A-Za-z0-9_-]{10,10000}\b"),
    re.compile(r"\bBearer\s+[A-Za-z0-9._-]{10,10000}\b", re.IGNORECASE),
    re.compile(r"\bBasic\s+[A-Za-z0-9+/=]{10,10000}", re.IGNORECASE),
    re.compile(
        r"-----BEGIN [A-Z]+(?: [A-Z]+)*-----[\s\S]{0,10000}?-----END [A-Z]+(?: [A-Z]+)*-----"
    ),
    re.compile(r"\bAKIA[0-9A-Z]{16}\b"),
    re.compile(r"\b[A-Za-z0-9+/]{40,512}={0,2}\b"),
    re.compile(r"\b[a-fA-F0-9]{64,512}\b"),
    re.compile(r"\b(?:Proxy-)?Authorization:\s*[^\r\n]{1,10000}", re.IGNORECASE),
    re.compile(r"\bAIza[0-9A-Za-z_-]{35}\b"),
    re.compile(r"\bxox[baprs]-[0-9a-zA-Z-]{10,48}\b"),
    re.compile(r"\bgh[pousr]_[0-9a-zA-Z]{32,255}\b"),
    re.compile(r"\bsk_(?:live|test)_[0-9a-zA-Z]{24,255}\b"),
]

URL_CRED_PATTERN = re.compile(r"//[^/:@]{1,256}:[^/@]{1,256}@")

SENSITIVE_NAMES: list[re.Pattern[str]] = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"PASS(WOR)?D$",
        r"PRIVATE_KEY$",
        r"CLIENT_SECRET$",
        r"BEARER$",
        r"AUTH",
        r"COOKIE",
        r"SESSION",
        r"SIGNING",
        r"WEBHOOK",
        r"DSN$",
        r"CREDENTIAL",
        r"(^|_)KEY$",
        r"API_KEY$",
        r"TOKEN$",
        r"SECRET$",
        r"DATABASE_URL$",
        r"X-API-KEY",
    )
]

# Protocol identifiers that match SESSION but carry no secret
PUBLIC_KEYS = frozenset({"sessionId", "trackId"})

_ANSI_CSI = re.compile(r"\x1B\[[0-?]*[ -/]*[@-~]")
_ANSI_OSC = re.compile(r"\x1B\][^\x07\x1b]{0,10000}(\x07|\x1B\\)")
_ANSI_ESC = re.compile(r"\x1B[0-9@-Z\\-_]")
_CONTROL = re.compile(r"[\x00-\x08\x0B-\x0C\x0E-\x1F\x7F]")


def safe_truncate(text: str) -> str:
    if len(text) <= MAX_REDACTION_LENGTH:
        return text
    return text[:MAX_REDACTION_LENGTH] + "\n[... truncated for security]"


def redact_text(text: str) -> str:
    """Replace known secret shapes and URL credentials with a placeholder."""
    redacted = safe_truncate(text)
    for pattern in SECRET_PATTERNS:
        redacted = pattern.sub(REDACTED, redacted)
    return URL_CRED_PATTERN.sub(f"//{REDACTED}@", redacted)


def is_sensitive_name(name: str) -> bool:
    if name in PUBLIC_KEYS:
        return False
    return any(pattern.search(name) for pattern in SENSITIVE_NAMES)


def redact_object(obj: Any) -> Any:
    """Recursively redact strings, and blank out values under sensitive keys."""
    if isinstance(obj, str):
        return redact_text(obj)
    if isinstance(obj, (list, tuple)):
        return [redact_object(item) for item in obj]
    if isinstance(obj, dict):
        return {
            key: REDACTED if is_sensitive_name(str(key)) else redact_object(value)
            for key, value in obj.items()
        }
    return obj


def sanitize_for_terminal(text: str) -> str:
    """Strip ANSI/OSC escape sequences and control characters."""
    text = _ANSI_CSI.sub("", text)
    text = _ANSI_OSC.sub("", text)
    text = _ANSI_ESC.sub("", text)
    return _CONTROL.sub("", text)


def sanitize_error(error: BaseException | str) -> str:
    """Return a redacted, terminal-safe message for an error."""
    message = str(error) if isinstance(error, BaseException) else error
    if isinstance(error, BaseException) and not message:
        message = type(error).__name__
    return sanitize_for_terminal(redact_text(message))


__all__ = [
    "MAX_REDACTION_LENGTH",
    "REDACTED",
    "SECRET_PATTERNS",
    "SENSITIVE_NAMES",
    "URL_CRED_PATTERN",
    "is_sensitive_name",
    "redact_object",
    "redact_text",
    "safe_truncate",
    "sanitize_error",
    "sanitize_for_terminal",
]
