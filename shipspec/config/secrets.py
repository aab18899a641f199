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

"""API key storage backed by the system keyring.

Keys are namespaced per project: the keyring service is ``ship-spec:<hash>``
where the hash is derived from the canonical project root. Environment
variables with the same name take priority over stored keys.

Uses the system's secure credential storage:
- macOS: Keychain
- Windows: Credential Manager
- Linux: Secret Service (GNOME Keyring, KWallet)
"""

from __future__ import annotations

import hashlib
import logging
import os
from pathlib import Path
from typing import Optional

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

logger = logging.getLogger(__name__)

KEYRING_SERVICE = "ship-spec"

OPENROUTER_API_KEY = "OPENROUTER_API_KEY"
TAVILY_API_KEY = "TAVILY_API_KEY"
KNOWN_SECRETS = (OPENROUTER_API_KEY, TAVILY_API_KEY)


def service_name(project_root: Optional[Path | str] = None) -> str:
    """Keyring service name for a project root."""
    if project_root is None:
        return KEYRING_SERVICE
    canonical = str(Path(project_root).resolve())
    digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:16]
    return f"{KEYRING_SERVICE}:{digest}"


class SecretsStore:
    """Project-scoped secrets in the OS keychain."""

    def __init__(self, project_root: Optional[Path | str] = None):
        self.service = service_name(project_root)

    def get(self, key: str) -> Optional[str]:
        """Return the secret from the environment or the keyring.

        Keyring failures are logged and treated as a missing key.
        """
        env_value = os.getenv(key, "").strip()
        if env_value:
            return env_value
        try:
            return keyring.get_password(self.service, key)
        except KeyringError as e:
            logger.debug(f"Keyring access failed for {key}: {e}")
            return None

    def set(self, key: str, value: str) -> None:
        """Store a secret.

        Raises:
            KeyringError: If the backend rejects the write
        """
        keyring.set_password(self.service, key, value)
        logger.info(f"Stored {key} in system keyring")

    def delete(self, key: str) -> bool:
        try:
            keyring.delete_password(self.service, key)
            return True
        except PasswordDeleteError:
            return False


__all__ = [
    "KEYRING_SERVICE",
    "KNOWN_SECRETS",
    "OPENROUTER_API_KEY",
    "SecretsStore",
    "TAVILY_API_KEY",
    "service_name",
]
