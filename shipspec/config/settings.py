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

"""ShipSpec settings with explicit precedence.

Precedence (highest to lowest):
1. CLI arguments (passed via ``cli_args``)
2. Environment variables (SHIPSPEC_*)
3. .env file
4. <project>/.ship-spec/settings.yaml
5. Default values

Usage:
    settings = ShipSpecSettings.from_sources(cli_args={"llm_model": "gemini-flash"})
    budget = settings.token_budget
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import dotenv_values
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from shipspec.utils.tokens import TokenBudget

logger = logging.getLogger(__name__)

ENV_PREFIX = "SHIPSPEC_"
PROJECT_DIR = ".ship-spec"
PROJECT_FILE = "project.json"
OUTPUTS_DIR = "outputs"
SETTINGS_FILE = "settings.yaml"

DEFAULT_MODEL = "google/gemini-3-flash-preview"

# Alias -> OpenRouter model id
SUPPORTED_CHAT_MODELS: dict[str, str] = {
    "gemini-flash": DEFAULT_MODEL,
    "claude-sonnet": "anthropic/claude-sonnet-4.5",
    "gpt-pro": "openai/gpt-5.2-pro",
}

CLOUD_PROVIDERS = frozenset({"openrouter"})
SAST_TOOLS = ("semgrep", "gitleaks", "trivy")


def find_project_root(start: Path | str) -> Optional[Path]:
    """Walk up from ``start`` to the nearest directory holding .ship-spec/project.json."""
    current = Path(start).resolve()
    for candidate in (current, *current.parents):
        if (candidate / PROJECT_DIR / PROJECT_FILE).is_file():
            return candidate
    return None


def resolve_project_root(cwd: Optional[Path | str] = None) -> Path:
    """Project root from SHIPSPEC_PROJECT_ROOT, an initialized ancestor, or cwd."""
    env_root = os.getenv(f"{ENV_PREFIX}PROJECT_ROOT", "").strip()
    if env_root:
        return Path(env_root).resolve()
    start = Path(cwd) if cwd else Path.cwd()
    return find_project_root(start) or start.resolve()


class ShipSpecSettings(BaseSettings):
    """Single source of truth for ShipSpec configuration.

    Use ``from_sources()`` to load with the documented precedence.
    """

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        env_file=".env" if not os.getenv("SHIPSPEC_SKIP_ENV_FILE") else None,
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        protected_namespaces=(),
    )

    # ==========================================================================
    # Project
    # ==========================================================================

    project_root: Path = Field(
        default_factory=lambda: resolve_project_root(), description="Project root directory"
    )

    # ==========================================================================
    # LLM Settings
    # ==========================================================================

    llm_provider: str = Field(default="openrouter", description="LLM provider (openrouter, ollama)")
    llm_model: str = Field(default=DEFAULT_MODEL, description="Chat model identifier or alias")
    llm_base_url: Optional[str] = Field(default=None, description="Override provider base URL")
    llm_temperature: float = Field(default=0.0, ge=0.0, le=2.0, description="Sampling temperature")
    llm_timeout_seconds: float = Field(default=120.0, gt=0, description="LLM request timeout")
    max_context_tokens: int = Field(default=16000, gt=0, description="Model context window")
    reserved_output_tokens: int = Field(
        default=4000, ge=0, description="Tokens reserved for the completion"
    )

    # ==========================================================================
    # Checkpointing
    # ==========================================================================

    checkpoint_type: str = Field(default="sqlite", description="memory, sqlite or json")
    checkpoint_path: Optional[Path] = Field(
        default=None, description="Checkpoint database file or directory"
    )

    # ==========================================================================
    # Research and Scans
    # ==========================================================================

    web_search_provider: str = Field(default="tavily", description="tavily or duckduckgo")
    web_search_timeout_seconds: float = Field(default=20.0, gt=0)
    sast_enabled: bool = Field(default=False, description="Run SAST scanners by default")
    sast_tools: list[str] = Field(default_factory=lambda: list(SAST_TOOLS))
    sast_timeout_seconds: float = Field(default=300.0, gt=0)

    # ==========================================================================
    # Outputs and Logging
    # ==========================================================================

    keep_outputs: int = Field(default=10, ge=1, description="Reports kept in .ship-spec/outputs")
    log_level: str = Field(default="INFO", description="Logging level (DEBUG, INFO, WARNING, ERROR)")
    log_file: Optional[str] = Field(default=None, description="Log file path (None for stderr only)")

    @field_validator("llm_provider")
    @classmethod
    def validate_provider(cls, v: str) -> str:
        """Validate provider name."""
        valid = ["openrouter", "ollama"]
        if v not in valid:
            raise ValueError(f"Invalid llm_provider: {v}. Must be one of {valid}")
        return v

    @field_validator("llm_model")
    @classmethod
    def expand_model_alias(cls, v: str) -> str:
        return SUPPORTED_CHAT_MODELS.get(v, v)

    @field_validator("checkpoint_type")
    @classmethod
    def validate_checkpoint_type(cls, v: str) -> str:
        valid = ["memory", "sqlite", "json"]
        if v not in valid:
            raise ValueError(f"Invalid checkpoint_type: {v}. Must be one of {valid}")
        return v

    @field_validator("web_search_provider")
    @classmethod
    def validate_web_search_provider(cls, v: str) -> str:
        valid = ["tavily", "duckduckgo"]
        if v not in valid:
            raise ValueError(f"Invalid web_search_provider: {v}. Must be one of {valid}")
        return v

    @field_validator("sast_tools")
    @classmethod
    def validate_sast_tools(cls, v: list[str]) -> list[str]:
        unknown = [tool for tool in v if tool not in SAST_TOOLS]
        if unknown:
            raise ValueError(f"Unknown SAST tools: {unknown}. Must be among {list(SAST_TOOLS)}")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Invalid log_level: {v}")
        return level

    @model_validator(mode="after")
    def validate_token_budget(self) -> "ShipSpecSettings":
        """Output reservation must leave room for context."""
        if self.reserved_output_tokens >= self.max_context_tokens:
            raise ValueError(
                "reserved_output_tokens must be smaller than max_context_tokens "
                f"({self.reserved_output_tokens} >= {self.max_context_tokens})"
            )
        return self

    # ==========================================================================
    # Derived values
    # ==========================================================================

    @property
    def state_dir(self) -> Path:
        return self.project_root / PROJECT_DIR

    @property
    def outputs_dir(self) -> Path:
        return self.state_dir / OUTPUTS_DIR

    @property
    def planning_dir(self) -> Path:
        return self.state_dir / "planning"

    @property
    def settings_path(self) -> Path:
        return self.state_dir / SETTINGS_FILE

    @property
    def token_budget(self) -> TokenBudget:
        return TokenBudget(
            max_context_tokens=self.max_context_tokens,
            reserved_output_tokens=self.reserved_output_tokens,
        )

    @property
    def is_cloud_llm(self) -> bool:
        return self.llm_provider in CLOUD_PROVIDERS

    def resolved_checkpoint_path(self) -> Path:
        if self.checkpoint_path is not None:
            return self.checkpoint_path
        if self.checkpoint_type == "json":
            return self.state_dir / "checkpoints"
        return self.state_dir / "checkpoints.db"

    @classmethod
    def from_sources(
        cls,
        cli_args: Optional[dict[str, Any]] = None,
        project_root: Optional[Path] = None,
    ) -> "ShipSpecSettings":
        """Load settings with proper precedence.

        Args:
            cli_args: CLI argument overrides (highest priority)
            project_root: Project root (defaults to ``resolve_project_root()``)

        Returns:
            ShipSpecSettings instance with all sources merged
        """
        root = Path(project_root).resolve() if project_root else resolve_project_root()
        settings_dict: dict[str, Any] = {"project_root": root}

        # Layer 4: settings.yaml, shadowed by anything the environment provides
        settings_path = root / PROJECT_DIR / SETTINGS_FILE
        if settings_path.exists():
            try:
                with open(settings_path, encoding="utf-8") as f:
                    user_settings = yaml.safe_load(f) or {}
            except (OSError, yaml.YAMLError) as e:
                logger.warning(f"Failed to load {settings_path}: {e}")
                user_settings = {}
            env_keys = _environment_keys()
            for key, value in user_settings.items():
                if key in cls.model_fields and key.lower() not in env_keys:
                    settings_dict[key] = value

        # Layers 2-3 and 5 are resolved by pydantic-settings
        settings = cls(**settings_dict)

        # Layer 1: CLI overrides
        if cli_args:
            filtered = {k: v for k, v in cli_args.items() if v is not None and k in cls.model_fields}
            if filtered:
                settings = cls.model_validate({**settings.model_dump(), **filtered})

        return settings


def _environment_keys() -> set[str]:
    """Field names set through SHIPSPEC_* variables or the .env file."""
    keys = {
        name[len(ENV_PREFIX) :].lower()
        for name in os.environ
        if name.upper().startswith(ENV_PREFIX)
    }
    env_file = ShipSpecSettings.model_config.get("env_file")
    if env_file and Path(str(env_file)).is_file():
        keys.update(
            name[len(ENV_PREFIX) :].lower()
            for name in dotenv_values(str(env_file))
            if name.upper().startswith(ENV_PREFIX)
        )
    return keys


def write_settings_value(project_root: Path, key: str, value: Any) -> Path:
    """Persist one key into .ship-spec/settings.yaml, preserving other keys."""
    path = Path(project_root) / PROJECT_DIR / SETTINGS_FILE
    data: dict[str, Any] = {}
    if path.exists():
        with open(path, encoding="utf-8") as f:
            loaded = yaml.safe_load(f)
        if loaded is not None and not isinstance(loaded, dict):
            raise ValueError(f"Invalid settings file at {path}: must be a mapping")
        data = loaded or {}
    data[key] = value
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        yaml.safe_dump(data, f, sort_keys=False)
    return path


__all__ = [
    "DEFAULT_MODEL",
    "OUTPUTS_DIR",
    "PROJECT_DIR",
    "PROJECT_FILE",
    "SAST_TOOLS",
    "SUPPORTED_CHAT_MODELS",
    "ShipSpecSettings",
    "find_project_root",
    "resolve_project_root",
    "write_settings_value",
]
