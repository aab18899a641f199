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

"""Tests for shipspec.config.settings and shipspec.config.secrets."""

from unittest.mock import patch

import pytest
import yaml
from keyring.errors import KeyringError, PasswordDeleteError
from pydantic import ValidationError

from shipspec.config.secrets import OPENROUTER_API_KEY, SecretsStore, service_name
from shipspec.config.settings import (
    DEFAULT_MODEL,
    PROJECT_DIR,
    PROJECT_FILE,
    SUPPORTED_CHAT_MODELS,
    ShipSpecSettings,
    find_project_root,
    resolve_project_root,
    write_settings_value,
)


def _write_yaml(root, data):
    path = root / PROJECT_DIR / "settings.yaml"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    return path


class TestDefaults:
    """Tests for default values and derived properties."""

    def test_defaults(self, tmp_path):
        """Defaults match the documented values."""
        settings = ShipSpecSettings.from_sources(project_root=tmp_path)
        assert settings.llm_provider == "openrouter"
        assert settings.llm_model == DEFAULT_MODEL
        assert settings.max_context_tokens == 16000
        assert settings.reserved_output_tokens == 4000
        assert settings.keep_outputs == 10
        assert settings.is_cloud_llm

    def test_derived_paths(self, tmp_path):
        """State, outputs and planning live under .ship-spec."""
        settings = ShipSpecSettings.from_sources(project_root=tmp_path)
        root = tmp_path.resolve()
        assert settings.state_dir == root / PROJECT_DIR
        assert settings.outputs_dir == root / PROJECT_DIR / "outputs"
        assert settings.planning_dir == root / PROJECT_DIR / "planning"
        assert settings.resolved_checkpoint_path() == root / PROJECT_DIR / "checkpoints.db"

    def test_token_budget(self, tmp_path):
        """token_budget mirrors the configured limits."""
        budget = ShipSpecSettings.from_sources(project_root=tmp_path).token_budget
        assert budget.available == 12000


class TestValidation:
    """Tests for field and model validators."""

    def test_reserved_must_be_smaller(self, tmp_path):
        """An output reservation that fills the window is rejected."""
        with pytest.raises(ValidationError):
            ShipSpecSettings(project_root=tmp_path, max_context_tokens=1000, reserved_output_tokens=1000)

    def test_invalid_provider(self, tmp_path):
        """Unknown providers are rejected."""
        with pytest.raises(ValidationError):
            ShipSpecSettings(project_root=tmp_path, llm_provider="nope")

    def test_model_alias_expanded(self, tmp_path):
        """Aliases resolve to full model ids."""
        settings = ShipSpecSettings(project_root=tmp_path, llm_model="claude-sonnet")
        assert settings.llm_model == SUPPORTED_CHAT_MODELS["claude-sonnet"]

    def test_unknown_sast_tool(self, tmp_path):
        """Only semgrep, gitleaks and trivy are accepted."""
        with pytest.raises(ValidationError):
            ShipSpecSettings(project_root=tmp_path, sast_tools=["bandit"])


class TestPrecedence:
    """Tests for from_sources precedence."""

    def test_yaml_layer(self, tmp_path):
        """settings.yaml overrides defaults."""
        _write_yaml(tmp_path, {"keep_outputs": 3, "llm_provider": "ollama"})
        settings = ShipSpecSettings.from_sources(project_root=tmp_path)
        assert settings.keep_outputs == 3
        assert not settings.is_cloud_llm

    def test_env_beats_yaml(self, tmp_path, monkeypatch):
        """Environment variables shadow settings.yaml."""
        _write_yaml(tmp_path, {"keep_outputs": 3})
        monkeypatch.setenv("SHIPSPEC_KEEP_OUTPUTS", "7")
        assert ShipSpecSettings.from_sources(project_root=tmp_path).keep_outputs == 7

    def test_cli_beats_env(self, tmp_path, monkeypatch):
        """CLI overrides win over everything."""
        monkeypatch.setenv("SHIPSPEC_KEEP_OUTPUTS", "7")
        settings = ShipSpecSettings.from_sources(
            cli_args={"keep_outputs": 2, "llm_model": None}, project_root=tmp_path
        )
        assert settings.keep_outputs == 2
        assert settings.llm_model == DEFAULT_MODEL

    def test_corrupt_yaml_ignored(self, tmp_path):
        """Unparseable settings.yaml falls back to defaults."""
        path = tmp_path / PROJECT_DIR / "settings.yaml"
        path.parent.mkdir(parents=True)
        path.write_text("keep_outputs: [unclosed", encoding="utf-8")
        assert ShipSpecSettings.from_sources(project_root=tmp_path).keep_outputs == 10


class TestProjectRoot:
    """Tests for project root discovery."""

    def test_find_project_root(self, tmp_path):
        """The nearest ancestor with project.json wins."""
        (tmp_path / PROJECT_DIR).mkdir()
        (tmp_path / PROJECT_DIR / PROJECT_FILE).write_text("{}", encoding="utf-8")
        nested = tmp_path / "a" / "b"
        nested.mkdir(parents=True)
        assert find_project_root(nested) == tmp_path.resolve()

    def test_find_project_root_none(self, tmp_path):
        """No initialized ancestor returns None."""
        assert find_project_root(tmp_path) is None

    def test_env_override(self, tmp_path, monkeypatch):
        """SHIPSPEC_PROJECT_ROOT wins over discovery."""
        monkeypatch.setenv("SHIPSPEC_PROJECT_ROOT", str(tmp_path))
        assert resolve_project_root("/") == tmp_path.resolve()


class TestWriteSettingsValue:
    """Tests for write_settings_value."""

    def test_preserves_other_keys(self, tmp_path):
        """Existing keys survive an update."""
        path = _write_yaml(tmp_path, {"keep_outputs": 4})
        write_settings_value(tmp_path, "llm_model", "openai/gpt-5.2-pro")
        assert yaml.safe_load(path.read_text(encoding="utf-8")) == {
            "keep_outputs": 4,
            "llm_model": "openai/gpt-5.2-pro",
        }

    def test_rejects_non_mapping(self, tmp_path):
        """A settings file that is not a mapping is an error."""
        path = tmp_path / PROJECT_DIR / "settings.yaml"
        path.parent.mkdir(parents=True)
        path.write_text("- a\n- b\n", encoding="utf-8")
        with pytest.raises(ValueError):
            write_settings_value(tmp_path, "llm_model", "x")


class TestSecretsStore:
    """Tests for SecretsStore with a patched keyring."""

    def test_service_name_is_project_scoped(self, tmp_path):
        """Different roots give different service names."""
        assert service_name(tmp_path / "a") != service_name(tmp_path / "b")
        assert service_name(tmp_path).startswith("ship-spec:")

    def test_env_wins(self, tmp_path, monkeypatch):
        """Environment variables take priority over the keyring."""
        monkeypatch.setenv(OPENROUTER_API_KEY, "from-env")
        with patch("shipspec.config.secrets.keyring") as mock_keyring:
            assert SecretsStore(tmp_path).get(OPENROUTER_API_KEY) == "from-env"
            mock_keyring.get_password.assert_not_called()

    def test_get_from_keyring(self, tmp_path):
        """Stored keys are read under the project service."""
        with patch("shipspec.config.secrets.keyring") as mock_keyring:
            mock_keyring.get_password.return_value = "stored"
            store = SecretsStore(tmp_path)
            assert store.get(OPENROUTER_API_KEY) == "stored"
            mock_keyring.get_password.assert_called_once_with(store.service, OPENROUTER_API_KEY)

    def test_keyring_failure_reads_as_missing(self, tmp_path):
        """Backend errors on read are treated as no key."""
        with patch("shipspec.config.secrets.keyring") as mock_keyring:
            mock_keyring.get_password.side_effect = KeyringError("locked")
            assert SecretsStore(tmp_path).get(OPENROUTER_API_KEY) is None

    def test_set_and_delete(self, tmp_path):
        """set and delete go to the keyring backend."""
        with patch("shipspec.config.secrets.keyring") as mock_keyring:
            store = SecretsStore(tmp_path)
            store.set(OPENROUTER_API_KEY, "value")
            mock_keyring.set_password.assert_called_once_with(store.service, OPENROUTER_API_KEY, "value")
            assert store.delete(OPENROUTER_API_KEY) is True

            mock_keyring.delete_password.side_effect = PasswordDeleteError("missing")
            assert store.delete(OPENROUTER_API_KEY) is False
