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

"""Cheap, deterministic signals about a project's production posture.

Detection is file-presence based and never reads file contents, so it is
safe to run before any LLM call.
"""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Optional

SKIP_DIRS = frozenset({"node_modules", ".git", "dist", "build", ".ship-spec", "__pycache__", ".venv", "venv"})

LANGUAGE_EXTENSIONS: dict[str, tuple[str, ...]] = {
    "typescript": (".ts", ".tsx"),
    "javascript": (".js", ".jsx"),
    "python": (".py",),
    "go": (".go",),
    "rust": (".rs",),
}

# First match wins.
PACKAGE_MANAGER_MARKERS: list[tuple[str, tuple[str, ...]]] = [
    ("npm", ("package-lock.json",)),
    ("yarn", ("yarn.lock",)),
    ("pnpm", ("pnpm-lock.yaml",)),
    ("pip", ("requirements.txt", "pyproject.toml")),
    ("go", ("go.mod",)),
    ("cargo", ("Cargo.toml",)),
]

CI_MARKERS: list[tuple[str, str]] = [
    ("github", ".github/workflows"),
    ("gitlab", ".gitlab-ci.yml"),
    ("jenkins", "Jenkinsfile"),
    ("circleci", ".circleci"),
]

TEST_FRAMEWORK_MARKERS: list[tuple[str, tuple[str, ...]]] = [
    ("jest", ("jest.config.js", "jest.config.ts")),
    ("vitest", ("vitest.config.js", "vitest.config.ts")),
    ("pytest", ("pytest.ini", "conftest.py")),
]


@dataclass
class ProjectSignals:
    """Observed project characteristics.

    Attributes:
        package_manager: npm, yarn, pnpm, pip, go, cargo or None
        has_ci: Whether a CI configuration exists
        ci_platform: github, gitlab, jenkins, circleci or None
        has_tests: Whether any test files were found
        test_framework: jest, vitest, pytest or None
        has_docker: Dockerfile or docker-compose.yml present
        has_iac: Infrastructure-as-code present
        iac_tool: terraform, serverless, cloudformation, bicep or None
        has_env_example: .env.example present
        has_security_policy: SECURITY.md present
        detected_languages: Languages inferred from file extensions
        file_count: Number of files outside skipped directories
    """

    package_manager: Optional[str] = None
    has_ci: bool = False
    ci_platform: Optional[str] = None
    has_tests: bool = False
    test_framework: Optional[str] = None
    has_docker: bool = False
    has_iac: bool = False
    iac_tool: Optional[str] = None
    has_env_example: bool = False
    has_security_policy: bool = False
    detected_languages: list[str] = field(default_factory=list)
    file_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _iter_files(root: Path) -> list[Path]:
    files: list[Path] = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = [d for d in dirnames if d not in SKIP_DIRS]
        files.extend(Path(dirpath, name) for name in filenames)
    return files


def _is_test_file(rel: Path) -> bool:
    if "test" in rel.parts[:-1]:
        return True
    return ".test." in rel.name or ".spec." in rel.name


def gather_project_signals(project_root: str | Path) -> ProjectSignals:
    """Inspect ``project_root`` and return its ProjectSignals."""
    root = Path(project_root)
    signals = ProjectSignals()

    def exists(*names: str) -> bool:
        return any((root / name).exists() for name in names)

    for manager, markers in PACKAGE_MANAGER_MARKERS:
        if exists(*markers):
            signals.package_manager = manager
            break

    for platform, marker in CI_MARKERS:
        if exists(marker):
            signals.has_ci = True
            signals.ci_platform = platform
            break

    files = _iter_files(root)
    relative = [f.relative_to(root) for f in files]
    signals.file_count = len(files)

    if any(_is_test_file(rel) for rel in relative):
        signals.has_tests = True
        for framework, markers in TEST_FRAMEWORK_MARKERS:
            if exists(*markers):
                signals.test_framework = framework
                break

    signals.has_docker = exists("Dockerfile", "docker-compose.yml")

    suffixes = {f.suffix for f in files}
    if ".tf" in suffixes:
        signals.iac_tool = "terraform"
    elif exists("serverless.yml"):
        signals.iac_tool = "serverless"
    elif exists("cloudformation.yml"):
        signals.iac_tool = "cloudformation"
    elif ".bicep" in suffixes:
        signals.iac_tool = "bicep"
    signals.has_iac = signals.iac_tool is not None

    signals.has_env_example = exists(".env.example")
    signals.has_security_policy = exists("SECURITY.md")

    signals.detected_languages = [
        lang for lang, exts in LANGUAGE_EXTENSIONS.items() if any(ext in suffixes for ext in exts)
    ]
    return signals


__all__ = ["ProjectSignals", "gather_project_signals"]
