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

"""SAST scanners (Semgrep, Gitleaks, Trivy) with normalized, validated output.

Each scanner's JSON output is validated against a pydantic schema before it
is normalized into ``SASTFinding`` records. Output that fails validation is
corrupt signal and raises ``ScannerValidationError``, which ends the run. A
scanner that is not installed, times out, or exits without output is
unavailable: it is recorded in ``skipped`` as "<tool> failed: <reason>" and
the remaining scanners still run.
"""

from __future__ import annotations

import asyncio
import json
import logging
import shutil
from pathlib import Path
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from shipspec.core.errors import ScannerValidationError, ToolUnavailableError

logger = logging.getLogger(__name__)

ScannerTool = Literal["semgrep", "gitleaks", "trivy"]
Severity = Literal["critical", "high", "medium", "low", "info"]

SUPPORTED_TOOLS: tuple[str, ...] = ("semgrep", "gitleaks", "trivy")
DEFAULT_TIMEOUT_SECONDS = 300.0

INSTALL_HINTS = {
    "semgrep": "Install it: pip install semgrep",
    "gitleaks": "Install it: https://github.com/gitleaks/gitleaks",
    "trivy": "Install it: https://trivy.dev/",
}

COMMANDS: dict[str, list[str]] = {
    "semgrep": ["semgrep", "scan", "--json", "--quiet"],
    "gitleaks": ["gitleaks", "detect", "--no-git", "--report-format", "json", "--report-path", "-"],
    "trivy": ["trivy", "fs", ".", "--format", "json", "--quiet"],
}


# =============================================================================
# Normalized result schema
# =============================================================================


class SASTFinding(BaseModel):
    """A normalized scanner finding."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    tool: ScannerTool
    severity: Severity
    rule: str
    message: str
    filepath: str
    start_line: Optional[int] = None
    end_line: Optional[int] = None
    cwe_id: Optional[str] = None
    cve_id: Optional[str] = None


class ScannerResults(BaseModel):
    """Findings from all scanners plus the reasons any scanner was skipped."""

    findings: list[SASTFinding] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)


# =============================================================================
# Raw tool output schemas
# =============================================================================


class _SemgrepPosition(BaseModel):
    line: int


class _SemgrepMetadata(BaseModel):
    cwe: Optional[Union[str, list[str]]] = None


class _SemgrepExtra(BaseModel):
    severity: Optional[str] = None
    message: Optional[str] = None
    metadata: Optional[_SemgrepMetadata] = None


class _SemgrepResult(BaseModel):
    check_id: str
    path: str
    start: Optional[_SemgrepPosition] = None
    end: Optional[_SemgrepPosition] = None
    extra: Optional[_SemgrepExtra] = None


class _SemgrepOutput(BaseModel):
    results: list[_SemgrepResult] = Field(default_factory=list)


class _GitleaksResult(BaseModel):
    RuleID: str
    Description: str
    File: str
    StartLine: int
    EndLine: int


class _TrivyVulnerability(BaseModel):
    Severity: str
    VulnerabilityID: str
    Title: Optional[str] = None
    Description: Optional[str] = None


class _TrivySecret(BaseModel):
    Severity: str
    RuleID: str
    Title: str
    StartLine: int
    EndLine: int


class _TrivyResult(BaseModel):
    Target: str
    Vulnerabilities: Optional[list[_TrivyVulnerability]] = None
    Secrets: Optional[list[_TrivySecret]] = None


class _TrivyOutput(BaseModel):
    Results: Optional[list[_TrivyResult]] = None


# =============================================================================
# Parsers
# =============================================================================


def map_semgrep_severity(severity: str) -> str:
    s = severity.lower()
    if s == "error":
        return "high"
    if s == "warning":
        return "medium"
    if s == "info":
        return "info"
    return "medium"


def map_trivy_severity(severity: str) -> str:
    s = severity.lower()
    return s if s in ("critical", "high", "medium", "low") else "info"


def _load(tool: str, stdout: str) -> Any:
    try:
        return json.loads(stdout)
    except json.JSONDecodeError as e:
        raise ScannerValidationError(f"Failed to parse {tool} output: {e}", cause=e) from e


def parse_semgrep(stdout: str) -> list[SASTFinding]:
    if not stdout.strip():
        return []
    try:
        data = _SemgrepOutput.model_validate(_load("semgrep", stdout))
    except ValidationError as e:
        raise ScannerValidationError(f"Semgrep output schema validation failed: {e}", cause=e) from e

    findings = []
    for r in data.results:
        extra = r.extra or _SemgrepExtra()
        cwe = extra.metadata.cwe if extra.metadata else None
        findings.append(
            SASTFinding(
                tool="semgrep",
                severity=map_semgrep_severity(extra.severity or ""),
                rule=r.check_id,
                message=extra.message or "",
                filepath=r.path,
                start_line=r.start.line if r.start else None,
                end_line=r.end.line if r.end else None,
                cwe_id=(cwe[0] if cwe else None) if isinstance(cwe, list) else cwe,
            )
        )
    return findings


def parse_gitleaks(stdout: str) -> list[SASTFinding]:
    trimmed = stdout.strip()
    if trimmed in ("", "[]", "null"):
        return []
    raw = _load("gitleaks", trimmed)
    try:
        if not isinstance(raw, list):
            raise ScannerValidationError("Gitleaks output schema validation failed: expected a list")
        results = [_GitleaksResult.model_validate(item) for item in raw]
    except ValidationError as e:
        raise ScannerValidationError(f"Gitleaks output schema validation failed: {e}", cause=e) from e

    return [
        SASTFinding(
            tool="gitleaks",
            severity="high",
            rule=r.RuleID,
            message=r.Description,
            filepath=r.File,
            start_line=r.StartLine,
            end_line=r.EndLine,
        )
        for r in results
    ]


def parse_trivy(stdout: str) -> list[SASTFinding]:
    if not stdout.strip():
        return []
    try:
        data = _TrivyOutput.model_validate(_load("trivy", stdout))
    except ValidationError as e:
        raise ScannerValidationError(f"Trivy output schema validation failed: {e}", cause=e) from e

    findings: list[SASTFinding] = []
    for result in data.Results or []:
        for vuln in result.Vulnerabilities or []:
            findings.append(
                SASTFinding(
                    tool="trivy",
                    severity=map_trivy_severity(vuln.Severity),
                    rule=vuln.VulnerabilityID,
                    message=vuln.Title or vuln.Description or "",
                    filepath=result.Target,
                    cve_id=vuln.VulnerabilityID,
                )
            )
        for secret in result.Secrets or []:
            findings.append(
                SASTFinding(
                    tool="trivy",
                    severity=map_trivy_severity(secret.Severity),
                    rule=secret.RuleID,
                    message=secret.Title,
                    filepath=result.Target,
                    start_line=secret.StartLine,
                    end_line=secret.EndLine,
                )
            )
    return findings


PARSERS = {"semgrep": parse_semgrep, "gitleaks": parse_gitleaks, "trivy": parse_trivy}


# =============================================================================
# Runner
# =============================================================================


async def _terminate(process: asyncio.subprocess.Process) -> None:
    """Kill a scanner process and reap it."""
    if process.returncode is None:
        try:
            process.kill()
        except ProcessLookupError:
            pass
    await process.wait()


class SASTScanner:
    """Run the configured scanners in a project directory."""

    name = "run_sast_scans"

    def __init__(
        self,
        project_root: str | Path,
        tools: Optional[list[str]] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        self.project_root = Path(project_root)
        self.tools = list(tools) if tools is not None else list(SUPPORTED_TOOLS)
        self.timeout = timeout

    async def _execute(self, tool: str) -> str:
        command = COMMANDS[tool]
        if shutil.which(command[0]) is None:
            raise ToolUnavailableError(tool, f"{command[0]} is not installed. {INSTALL_HINTS[tool]}")

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=self.project_root,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ToolUnavailableError(tool, str(e)) from e

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            await _terminate(process)
            raise ToolUnavailableError(tool, f"timed out after {self.timeout:g}s") from e
        except BaseException:
            # Cancelled mid-scan; the scanner must not outlive us.
            logger.info(f"Stopping {tool} (pid {process.pid})")
            await _terminate(process)
            raise

        out = stdout.decode("utf-8", errors="replace")
        if process.returncode != 0 and not out.strip():
            # gitleaks exits 1 when it finds leaks; with no report there is nothing to parse.
            if tool == "gitleaks" and process.returncode == 1:
                return ""
            err = stderr.decode("utf-8", errors="replace").strip()[:500]
            raise ToolUnavailableError(tool, f"exited with code {process.returncode}: {err}")
        return out

    async def scan(self, tools: Optional[list[str]] = None) -> ScannerResults:
        """Run scanners sequentially and collect normalized results.

        Raises:
            ScannerValidationError: If any scanner's output is malformed
        """
        selected = tools if tools is not None else self.tools
        if not selected:
            return ScannerResults(skipped=["No SAST tools configured or requested."])

        results = ScannerResults()
        for tool in selected:
            if tool not in PARSERS:
                results.skipped.append(f"{tool} failed: unsupported scanner")
                continue
            try:
                stdout = await self._execute(tool)
            except ToolUnavailableError as e:
                logger.info(f"Skipping {tool}: {e.reason}")
                results.skipped.append(str(e))
                continue
            results.findings.extend(PARSERS[tool](stdout))

        logger.info(
            f"SAST scan complete: {len(results.findings)} findings, {len(results.skipped)} skipped"
        )
        return results


__all__ = [
    "SASTFinding",
    "SASTScanner",
    "SUPPORTED_TOOLS",
    "ScannerResults",
    "map_semgrep_severity",
    "map_trivy_severity",
    "parse_gitleaks",
    "parse_semgrep",
    "parse_trivy",
]
