"""
Configuration system using Pydantic for type-safe settings management.

Settings are grouped into project paths, external commands, self-verification
behaviour and the retry policy. They can be loaded from a YAML file with
environment variable interpolation, or overridden through ``WORKER_*``
environment variables (``WORKER_RETRY__MAX_ATTEMPTS=5``).
"""

from __future__ import annotations

import os
import re
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from worker_engine.engine.retry import RetryPolicy
from worker_engine.enums import Step, VerificationKind
from worker_engine.exceptions import ConfigurationError, WorkOrderParseError
from worker_engine.models.domain import WorkOrder


class ProjectConfig(BaseModel):
    """Where the engine works and where it keeps its files."""

    root: str = Field(default=".", description="Project root; all file access stays inside it")
    results_path: str = Field(
        default=".worker/progress", description="Directory for implementation results (relative to root)"
    )
    checkpoint_dir: str = Field(
        default=".worker/checkpoints", description="Directory for checkpoints (relative to root)"
    )
    checkpoint_max_age_hours: float = Field(
        default=24.0, gt=0, description="Checkpoints older than this are not resumed"
    )
    resumable_steps: list[Step] = Field(
        default_factory=lambda: list(Step), description="Steps after which a checkpoint may be resumed"
    )


class CommandsConfig(BaseModel):
    """External commands run during verification.

    Commands are split with shell-like quoting rules and executed directly,
    never through a shell.
    """

    test: str = Field(default="pytest -q", description="Test command")
    lint: str = Field(default="ruff check .", description="Lint command")
    lint_fix: str | None = Field(
        default=None, description="Lint auto-fix command (defaults to the lint command plus --fix)"
    )
    build: str = Field(default="python -m compileall -q .", description="Build command")
    typecheck: str = Field(default="mypy .", description="Type check command")
    timeout_seconds: float = Field(default=300.0, gt=0, description="Timeout for each command")
    allowed_executables: list[str] | None = Field(
        default=None, description="If set, only these executables may be run"
    )

    @property
    def effective_lint_fix(self) -> str:
        return self.lint_fix or f"{self.lint} --fix"

    def command_for(self, kind: VerificationKind) -> str:
        return {
            VerificationKind.TEST: self.test,
            VerificationKind.LINT: self.lint,
            VerificationKind.BUILD: self.build,
            VerificationKind.TYPECHECK: self.typecheck,
        }[kind]


class VerificationConfig(BaseModel):
    """Self-verification loop behaviour."""

    steps_to_run: list[VerificationKind] = Field(
        default_factory=lambda: [VerificationKind.TEST, VerificationKind.LINT, VerificationKind.BUILD],
        description="Checks to run, in order",
    )
    max_fix_iterations: int = Field(default=3, ge=0, le=10, description="Repair iterations per failing check")
    auto_fix_lint: bool = Field(default=True, description="Run the lint auto-fix command on lint failures")
    continue_on_failure: bool = Field(
        default=False, description="Keep running later checks after one stays red"
    )
    self_fix: bool = Field(
        default=True, description="Use the self-verification loop instead of a single-pass check"
    )

    @field_validator("steps_to_run")
    @classmethod
    def dedupe_steps(cls, value: list[VerificationKind]) -> list[VerificationKind]:
        """Drop repeated kinds while keeping their first position."""
        return list(dict.fromkeys(value))


class WorkerSettings(BaseSettings):
    """Main worker engine settings.

    Combines all configuration sections and provides loading from YAML files
    with environment variable interpolation.
    """

    model_config = SettingsConfigDict(
        env_prefix="WORKER_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    project: ProjectConfig = Field(default_factory=ProjectConfig)
    commands: CommandsConfig = Field(default_factory=CommandsConfig)
    verification: VerificationConfig = Field(default_factory=VerificationConfig)
    retry: RetryPolicy = Field(default_factory=RetryPolicy)

    @property
    def project_root(self) -> Path:
        """Project root as an absolute Path."""
        return Path(self.project.root).resolve()

    @property
    def checkpoint_dir(self) -> Path:
        return self.project_root / self.project.checkpoint_dir

    @property
    def results_dir(self) -> Path:
        return self.project_root / self.project.results_path

    @classmethod
    def from_yaml(cls, config_path: str) -> WorkerSettings:
        """Load settings from YAML file with environment variable interpolation.

        Supports ${VAR_NAME} and ${VAR_NAME:-default} substitution.

        Args:
            config_path: Path to YAML configuration file

        Returns:
            WorkerSettings instance

        Raises:
            ConfigurationError: If config file is invalid or missing
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        try:
            yaml_content = config_file.read_text()
        except OSError as e:
            raise ConfigurationError(f"Cannot read configuration file: {config_path}") from e

        try:
            yaml_content = interpolate_env_vars(yaml_content)
        except ValueError as e:
            raise ConfigurationError(f"Invalid environment variable reference in config: {e}") from e

        try:
            config_dict = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML syntax in {config_path}: {e}") from e

        if config_dict is None:
            config_dict = {}
        if not isinstance(config_dict, dict):
            raise ConfigurationError("Configuration must be a YAML object, not a list or scalar")

        try:
            return cls(**config_dict)
        except ValidationError as e:
            raise ConfigurationError(f"Failed to validate configuration: {e}") from e


def interpolate_env_vars(content: str) -> str:
    """Interpolate ${VAR_NAME} placeholders with environment variables.

    Supports two syntaxes:
    - ${VAR_NAME} - Required environment variable (raises if not set)
    - ${VAR_NAME:-default} - Optional with default value

    YAML comment lines are left unchanged.

    Raises:
        ValueError: If a required environment variable is not set
    """
    pattern = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}")

    def replace_var(match: re.Match[str]) -> str:
        var_name = match.group(1)
        default_value = match.group(2)
        value = os.getenv(var_name)

        if value is not None:
            return value
        if default_value is not None:
            return default_value
        raise ValueError(f"Environment variable {var_name} is not set")

    def process_line(line: str) -> str:
        if line.lstrip().startswith("#"):
            return line
        return pattern.sub(replace_var, line)

    return "\n".join(process_line(line) for line in content.split("\n"))


def load_work_order(path: str | Path) -> WorkOrder:
    """Load a work order from a YAML file.

    The document may hold the work order at the top level or under a
    ``work_order`` key.

    Raises:
        WorkOrderParseError: If the file is missing, malformed or invalid
    """
    source = Path(path)
    try:
        data = yaml.safe_load(source.read_text())
    except (OSError, yaml.YAMLError) as e:
        raise WorkOrderParseError(str(source), e) from e

    if isinstance(data, dict) and "work_order" in data:
        data = data["work_order"]
    if not isinstance(data, dict):
        raise WorkOrderParseError(str(source), ValueError("document is not a mapping"))

    try:
        return WorkOrder.model_validate(data)
    except ValidationError as e:
        raise WorkOrderParseError(str(source), e) from e
