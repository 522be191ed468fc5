"""
Configuration System

Settings for approval timeouts, definition sources, session storage and
logging. Values are layered: dataclass defaults, then specflow.yaml, then
SPECFLOW_* environment variables.
"""

from typing import Any, Dict, List, Optional
from pathlib import Path
import logging
import os
import yaml
from dataclasses import dataclass, field, fields, asdict, replace

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

TIMEOUT_SCOPES = ("request", "step")
PERSISTENCE_BACKENDS = ("memory", "file")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass
class ApprovalConfig:
    """Approval gate configuration"""
    timeout_enabled: bool = True
    timeout_seconds: float = 300.0  # 5 minutes of inactivity
    # "request": every approval request gets the full timeout
    # "step": re-prompts within one step share the first request's deadline
    timeout_scope: str = "request"


@dataclass
class WorkflowsConfig:
    """Workflow definition sources"""
    include_builtin: bool = True
    definitions_dir: Optional[str] = None


@dataclass
class PersistenceConfig:
    """Session store configuration"""
    backend: str = "memory"  # "memory" or "file"
    state_dir: str = ".specflow/sessions"


@dataclass
class LoggingConfig:
    """Application log output"""
    level: str = "INFO"
    format: str = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    file: Optional[str] = None
    console: bool = True


@dataclass
class SpecflowConfig:
    """Complete specflow configuration"""
    approval: ApprovalConfig = field(default_factory=ApprovalConfig)
    workflows: WorkflowsConfig = field(default_factory=WorkflowsConfig)
    persistence: PersistenceConfig = field(default_factory=PersistenceConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def to_dict(self) -> Dict[str, Any]:
        """Plain-dict form, as written to specflow.yaml"""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SpecflowConfig":
        """Build from a parsed specflow.yaml mapping; omitted sections keep defaults"""
        config = cls()

        try:
            if "approval" in data:
                config.approval = ApprovalConfig(**data["approval"])
            if "workflows" in data:
                config.workflows = WorkflowsConfig(**data["workflows"])
            if "persistence" in data:
                config.persistence = PersistenceConfig(**data["persistence"])
            if "logging" in data:
                config.logging = LoggingConfig(**data["logging"])
        except TypeError as e:
            raise ConfigurationError(f"Unknown configuration key: {e}")

        return config


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def validate_config(config: SpecflowConfig) -> List[str]:
    """
    Check value ranges and enumerations.

    Returns:
        Error messages; empty when the configuration is usable
    """
    errors = []

    if config.approval.timeout_seconds <= 0:
        errors.append("Approval timeout must be positive")
    if config.approval.timeout_scope not in TIMEOUT_SCOPES:
        errors.append(f"Approval timeout scope must be one of: {', '.join(TIMEOUT_SCOPES)}")

    if config.persistence.backend not in PERSISTENCE_BACKENDS:
        errors.append(f"Persistence backend must be one of: {', '.join(PERSISTENCE_BACKENDS)}")

    if config.logging.level.upper() not in LOG_LEVELS:
        errors.append(f"Logging level must be one of: {', '.join(LOG_LEVELS)}")

    return errors


class ConfigManager:
    """
    Loads SpecflowConfig and keeps it for the process.

    Environment variables win over specflow.yaml, which wins over defaults.
    Loading does not reject bad values; validate() reports them and
    build_orchestrator refuses them.
    """

    def __init__(self, config_file: Optional[Path] = None):
        """
        Args:
            config_file: YAML file to read; defaults to ./specflow.yaml
        """
        self.config_file = Path(config_file) if config_file else Path("specflow.yaml")
        self._config = self._load_config()

    @property
    def config(self) -> SpecflowConfig:
        return self._config

    def _load_config(self) -> SpecflowConfig:
        """
        Raises:
            ConfigurationError: If the configuration file cannot be parsed
        """
        config = SpecflowConfig()

        if self.config_file.exists():
            try:
                with open(self.config_file, 'r') as f:
                    file_data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ConfigurationError(f"Failed to load config file {self.config_file}: {e}")
            if file_data:
                config = SpecflowConfig.from_dict(file_data)
            logger.debug(f"Loaded configuration from {self.config_file}")

        return self._apply_env_overrides(config)

    def _apply_env_overrides(self, config: SpecflowConfig) -> SpecflowConfig:
        """Overlay SPECFLOW_* variables, e.g. SPECFLOW_APPROVAL_TIMEOUT_SECONDS=600"""
        # Approval overrides
        if timeout := os.getenv("SPECFLOW_APPROVAL_TIMEOUT_SECONDS"):
            config.approval.timeout_seconds = float(timeout)
        if enabled := os.getenv("SPECFLOW_APPROVAL_TIMEOUT_ENABLED"):
            config.approval.timeout_enabled = _parse_bool(enabled)
        if scope := os.getenv("SPECFLOW_APPROVAL_TIMEOUT_SCOPE"):
            config.approval.timeout_scope = scope

        # Workflow overrides
        if definitions_dir := os.getenv("SPECFLOW_DEFINITIONS_DIR"):
            config.workflows.definitions_dir = definitions_dir

        # Persistence overrides
        if backend := os.getenv("SPECFLOW_PERSISTENCE_BACKEND"):
            config.persistence.backend = backend
        if state_dir := os.getenv("SPECFLOW_STATE_DIR"):
            config.persistence.state_dir = state_dir

        # Logging overrides
        if log_level := os.getenv("SPECFLOW_LOG_LEVEL"):
            config.logging.level = log_level
        if log_file := os.getenv("SPECFLOW_LOG_FILE"):
            config.logging.file = log_file

        return config

    def update(self, section: str, key: str, value: Any) -> None:
        """
        Set one value, keeping the configuration valid.

        Raises:
            ConfigurationError: If the section or key does not exist, or the
                new value fails validation; the old value is kept
        """
        if section not in {f.name for f in fields(SpecflowConfig)}:
            raise ConfigurationError(f"Unknown configuration section: {section}")
        section_obj = getattr(self._config, section)
        if key not in {f.name for f in fields(section_obj)}:
            raise ConfigurationError(f"Unknown configuration key: {section}.{key}")

        candidate = replace(self._config, **{section: replace(section_obj, **{key: value})})
        errors = validate_config(candidate)
        if errors:
            raise ConfigurationError(f"Rejected {section}.{key}={value!r}: {'; '.join(errors)}")
        self._config = candidate

    def save(self, file_path: Optional[Path] = None) -> Path:
        """Write the current values as YAML to file_path, or to the loaded file."""
        save_path = Path(file_path) if file_path else self.config_file
        save_path.parent.mkdir(parents=True, exist_ok=True)
        save_path.write_text(yaml.safe_dump(self._config.to_dict(), default_flow_style=False))
        logger.info(f"Saved configuration to {save_path}")
        return save_path

    def validate(self) -> tuple[bool, list[str]]:
        """
        Returns:
            (is_valid, list of error messages)
        """
        errors = validate_config(self._config)
        return len(errors) == 0, errors

    def reload(self) -> None:
        """Re-read specflow.yaml and the environment"""
        self._config = self._load_config()


def configure_logging(config: Optional[LoggingConfig] = None) -> logging.Logger:
    """
    Configure the ``specflow`` logger from a LoggingConfig.

    Returns:
        The configured package logger
    """
    config = config or LoggingConfig()
    package_logger = logging.getLogger("specflow")
    package_logger.setLevel(config.level.upper())

    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)

    formatter = logging.Formatter(config.format, datefmt="%Y-%m-%d %H:%M:%S")
    if config.console:
        console = logging.StreamHandler()
        console.setFormatter(formatter)
        package_logger.addHandler(console)
    if config.file:
        Path(config.file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(config.file)
        file_handler.setFormatter(formatter)
        package_logger.addHandler(file_handler)

    return package_logger
