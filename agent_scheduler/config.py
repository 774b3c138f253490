"""
Scheduler configuration management.

Handles loading, saving, and validating scheduler configuration.
Values come from (highest to lowest priority) environment variables,
the JSON config file, and built-in defaults.
"""

import json
import logging
import os
import sys
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Optional, Dict, List, Any

logger = logging.getLogger(__name__)

DEFAULT_DATA_DIR = "~/.aipm-scheduled-agents"
DEFAULT_LOG_DIR = "~/aipm-scheduled-agents"
DEFAULT_MARKER_PREFIX = "AIPM Agent"
DEFAULT_PROVIDER = "lmstudio"

BACKENDS = ('crontab', 'jobstore')

# Accepted provider spellings mapped to the name passed to runners
PROVIDER_ALIASES = {
    'lmstudio': 'lmstudio',
    'lm': 'lmstudio',
    'studio': 'lmstudio',
    'ollama': 'ollama',
}
PROVIDERS = ('lmstudio', 'ollama')

DEFAULT_RUNNERS = {
    'n8n': 'scripts/run-agent.sh',
    'langflow': 'scripts/run-langflow-agent.sh',
}

# Agent types whose runner accepts --input
INPUT_AGENT_TYPES = ('langflow',)

ENV_CONFIG_PATH = 'AGENT_SCHEDULER_CONFIG'
ENV_DATA_DIR = 'AGENT_SCHEDULER_DATA_DIR'
ENV_LOG_DIR = 'AGENT_SCHEDULER_LOG_DIR'
ENV_PROJECT_ROOT = 'AIPM_PROJECT_ROOT'
ENV_PROVIDER = 'DEFAULT_LLM_PROVIDER'
ENV_BACKEND = 'AGENT_SCHEDULER_BACKEND'


def _default_backend() -> str:
    """crontab everywhere it exists; Windows has no crontab."""
    return 'jobstore' if sys.platform.startswith('win') else 'crontab'


def normalize_provider(provider: str) -> Optional[str]:
    """Map a provider alias to its canonical name, or None if unknown."""
    return PROVIDER_ALIASES.get((provider or '').strip().lower())


@dataclass
class SchedulerSettings:
    """Raw settings as stored in the config file."""
    data_dir: str = DEFAULT_DATA_DIR
    log_dir: str = DEFAULT_LOG_DIR
    project_root: Optional[str] = None  # None = current working directory
    default_provider: str = DEFAULT_PROVIDER
    backend: str = field(default_factory=_default_backend)
    marker_prefix: str = DEFAULT_MARKER_PREFIX
    runners: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_RUNNERS))
    crontab_path: Optional[str] = None  # manage a file instead of the user crontab


class SchedulerConfig:
    """
    Scheduler configuration manager.

    Configuration path priority:
    1. Explicit config_path argument
    2. AGENT_SCHEDULER_CONFIG environment variable
    3. Default: ~/.aipm-scheduled-agents/config.json

    Environment variables (AGENT_SCHEDULER_DATA_DIR, AGENT_SCHEDULER_LOG_DIR,
    AIPM_PROJECT_ROOT, DEFAULT_LLM_PROVIDER, AGENT_SCHEDULER_BACKEND) override
    the corresponding values read from the file.
    """

    DEFAULT_CONFIG_PATH = Path(DEFAULT_DATA_DIR).expanduser() / "config.json"

    def __init__(self, config_path: Optional[str] = None, **overrides: Any):
        """
        Initialize scheduler configuration.

        Args:
            config_path: Path to configuration file. If None, uses env var or default.
            **overrides: Setting values that take precedence over file and environment
        """
        if config_path:
            self.config_path = Path(config_path).expanduser()
        elif os.environ.get(ENV_CONFIG_PATH):
            self.config_path = Path(os.environ[ENV_CONFIG_PATH]).expanduser()
        else:
            self.config_path = self.DEFAULT_CONFIG_PATH

        self.settings = SchedulerSettings()
        if self.config_path.exists():
            self.load()
        else:
            logger.debug(f"No config found at {self.config_path}, using defaults")

        self._apply_environment()

        for key, value in overrides.items():
            if not hasattr(self.settings, key):
                raise TypeError(f"Unknown setting: {key}")
            if value is not None:
                setattr(self.settings, key, value)

    def load(self):
        """Load configuration from JSON file."""
        try:
            with open(self.config_path, 'r') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to load config from {self.config_path}: {e}")
            raise

        known = set(asdict(SchedulerSettings()))
        unknown = set(data) - known
        if unknown:
            logger.warning(f"Ignoring unknown config keys: {', '.join(sorted(unknown))}")

        self.settings = SchedulerSettings(**{k: v for k, v in data.items() if k in known})
        logger.debug(f"Loaded configuration from {self.config_path}")

    def _apply_environment(self):
        env_map = {
            ENV_DATA_DIR: 'data_dir',
            ENV_LOG_DIR: 'log_dir',
            ENV_PROJECT_ROOT: 'project_root',
            ENV_PROVIDER: 'default_provider',
            ENV_BACKEND: 'backend',
        }
        for env_var, attr in env_map.items():
            value = os.environ.get(env_var)
            if value:
                logger.debug(f"Using {attr} from {env_var}: {value}")
                setattr(self.settings, attr, value)

    def save(self):
        """Save configuration to JSON file."""
        self.config_path.parent.mkdir(parents=True, exist_ok=True)

        with open(self.config_path, 'w') as f:
            json.dump(asdict(self.settings), f, indent=2)

        logger.info(f"Saved configuration to {self.config_path}")

    @property
    def data_dir(self) -> Path:
        return Path(self.settings.data_dir).expanduser()

    @property
    def log_dir(self) -> Path:
        return Path(self.settings.log_dir).expanduser()

    @property
    def project_root(self) -> Path:
        root = self.settings.project_root
        return Path(root).expanduser().resolve() if root else Path.cwd().resolve()

    @property
    def default_provider(self) -> str:
        return normalize_provider(self.settings.default_provider) or self.settings.default_provider

    @property
    def backend(self) -> str:
        return self.settings.backend

    @property
    def marker_prefix(self) -> str:
        return self.settings.marker_prefix

    @property
    def runners(self) -> Dict[str, str]:
        return self.settings.runners

    @property
    def crontab_path(self) -> Optional[Path]:
        path = self.settings.crontab_path
        return Path(path).expanduser() if path else None

    @property
    def backup_file(self) -> Path:
        return self.data_dir / "crontab.backup"

    @property
    def job_store_path(self) -> Path:
        return self.data_dir / "scheduler_jobs.db"

    @property
    def history_file(self) -> Path:
        return self.data_dir / "scheduler_history.json"

    @property
    def pid_file(self) -> Path:
        return self.data_dir / "scheduler.pid"

    def validate(self) -> List[str]:
        """
        Validate configuration.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []

        if self.settings.backend not in BACKENDS:
            errors.append(
                f"backend '{self.settings.backend}' is not one of: {', '.join(BACKENDS)}"
            )

        if not self.settings.runners:
            errors.append("'runners' must map at least one agent type to a runner script")
        for agent_type, runner in self.settings.runners.items():
            if not runner or not str(runner).strip():
                errors.append(f"runner for agent type '{agent_type}' cannot be empty")

        if normalize_provider(self.settings.default_provider) is None:
            errors.append(
                f"default_provider '{self.settings.default_provider}' is not one of: "
                f"{', '.join(PROVIDERS)}"
            )

        if not self.settings.marker_prefix.strip():
            errors.append("'marker_prefix' cannot be empty")

        return errors

    def __repr__(self):
        return f"SchedulerConfig(backend={self.backend}, path={self.config_path})"
