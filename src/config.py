"""Engine configuration management.

Configuration is loaded from the workspace directory:
- engine.yaml: Engine settings (concurrency, retry policy, provider, state path)
- secrets.yaml: Provider credentials (decrypted), referenced by key
- stacks/*.yaml: Named stack documents (see manifest.py)

Resolution order for the workspace:
1. $IAC_ENGINE_HOME environment variable
2. Current working directory

Provider credentials are resolved at load time and handed to providers
through an explicit ProviderContext, never through module globals.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

logger = logging.getLogger(__name__)

# Supported values for on_error
ON_ERROR_CHOICES = ('continue', 'stop')

# Supported provider types
PROVIDER_TYPES = ('memory', 'http')


class ConfigError(Exception):
    """Configuration error."""


@dataclass
class RetryPolicy:
    """Per-action retry policy for transient provider errors.

    Attributes:
        max_attempts: Total attempts including the first call
        backoff: Exponential backoff multiplier in seconds (0 disables sleeping)
        max_backoff: Upper bound for a single sleep in seconds
    """
    max_attempts: int = 3
    backoff: float = 1.0
    max_backoff: float = 30.0

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> 'RetryPolicy':
        if not data:
            return cls()
        policy = cls(
            max_attempts=data.get('max_attempts', 3),
            backoff=data.get('backoff', 1.0),
            max_backoff=data.get('max_backoff', 30.0),
        )
        if not isinstance(policy.max_attempts, int) or policy.max_attempts < 1:
            raise ConfigError(f"retry.max_attempts must be a positive integer, got {policy.max_attempts!r}")
        if policy.backoff < 0 or policy.max_backoff < 0:
            raise ConfigError("retry.backoff and retry.max_backoff must not be negative")
        return policy


@dataclass
class ProviderContext:
    """Explicit provider configuration threaded through every provider call.

    Attributes:
        stack: Stack name the run belongs to
        region: Target region
        endpoint: Provider API base URL (http provider only)
        credentials: Resolved credential mapping from secrets.yaml
        verify_tls: Verify the endpoint certificate (false for self-signed)
    """
    stack: str = ''
    region: str = ''
    endpoint: str = ''
    verify_tls: bool = True
    credentials: dict = field(default_factory=dict, repr=False)

    @property
    def token(self) -> str:
        return self.credentials.get('token', '')


@dataclass
class EngineConfig:
    """Configuration for an engine run.

    Values come from engine.yaml when config_file exists; otherwise the
    defaults below apply (memory provider, four workers, three attempts).
    """
    workspace: Path
    config_file: Optional[Path] = None
    concurrency: int = 4
    on_error: str = 'continue'
    state_path: Optional[Path] = None
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    provider_type: str = 'memory'
    endpoint: str = ''
    region: str = ''
    credentials_key: str = ''
    verify_tls: bool = True
    schemas_file: Optional[Path] = None

    # Resolved from secrets.yaml at load time
    _credentials: dict = field(default_factory=dict, init=False, repr=False)

    def __post_init__(self):
        if isinstance(self.workspace, str):
            self.workspace = Path(self.workspace)
        if self.config_file is None:
            self.config_file = self.workspace / 'engine.yaml'
        elif isinstance(self.config_file, str):
            self.config_file = Path(self.config_file)

        if self.config_file.exists():
            self._load_from_yaml()

        self._validate()

    def _load_from_yaml(self):
        """Load configuration from engine.yaml with secrets resolution."""
        data = _parse_yaml(self.config_file)

        self.concurrency = data.get('concurrency', self.concurrency)
        self.on_error = data.get('on_error', self.on_error)
        self.retry = RetryPolicy.from_dict(data.get('retry'))

        if state_path := data.get('state_path'):
            self.state_path = self._relative(state_path)

        if schemas := data.get('schemas'):
            self.schemas_file = self._relative(schemas)

        provider = data.get('provider') or {}
        if not isinstance(provider, dict):
            raise ConfigError(f"'provider' in {self.config_file} must be a mapping")
        self.provider_type = provider.get('type', self.provider_type)
        self.endpoint = provider.get('endpoint', self.endpoint)
        self.region = provider.get('region', self.region)
        self.credentials_key = provider.get('credentials', self.credentials_key)
        self.verify_tls = provider.get('verify_tls', self.verify_tls)

        if self.credentials_key:
            secrets = _load_secrets(self.workspace)
            if secrets is None:
                raise ConfigError(
                    f"Provider credentials '{self.credentials_key}' requested but "
                    f"{self.workspace / 'secrets.yaml'} not found"
                )
            creds = (secrets.get('credentials') or {}).get(self.credentials_key)
            if creds is None:
                raise ConfigError(
                    f"Credentials '{self.credentials_key}' not found in secrets.yaml"
                )
            self._credentials = creds if isinstance(creds, dict) else {'token': str(creds)}

        logger.debug(f"Loaded engine config from {self.config_file}")

    def _relative(self, value: str) -> Path:
        path = Path(value)
        if not path.is_absolute():
            path = self.workspace / path
        return path

    def _validate(self):
        if not isinstance(self.concurrency, int) or self.concurrency < 1:
            raise ConfigError(f"concurrency must be a positive integer, got {self.concurrency!r}")
        if self.on_error not in ON_ERROR_CHOICES:
            raise ConfigError(
                f"on_error must be one of {', '.join(ON_ERROR_CHOICES)}, got '{self.on_error}'"
            )
        if self.provider_type not in PROVIDER_TYPES:
            raise ConfigError(
                f"provider.type must be one of {', '.join(PROVIDER_TYPES)}, got '{self.provider_type}'"
            )
        if self.provider_type == 'http' and not self.endpoint:
            raise ConfigError("provider.endpoint is required for the http provider")
        if not isinstance(self.verify_tls, bool):
            raise ConfigError(f"provider.verify_tls must be true or false, got {self.verify_tls!r}")

    def get_credentials(self) -> dict:
        """Get resolved credentials (from secrets.yaml)."""
        return dict(self._credentials)

    def set_credentials(self, credentials: dict) -> None:
        """Set credentials directly (for tests and embedding)."""
        self._credentials = dict(credentials)

    def state_path_for(self, stack: str) -> Path:
        """State document path for a stack.

        Default: {workspace}/.states/{stack}/state.json
        """
        if self.state_path is not None:
            return self.state_path
        return self.workspace / '.states' / stack / 'state.json'

    def provider_context(self, stack: str) -> ProviderContext:
        return ProviderContext(
            stack=stack,
            region=self.region,
            endpoint=self.endpoint,
            verify_tls=self.verify_tls,
            credentials=self.get_credentials(),
        )


def _parse_yaml(path: Path) -> dict:
    """Parse a YAML file and return contents."""
    try:
        with open(path, encoding="utf-8") as f:
            data: Any = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}")
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must be a YAML object (dict)")
    return data


def _load_secrets(workspace: Path) -> Optional[dict]:
    """Load decrypted secrets from secrets.yaml."""
    secrets_file = workspace / 'secrets.yaml'
    if not secrets_file.exists():
        return None
    return _parse_yaml(secrets_file)


def get_workspace_dir() -> Path:
    """Discover the workspace directory.

    Resolution order:
    1. $IAC_ENGINE_HOME environment variable
    2. Current working directory
    """
    if env_path := os.environ.get('IAC_ENGINE_HOME'):
        path = Path(env_path)
        if path.exists():
            return path
        raise ConfigError(f"IAC_ENGINE_HOME={env_path} does not exist")

    return Path.cwd()


def list_stacks(workspace: Optional[Path] = None) -> list[str]:
    """List named stacks from {workspace}/stacks/*.yaml."""
    try:
        workspace = workspace or get_workspace_dir()
    except ConfigError:
        return []

    stacks_dir = workspace / 'stacks'
    if not stacks_dir.exists():
        return []
    return sorted(f.stem for f in stacks_dir.glob('*.yaml') if f.is_file())


def load_engine_config(workspace: Optional[Path] = None) -> EngineConfig:
    """Load engine configuration for a workspace.

    Raises:
        ConfigError: If the workspace or engine.yaml is invalid
    """
    workspace = workspace or get_workspace_dir()
    return EngineConfig(workspace=workspace)
