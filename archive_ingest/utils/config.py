"""TOML configuration loading.

The configuration file has three sections::

    [pipeline]   # PipelineConfig fields
    [store]      # StoreConfig fields
    [[resources]]
    uri = "https://example.org/data.zip"
    hash = "sha256:..."
    version = "v1"

``get_config`` creates the file from a commented template when it does not
exist yet. Each table is checked by a pydantic model before the runtime
dataclasses are built. ``ARCHIVE_INGEST_*`` environment variables, read with
pydantic-settings, override the file, which is how secrets are meant to be
supplied (the CLI loads ``.env`` first).
"""

from __future__ import annotations

import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..core.errors import ConfigurationError
from ..core.pipeline import PipelineConfig
from ..core.state import ResourceDescriptor
from ..storage import BACKENDS, DEFAULT_NAMESPACE, StoreConfig
from .extract import DEFAULT_MAX_ENTRIES, DEFAULT_MAX_ENTRY_SIZE, DEFAULT_MAX_TOTAL_SIZE
from .logging import get_logger, header, mask_sensitive_data, mask_url_sensitive_parts
from .manifest import validate_descriptor

logger = get_logger("config")

DEFAULT_CONFIG_NAME = "archive-ingest.toml"

ENV_PREFIX = "ARCHIVE_INGEST_"
ENV_TOKEN = f"{ENV_PREFIX}TOKEN"
ENV_REDIS_URL = f"{ENV_PREFIX}REDIS_URL"
ENV_CONCURRENCY = f"{ENV_PREFIX}CONCURRENCY"

DEFAULT_CONFIG_TEMPLATE = """\
# archive-ingest configuration

[pipeline]
concurrency = 4
max_attempts = 3
timeout = 30.0
backoff_initial = 1.0
backoff_multiplier = 2.0
backoff_max = 60.0
jitter = 0.1
store_max_attempts = 3
# ttl = 86400            # seconds; omit for entries that never expire
# max_download_bytes = 1073741824
max_entry_size = 268435456
max_total_size = 1073741824
max_entries = 10000
empty_archive_policy = "fail"   # or "warn"
sweep_before_run = false

[pipeline.headers]
# "X-Example" = "value"

[store]
backend = "sqlite"       # or "redis"
path = "cache.db"        # relative to this file
url = "redis://localhost:6379/0"
namespace = "archive-ingest:"
socket_timeout = 5.0

# [[resources]]
# uri = "https://example.org/data/2024-10.zip"
# hash = "sha256:..."
# version = "2024-10"
# name = "monthly"
"""


@dataclass
class AppConfig:
    """Everything a CLI run needs.

    Attributes:
        pipeline: Pipeline settings.
        store: Cache backend settings.
        resources: Descriptors listed in the file.
        path: File the configuration was loaded from, if any.
    """

    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    resources: list[ResourceDescriptor] = field(default_factory=list)
    path: Optional[Path] = None

    def describe(self) -> str:
        """Multi-line summary with secrets masked, for logging."""
        p, s = self.pipeline, self.store
        location = s.path if s.backend == "sqlite" else mask_url_sensitive_parts(s.url)
        return "\n".join(
            [
                f"file: {self.path or '<defaults>'}",
                f"concurrency={p.concurrency} max_attempts={p.max_attempts} "
                f"timeout={p.timeout}s ttl={p.ttl}",
                f"store: {s.backend} {location} namespace={s.namespace!r}",
                f"token: {mask_sensitive_data(p.token) if p.token else 'none'}",
                f"resources: {len(self.resources)}",
            ]
        )


class PipelineSection(BaseModel):
    """Typed ``[pipeline]`` table."""

    model_config = ConfigDict(extra="forbid")

    concurrency: int = 4
    max_attempts: int = 3
    timeout: float = 30.0
    backoff_initial: float = 1.0
    backoff_multiplier: float = 2.0
    backoff_max: float = 60.0
    jitter: float = 0.1
    store_max_attempts: int = 3
    ttl: Optional[float] = None
    max_download_bytes: Optional[int] = None
    max_entry_size: int = DEFAULT_MAX_ENTRY_SIZE
    max_total_size: int = DEFAULT_MAX_TOTAL_SIZE
    max_entries: int = DEFAULT_MAX_ENTRIES
    empty_archive_policy: str = "fail"
    sweep_before_run: bool = False
    headers: Dict[str, str] = Field(default_factory=dict)
    token: Optional[str] = None


class StoreSection(BaseModel):
    """Typed ``[store]`` table."""

    model_config = ConfigDict(extra="forbid")

    backend: str = "sqlite"
    path: Path = Path("cache.db")
    url: str = "redis://localhost:6379/0"
    namespace: str = DEFAULT_NAMESPACE
    socket_timeout: Optional[float] = 5.0


class ResourceSection(BaseModel):
    """One ``[[resources]]`` entry."""

    model_config = ConfigDict(extra="forbid", coerce_numbers_to_str=True)

    uri: str
    hash: Optional[str] = None
    version: str = ""
    name: Optional[str] = None

    def to_descriptor(self) -> ResourceDescriptor:
        return ResourceDescriptor(
            uri=self.uri, expected_hash=self.hash, version=self.version, name=self.name
        )


class ConfigDocument(BaseModel):
    """Whole configuration file."""

    model_config = ConfigDict(extra="forbid")

    pipeline: PipelineSection = Field(default_factory=PipelineSection)
    store: StoreSection = Field(default_factory=StoreSection)
    resources: List[ResourceSection] = Field(default_factory=list)


class EnvOverrides(BaseSettings):
    """``ARCHIVE_INGEST_*`` variables that take precedence over the file."""

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX, case_sensitive=False, env_ignore_empty=True, extra="ignore"
    )

    token: Optional[str] = None
    redis_url: Optional[str] = None
    concurrency: Optional[int] = None

    @classmethod
    def from_environ(cls, environ: Optional[Mapping[str, str]] = None) -> "EnvOverrides":
        """Read overrides from ``environ``, or from the process environment."""
        if environ is None:
            return cls()
        values = {
            key[len(ENV_PREFIX):].lower(): value
            for key, value in environ.items()
            if key.upper().startswith(ENV_PREFIX) and value
        }
        return cls.model_validate(values)


def _format_validation_error(error: ValidationError, prefix: str = "") -> str:
    problems = []
    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"])
        problems.append(f"{prefix}{location}: {item['msg']}")
    return "; ".join(problems)


def apply_env_overrides(config: AppConfig, environ: Optional[Mapping[str, str]] = None) -> AppConfig:
    """Apply ``ARCHIVE_INGEST_*`` environment variables in place."""
    try:
        overrides = EnvOverrides.from_environ(environ)
    except ValidationError as e:
        raise ConfigurationError(
            f"Invalid environment override: {_format_validation_error(e, ENV_PREFIX)}"
        ) from e

    if overrides.token:
        config.pipeline.token = overrides.token
    if overrides.redis_url:
        config.store.url = overrides.redis_url
    if overrides.concurrency is not None:
        config.pipeline.concurrency = overrides.concurrency
    return config


def config_from_dict(data: Mapping[str, Any], base_dir: Optional[Path] = None) -> AppConfig:
    """Build and validate an AppConfig from parsed TOML.

    Args:
        data: Parsed document.
        base_dir: Directory relative sqlite paths are resolved against.

    Raises:
        ConfigurationError: Unknown sections or keys, or values of the wrong type.
    """
    try:
        document = ConfigDocument.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {_format_validation_error(e)}") from e

    store = StoreConfig(**document.store.model_dump())
    if base_dir is not None and not store.path.is_absolute():
        store.path = base_dir / store.path

    resources = []
    for index, section in enumerate(document.resources):
        descriptor = section.to_descriptor()
        try:
            validate_descriptor(descriptor)
        except ConfigurationError as e:
            raise ConfigurationError(f"resources[{index}]: {e}") from e
        resources.append(descriptor)

    return AppConfig(
        pipeline=PipelineConfig(**document.pipeline.model_dump()),
        store=store,
        resources=resources,
    )


def validate_config(config: AppConfig) -> None:
    """Check cross-field constraints.

    Raises:
        ConfigurationError: If anything is out of range.
    """
    config.pipeline.validate()
    if config.store.backend not in BACKENDS:
        raise ConfigurationError(
            f"store.backend must be one of {', '.join(BACKENDS)}, got {config.store.backend!r}"
        )


def load_config(path: Path, environ: Optional[Mapping[str, str]] = None) -> AppConfig:
    """Load a TOML configuration file.

    Args:
        path: File to read.
        environ: Environment used for overrides, ``os.environ`` by default.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigurationError: If it is not valid TOML or has invalid values.
    """
    path = Path(path)
    try:
        with open(path, "rb") as f:
            data = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigurationError(f"{path}: invalid TOML: {e}") from e

    config = config_from_dict(data, base_dir=path.parent)
    config.path = path
    apply_env_overrides(config, environ)
    validate_config(config)
    logger.debug(header("CONFIG", config.describe()))
    return config


def save_default_config(path: Path) -> Path:
    """Write the default configuration template to ``path``."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(DEFAULT_CONFIG_TEMPLATE, encoding="utf-8")
    logger.info(header("CONFIG", f"Default configuration written to {path}"))
    return path


def get_config(path: Path, environ: Optional[Mapping[str, str]] = None) -> AppConfig:
    """Load ``path``, creating it from the default template first if needed."""
    path = Path(path)
    if not path.exists():
        save_default_config(path)
    return load_config(path, environ)


__all__ = [
    "AppConfig",
    "ConfigDocument",
    "EnvOverrides",
    "DEFAULT_CONFIG_NAME",
    "DEFAULT_CONFIG_TEMPLATE",
    "ENV_CONCURRENCY",
    "ENV_PREFIX",
    "ENV_REDIS_URL",
    "ENV_TOKEN",
    "apply_env_overrides",
    "config_from_dict",
    "get_config",
    "load_config",
    "save_default_config",
    "validate_config",
]
