# src/mci_registry/config.py
"""
MCI Registry Configuration.

Settings are layered (highest priority first): init kwargs, the TOML file,
MCI_* environment variables, .env, secrets dir. Nothing here is a module-level
singleton; call load_settings() once at startup and hand the result to
build_registry().
"""
import os
import sys
from pathlib import Path
from typing import Union, Literal, Tuple, Callable, Type, Optional

from pydantic import BaseModel, Field
from pydantic_settings import (
    BaseSettings,
    SettingsConfigDict,
    TomlConfigSettingsSource,
    InitSettingsSource,
    EnvSettingsSource,
    DotEnvSettingsSource,
    SecretsSettingsSource,
)

# Project root holds registry_config.toml unless MCI_CONFIG_FILE points elsewhere.
BASE_DIR = Path(__file__).resolve().parent.parent.parent
DEFAULT_TOML_PATH = BASE_DIR / "registry_config.toml"


def resolve_toml_path() -> Path:
    override = os.environ.get("MCI_CONFIG_FILE")
    return Path(override) if override else DEFAULT_TOML_PATH


class LoggingConfig(BaseModel):
    level: str = "INFO"
    log_to_file: bool = False
    log_file: str = "mci_registry.log"
    rotation_size_mb: int = 10
    rotation_backup_count: int = 5
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


# Discriminated unions: pydantic uses the 'type' field to pick the model.


class SQLiteConfig(BaseModel):
    type: Literal["sqlite3"] = "sqlite3"
    db_location: str = "mci_registry.sqlite3"
    in_memory: bool = False


class PostgresConfig(BaseModel):
    type: Literal["postgresql"] = "postgresql"
    host: str = "localhost"
    port: int = 5432
    db_name: str = "mci"
    driver: str = "psycopg"
    username: Optional[str] = None
    password: Optional[str] = None
    pool_size: int = 10


DatabaseConfig = Union[SQLiteConfig, PostgresConfig]


class MemoryStoreConfig(BaseModel):
    type: Literal["memory"] = "memory"


class FilesystemStoreConfig(BaseModel):
    type: Literal["filesystem"] = "filesystem"
    root: str = "./mci_objects"


class S3StoreConfig(BaseModel):
    type: Literal["s3"] = "s3"
    bucket: str = "mci-registry"
    endpoint_url: Optional[str] = None
    region: str = "us-east-1"
    access_key: Optional[str] = None
    secret_key: Optional[str] = None
    force_path_style: bool = True
    connect_timeout_seconds: float = 5.0
    read_timeout_seconds: float = 30.0


ObjectStoreConfig = Union[MemoryStoreConfig, FilesystemStoreConfig, S3StoreConfig]


class IngestionConfig(BaseModel):
    """
    Retry and timeout budget for the slow phases (fetch, blob writes).

    Retries use exponential backoff starting at backoff_initial_seconds and
    capped at backoff_max_seconds; max_attempts counts the first try.
    """

    max_attempts: int = Field(default=4, ge=1)
    backoff_initial_seconds: float = 0.2
    backoff_max_seconds: float = 5.0
    fetch_timeout_seconds: float = 30.0
    user_agent: str = "MCI/1.0"
    max_payload_mb: int = 256


class GCConfig(BaseModel):
    """
    Garbage collection settings.

    grace_period_seconds must exceed the longest plausible ingestion
    (fetch + store + commit); superseded blobs stay readable at least that long.
    """

    enabled: bool = True
    grace_period_seconds: int = Field(default=3600, gt=0)
    interval_seconds: int = Field(default=600, ge=1)


class SecurityConfig(BaseModel):
    # None disables the secrets endpoint entirely.
    secrets_api_key: Optional[str] = None


class ServerConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = 7687
    ssl_keyfile: Optional[str] = None
    ssl_certfile: Optional[str] = None


class AppSettings(BaseSettings):
    """
    Main settings class that loads configuration from various sources.
    Uses defaults if the file or keys are missing.
    """

    logging: LoggingConfig = LoggingConfig()
    database: DatabaseConfig = Field(default=SQLiteConfig(), discriminator="type")
    object_store: ObjectStoreConfig = Field(
        default=FilesystemStoreConfig(), discriminator="type"
    )
    ingestion: IngestionConfig = IngestionConfig()
    gc: GCConfig = GCConfig()
    security: SecurityConfig = SecurityConfig()
    server: ServerConfig = ServerConfig()

    model_config = SettingsConfigDict(
        extra="forbid",
        env_prefix="MCI_",
        env_nested_delimiter="__",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[BaseSettings],
        init_settings: InitSettingsSource,
        env_settings: EnvSettingsSource,
        dotenv_settings: DotEnvSettingsSource,
        file_secret_settings: SecretsSettingsSource,
    ) -> Tuple[Callable, ...]:
        """
        Define the priority order for loading settings sources.
        The TOML file sits right below explicit init kwargs.
        """
        return (
            init_settings,
            TomlConfigSettingsSource(settings_cls, toml_file=resolve_toml_path()),
            env_settings,
            dotenv_settings,
            file_secret_settings,
        )


def load_settings(**overrides) -> AppSettings:
    """Build the settings once at process startup."""
    toml_path = resolve_toml_path()
    if not toml_path.is_file():
        print(f"WARNING: Config file not found at path: {toml_path}", file=sys.stderr)
    return AppSettings(**overrides)
