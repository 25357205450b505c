"""
Configuration management for the Volt storage layer.

Configuration comes from environment variables, optionally seeded by a
persisted JSON file that the migration engine rewrites when it switches
back-ends. This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Unknown storage options are ignored, missing ones take engine defaults
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new options with defaults that keep existing deployments working
    - Keep camelCase option names stable, they are part of the persisted layout
    - Extend ENGINE_DEFAULTS when a new back-end kind is added
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from dataclasses import dataclass, field, fields, replace
from enum import Enum
from pathlib import Path
from typing import Any, Mapping

from .errors import ConfigurationError

logger = logging.getLogger(__name__)


class StorageKind(Enum):
    """Supported storage back-ends."""

    FILE_TREE = "file_tree"
    ROW_STORE = "row_store"
    MYSQL = "mysql"
    MARIADB = "mariadb"
    POSTGRES = "postgres"
    COCKROACH = "cockroach"
    SQL_SERVER = "sql_server"
    DOCUMENT = "document"
    KV = "kv"

    @classmethod
    def parse(cls, value: str | StorageKind) -> StorageKind:
        """Parse a kind tag, accepting the legacy engine names.

        Raises:
            ConfigurationError: If the tag is not a known kind
        """
        if isinstance(value, StorageKind):
            return value
        text = str(value).strip().lower()
        text = _LEGACY_KIND_NAMES.get(text, text)
        try:
            return cls(text)
        except ValueError:
            valid = ", ".join(k.value for k in cls)
            raise ConfigurationError(
                f"Unknown storage type '{value}'. Must be one of: {valid}",
                details={"type": str(value)},
            )

    @property
    def is_relational(self) -> bool:
        """Remote SQL engines sharing the pooled implementation."""
        return self in _RELATIONAL_KINDS

    @property
    def is_sql(self) -> bool:
        """Back-ends with a storage_kv table and per-collection tables."""
        return self is StorageKind.ROW_STORE or self.is_relational

    @property
    def blocking(self) -> bool:
        """Whether adapter calls complete synchronously in the caller."""
        return self in (StorageKind.FILE_TREE, StorageKind.ROW_STORE)


_LEGACY_KIND_NAMES = {
    "json": "file_tree",
    "sqlite": "row_store",
    "mongodb": "document",
    "mongo": "document",
    "redis": "kv",
    "mssql": "sql_server",
    "cockroachdb": "cockroach",
    "postgresql": "postgres",
}

_RELATIONAL_KINDS = frozenset(
    {
        StorageKind.MYSQL,
        StorageKind.MARIADB,
        StorageKind.POSTGRES,
        StorageKind.COCKROACH,
        StorageKind.SQL_SERVER,
    }
)


class WriteMode(Enum):
    """How the cache writes through to asynchronous adapters.

    EAGER returns after the cache update and saves in the background.
    DURABLE returns only after the adapter save completed.
    """

    EAGER = "eager"
    DURABLE = "durable"


# Conventional defaults per engine (wire-protocol well-known ports)
ENGINE_DEFAULTS: dict[StorageKind, dict[str, Any]] = {
    StorageKind.FILE_TREE: {},
    StorageKind.ROW_STORE: {},
    StorageKind.MYSQL: {"port": 3306, "database": "volt", "user": "root"},
    StorageKind.MARIADB: {"port": 3306, "database": "volt", "user": "root"},
    StorageKind.POSTGRES: {"port": 5432, "database": "volt", "user": "postgres", "ssl": False},
    StorageKind.COCKROACH: {"port": 26257, "database": "volt", "user": "root", "ssl": True},
    StorageKind.SQL_SERVER: {
        "port": 1433,
        "database": "volt",
        "user": "sa",
        "encrypt": False,
        "trust_server_certificate": True,
    },
    StorageKind.DOCUMENT: {"port": 27017, "database": "volt", "auth_source": "admin"},
    StorageKind.KV: {"port": 6379, "db": 0, "key_prefix": "volt:"},
}

_OPTION_ALIASES = {
    "connectionString": "connection_string",
    "connectionLimit": "connection_limit",
    "authSource": "auth_source",
    "keyPrefix": "key_prefix",
    "dbPath": "db_path",
    "dataDir": "data_dir",
    "trustServerCertificate": "trust_server_certificate",
    "odbcDriver": "odbc_driver",
    "busyTimeoutMs": "busy_timeout_ms",
    "walMode": "wal_mode",
}
_CAMEL_NAMES = {snake: camel for camel, snake in _OPTION_ALIASES.items()}

_CREDENTIALS_RE = re.compile(r"(://[^:/@]*:)[^@]*@")


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class StorageOptions:
    """Options block for one storage back-end.

    Attributes:
        host: Engine host name
        port: Engine port (None = engine default)
        database: Database / schema name
        user: Login user
        password: Login password (never logged)
        ssl: Use TLS for postgres / cockroach
        connection_string: Full DSN, overrides host/port/user/password
        connection_limit: Upper bound of the connection pool
        charset: MySQL / MariaDB character set
        auth_source: Document store authentication database
        db: Key-value logical database number
        key_prefix: Per-deployment key-value namespace
        db_path: Embedded row store file
        data_dir: Runtime JSON directory (file tree root and fallback)
        trust_server_certificate: SQL Server TLS certificate trust
        encrypt: SQL Server transport encryption
        odbc_driver: ODBC driver name for SQL Server
        busy_timeout_ms: Embedded row store busy timeout
        wal_mode: Embedded row store journal mode WAL
    """

    host: str = "localhost"
    port: int | None = None
    database: str | None = None
    user: str | None = None
    password: str | None = None
    ssl: bool = False
    connection_string: str | None = None
    connection_limit: int = 10
    charset: str = "utf8mb4"
    auth_source: str = "admin"
    db: int = 0
    key_prefix: str = "volt:"
    db_path: str = "data/volt.db"
    data_dir: str = "data"
    trust_server_certificate: bool = True
    encrypt: bool = False
    odbc_driver: str = "ODBC Driver 18 for SQL Server"
    busy_timeout_ms: int = 5000
    wal_mode: bool = True

    @classmethod
    def from_dict(
        cls, kind: StorageKind, raw: Mapping[str, Any] | None = None
    ) -> StorageOptions:
        """Build options for a kind, applying engine defaults.

        Both camelCase and snake_case keys are accepted. Unknown keys
        are ignored.

        Raises:
            ConfigurationError: If a recognised option has the wrong type
        """
        types = {f.name: f.type for f in fields(cls)}
        values: dict[str, Any] = dict(ENGINE_DEFAULTS.get(kind, {}))
        for key, value in (raw or {}).items():
            name = _OPTION_ALIASES.get(key, key)
            if name not in types or value is None:
                continue
            try:
                if name in ("port", "connection_limit", "db", "busy_timeout_ms"):
                    value = int(value)
                elif name in ("ssl", "trust_server_certificate", "encrypt", "wal_mode"):
                    value = _as_bool(value)
                else:
                    value = str(value)
            except (TypeError, ValueError):
                raise ConfigurationError(
                    f"Invalid value for storage option '{key}'",
                    details={"option": key},
                )
            values[name] = value
        return cls(**values)

    @classmethod
    def from_env(cls, kind: StorageKind) -> StorageOptions:
        """Load options from STORAGE_* environment variables."""
        env = {
            "host": os.getenv("STORAGE_HOST"),
            "port": os.getenv("STORAGE_PORT"),
            "database": os.getenv("STORAGE_DATABASE"),
            "user": os.getenv("STORAGE_USER"),
            "password": os.getenv("STORAGE_PASSWORD"),
            "ssl": os.getenv("STORAGE_SSL"),
            "connection_string": os.getenv("STORAGE_CONNECTION_STRING"),
            "connection_limit": os.getenv("STORAGE_CONNECTION_LIMIT"),
            "charset": os.getenv("STORAGE_CHARSET"),
            "auth_source": os.getenv("STORAGE_AUTH_SOURCE"),
            "db": os.getenv("STORAGE_DB"),
            "key_prefix": os.getenv("STORAGE_KEY_PREFIX"),
            "db_path": os.getenv("STORAGE_DB_PATH"),
            "data_dir": os.getenv("DATA_DIR"),
            "trust_server_certificate": os.getenv("STORAGE_TRUST_SERVER_CERTIFICATE"),
            "encrypt": os.getenv("STORAGE_ENCRYPT"),
        }
        return cls.from_dict(kind, {k: v for k, v in env.items() if v is not None})

    def to_dict(self, redact: bool = True) -> dict[str, Any]:
        """Render the persisted camelCase layout."""
        out: dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if redact and value is not None:
                if f.name == "password":
                    value = "***"
                elif f.name == "connection_string":
                    value = _CREDENTIALS_RE.sub(r"\1***@", value)
            out[_CAMEL_NAMES.get(f.name, f.name)] = value
        return out

    def describe(self, kind: StorageKind) -> str:
        """Redacted endpoint description for logs."""
        if kind is StorageKind.FILE_TREE:
            return f"file_tree:{self.data_dir}"
        if kind is StorageKind.ROW_STORE:
            return f"row_store:{self.db_path}"
        if self.connection_string:
            return _CREDENTIALS_RE.sub(r"\1***@", self.connection_string)
        location = f"{self.host}:{self.port}" if self.port else self.host
        suffix = f"/{self.database}" if self.database else ""
        return f"{kind.value}://{location}{suffix}"


@dataclass(frozen=True)
class CacheConfig:
    """Read-through cache configuration.

    Attributes:
        write_mode: EAGER (background write-through) or DURABLE
        call_timeout_seconds: Deadline for each adapter call (None = none)
    """

    write_mode: WriteMode = WriteMode.EAGER
    call_timeout_seconds: float | None = None

    @classmethod
    def from_env(cls) -> CacheConfig:
        """Load configuration from environment variables."""
        timeout = os.getenv("STORAGE_CALL_TIMEOUT_SECONDS")
        try:
            mode = WriteMode(os.getenv("STORAGE_WRITE_MODE", "eager").lower())
        except ValueError:
            raise ConfigurationError("STORAGE_WRITE_MODE must be one of: eager, durable")
        return cls(
            write_mode=mode,
            call_timeout_seconds=float(timeout) if timeout else None,
        )


@dataclass(frozen=True)
class ServicesConfig:
    """Collection service tunables.

    Attributes:
        child_verification_days: Lifetime of a 'child' age verification
        dm_page_size: Default tail size when listing DM messages
        message_page_size: Default tail size when listing channel messages
        admin_log_limit: Default cap when tailing admin logs
        call_log_limit: Default cap when listing call logs
    """

    child_verification_days: int = 30
    dm_page_size: int = 50
    message_page_size: int = 50
    admin_log_limit: int = 100
    call_log_limit: int = 50

    @classmethod
    def from_env(cls) -> ServicesConfig:
        """Load configuration from environment variables."""
        return cls(
            child_verification_days=int(os.getenv("AGE_VERIFICATION_CHILD_DAYS", "30")),
            dm_page_size=int(os.getenv("DM_PAGE_SIZE", "50")),
            message_page_size=int(os.getenv("MESSAGE_PAGE_SIZE", "50")),
            admin_log_limit=int(os.getenv("ADMIN_LOG_LIMIT", "100")),
            call_log_limit=int(os.getenv("CALL_LOG_LIMIT", "50")),
        )


@dataclass(frozen=True)
class StorageConfig:
    """Active storage configuration.

    Attributes:
        kind: Which back-end to use
        options: Options block for that back-end
        cache: Cache / write-through configuration
        auto_distribute: Distribute leftover storage_kv rows on startup
    """

    kind: StorageKind = StorageKind.FILE_TREE
    options: StorageOptions = field(default_factory=StorageOptions)
    cache: CacheConfig = field(default_factory=CacheConfig)
    auto_distribute: bool = False

    @classmethod
    def for_kind(
        cls,
        kind: StorageKind | str,
        options: Mapping[str, Any] | None = None,
        cache: CacheConfig | None = None,
    ) -> StorageConfig:
        """Build a configuration for a kind from a raw options mapping."""
        kind = StorageKind.parse(kind)
        return cls(
            kind=kind,
            options=StorageOptions.from_dict(kind, options),
            cache=cache or CacheConfig(),
        )

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        kind = StorageKind.parse(os.getenv("STORAGE_TYPE", "file_tree"))
        return cls(
            kind=kind,
            options=StorageOptions.from_env(kind),
            cache=CacheConfig.from_env(),
            auto_distribute=os.getenv("STORAGE_AUTO_DISTRIBUTE", "false").lower() == "true",
        )

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> StorageConfig:
        """Build from the persisted layout ``{"type": ..., "<type>": {...}}``.

        The options block may also be stored under the legacy engine name
        (``sqlite``, ``mongodb``, ...) or under ``options``.
        """
        if "type" not in raw:
            raise ConfigurationError("Storage configuration is missing 'type'")
        kind = StorageKind.parse(raw["type"])
        block: Mapping[str, Any] | None = raw.get(kind.value)
        if block is None:
            for legacy, canonical in _LEGACY_KIND_NAMES.items():
                if canonical == kind.value and legacy in raw:
                    block = raw[legacy]
                    break
        if block is None:
            block = raw.get("options") or {}
        cache_raw = raw.get("cache") or {}
        timeout = cache_raw.get("callTimeoutSeconds")
        try:
            cache = CacheConfig(
                write_mode=WriteMode(cache_raw.get("writeMode", "eager")),
                call_timeout_seconds=float(timeout) if timeout is not None else None,
            )
        except ValueError:
            raise ConfigurationError("Invalid cache configuration")
        return cls(
            kind=kind,
            options=StorageOptions.from_dict(kind, block),
            cache=cache,
            auto_distribute=_as_bool(raw.get("autoDistribute", False)),
        )

    def to_dict(self, redact: bool = False) -> dict[str, Any]:
        return {
            "type": self.kind.value,
            self.kind.value: self.options.to_dict(redact=redact),
            "cache": {
                "writeMode": self.cache.write_mode.value,
                "callTimeoutSeconds": self.cache.call_timeout_seconds,
            },
            "autoDistribute": self.auto_distribute,
        }

    @classmethod
    def load_file(cls, path: str | Path) -> StorageConfig:
        """Load a persisted configuration file.

        Raises:
            ConfigurationError: If the file is missing or not valid JSON
        """
        try:
            raw = json.loads(Path(path).read_text(encoding="utf-8"))
        except FileNotFoundError:
            raise ConfigurationError(f"Storage config file not found: {path}")
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Storage config file is not valid JSON: {e}")
        # Whole-application config files nest the block under "storage"
        if "storage" in raw and isinstance(raw["storage"], dict):
            raw = raw["storage"]
        return cls.from_dict(raw)

    def save_file(self, path: str | Path) -> None:
        """Persist to a JSON file via temp file + rename."""
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(self.to_dict(redact=False), f, indent=2)
            os.replace(tmp, target)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    def with_kind(self, kind: StorageKind | str, options: Mapping[str, Any] | None) -> StorageConfig:
        """Copy of this config pointing at another back-end."""
        kind = StorageKind.parse(kind)
        merged = dict(options or {})
        # The runtime JSON directory travels with every configuration
        if "dataDir" not in merged and "data_dir" not in merged:
            merged["dataDir"] = self.options.data_dir
        return replace(self, kind=kind, options=StorageOptions.from_dict(kind, merged))

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ConfigurationError: If configuration is invalid.
        """
        opts = self.options
        if not opts.data_dir:
            raise ConfigurationError("dataDir is required")
        if self.kind is StorageKind.ROW_STORE and not opts.db_path:
            raise ConfigurationError("dbPath is required when type=row_store")
        if self.kind.is_relational or self.kind in (StorageKind.DOCUMENT, StorageKind.KV):
            if not opts.connection_string and not opts.host:
                raise ConfigurationError(
                    f"host or connectionString is required when type={self.kind.value}"
                )
            if opts.port is not None and not 0 < opts.port < 65536:
                raise ConfigurationError(f"port out of range: {opts.port}")
        if opts.connection_limit < 1:
            raise ConfigurationError("connectionLimit must be at least 1")
        if self.cache.call_timeout_seconds is not None and self.cache.call_timeout_seconds <= 0:
            raise ConfigurationError("callTimeoutSeconds must be positive")


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass(frozen=True)
class HttpConfig:
    """Admin HTTP server configuration.

    Attributes:
        host: Bind address
        port: Bind port
        cors_origins: Allowed CORS origins ("*" allows any)
    """

    host: str = "0.0.0.0"
    port: int = 8088
    cors_origins: tuple[str, ...] = ("*",)

    @classmethod
    def from_env(cls) -> HttpConfig:
        """Load configuration from environment variables."""
        origins = os.getenv("ADMIN_CORS_ORIGINS", "*")
        return cls(
            host=os.getenv("ADMIN_HTTP_HOST", "0.0.0.0"),
            port=int(os.getenv("ADMIN_HTTP_PORT", "8088")),
            cors_origins=tuple(o.strip() for o in origins.split(",") if o.strip()),
        )


@dataclass
class VoltConfig:
    """Complete storage-layer configuration.

    This aggregates all configuration sections and provides validation.

    Attributes:
        storage: Active back-end configuration
        services: Collection service tunables
        observability: Logging configuration
        http: Admin HTTP server configuration
        config_file: Persisted storage config rewritten by migrations
        backup_dir: Root directory for migration backups
    """

    storage: StorageConfig = field(default_factory=StorageConfig)
    services: ServicesConfig = field(default_factory=ServicesConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)
    http: HttpConfig = field(default_factory=HttpConfig)
    config_file: str | None = None
    backup_dir: str = "backup"

    @classmethod
    def from_env(cls) -> VoltConfig:
        """Load complete configuration from environment variables.

        When STORAGE_CONFIG_FILE names an existing file it seeds the storage
        section; STORAGE_TYPE still overrides the persisted type.

        Raises:
            ConfigurationError: If configuration is missing or invalid.
        """
        config_file = os.getenv("STORAGE_CONFIG_FILE")
        if config_file and Path(config_file).exists():
            storage = StorageConfig.load_file(config_file)
            override = os.getenv("STORAGE_TYPE")
            if override and StorageKind.parse(override) is not storage.kind:
                storage = StorageConfig.from_env()
        else:
            storage = StorageConfig.from_env()

        config = cls(
            storage=storage,
            services=ServicesConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
            http=HttpConfig.from_env(),
            config_file=config_file,
            backup_dir=os.getenv("BACKUP_DIR", "backup"),
        )
        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ConfigurationError: If configuration is invalid.
        """
        self.storage.validate()
        if self.services.child_verification_days < 0:
            raise ConfigurationError("AGE_VERIFICATION_CHILD_DAYS must not be negative")
        if not 0 < self.http.port < 65536:
            raise ConfigurationError(f"ADMIN_HTTP_PORT out of range: {self.http.port}")

        if not os.path.exists(self.storage.options.data_dir):
            logger.warning(
                f"Data directory does not exist: {self.storage.options.data_dir}. "
                "It will be created on first write."
            )

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Storage configuration loaded",
            extra={
                "storage_type": self.storage.kind.value,
                "endpoint": self.storage.options.describe(self.storage.kind),
                "data_dir": self.storage.options.data_dir,
                "write_mode": self.storage.cache.write_mode.value,
                "call_timeout_seconds": self.storage.cache.call_timeout_seconds,
                "config_file": self.config_file,
                "log_level": self.observability.log_level,
            },
        )
