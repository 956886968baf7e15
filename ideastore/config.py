"""
Configuration management for idea stores.

The configuration is stored as a TOML file in the config directory.
It selects the storage backend, the embedding provider and the vector
index parameters. Secrets (API keys) are read from the environment and
never written to the file.
"""

import os
import tomllib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import tomli_w


CONFIG_FILENAME = "ideastore.toml"
CONFIG_VERSION = 1

DEFAULT_EMBEDDING_PROVIDER = "openai"
DEFAULT_EMBEDDING_MODEL = "text-embedding-3-small"
DEFAULT_VECTOR_DIMENSION = 1536
DEFAULT_INDEX_NAME = "idea_embeddings"


def get_config_dir() -> Path:
    """Config directory: IDEASTORE_CONFIG_DIR or ~/.ideastore."""
    env_dir = os.environ.get("IDEASTORE_CONFIG_DIR")
    if env_dir:
        return Path(env_dir).expanduser().resolve()
    return Path.home() / ".ideastore"


@dataclass
class ProviderConfig:
    """Configuration for a single provider."""
    name: str
    params: dict[str, Any] = field(default_factory=dict)


@dataclass
class PostgresConfig:
    dsn: str = "postgresql://localhost:5432/ideas"
    min_pool_size: int = 1
    max_pool_size: int = 20
    connect_timeout: float = 10.0


@dataclass
class LocalConfig:
    """SQLite record store plus a Chroma vector collection.

    ``chroma_host`` takes precedence over ``chroma_path``; with neither set
    the collection lives in memory for the lifetime of the process.
    """
    database: str = ":memory:"
    chroma_path: str = ""
    chroma_host: str = ""
    chroma_port: int = 8000


@dataclass
class IndexParams:
    """HNSW construction and search parameters."""
    m: int = 16
    ef_construction: int = 64
    ef_search: int = 40


@dataclass
class IndexConfig:
    name: str = DEFAULT_INDEX_NAME
    params: IndexParams = field(default_factory=IndexParams)


@dataclass
class SearchDefaults:
    threshold: float = 0.1
    limit: int = 10
    list_limit: int = 50


@dataclass
class StoreConfig:
    """Complete store configuration."""
    path: Path
    version: int = CONFIG_VERSION
    created: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    backend: str = "local"

    embedding: ProviderConfig = field(
        default_factory=lambda: ProviderConfig(
            DEFAULT_EMBEDDING_PROVIDER, {"model": DEFAULT_EMBEDDING_MODEL}
        )
    )
    dimension: int = DEFAULT_VECTOR_DIMENSION
    postgres: PostgresConfig = field(default_factory=PostgresConfig)
    local: LocalConfig = field(default_factory=LocalConfig)
    index: IndexConfig = field(default_factory=IndexConfig)
    search: SearchDefaults = field(default_factory=SearchDefaults)

    @property
    def config_path(self) -> Path:
        """Path to the TOML config file."""
        return self.path / CONFIG_FILENAME

    def exists(self) -> bool:
        """Check if config file exists."""
        return self.config_path.exists()


def apply_env_overrides(config: StoreConfig) -> StoreConfig:
    """Let environment variables override file settings in place."""
    backend = os.environ.get("IDEASTORE_BACKEND")
    if backend:
        config.backend = backend

    dsn = os.environ.get("IDEASTORE_DATABASE_URL") or os.environ.get("DATABASE_URL")
    if dsn:
        config.postgres.dsn = dsn

    model = os.environ.get("IDEASTORE_EMBEDDING_MODEL") or os.environ.get("EMBEDDING_MODEL")
    if model:
        config.embedding.params["model"] = model

    return config


def load_config(config_dir: Path) -> StoreConfig:
    """
    Load configuration from a config directory.

    Raises:
        FileNotFoundError: If config doesn't exist
        ValueError: If config is invalid
    """
    config_path = config_dir / CONFIG_FILENAME

    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    with open(config_path, "rb") as f:
        data = tomllib.load(f)

    store = data.get("store", {})
    version = store.get("version", 1)
    if version > CONFIG_VERSION:
        raise ValueError(f"Config version {version} is newer than supported ({CONFIG_VERSION})")

    embedding_section = dict(data.get("embedding", {}))
    embedding_name = embedding_section.pop("name", DEFAULT_EMBEDDING_PROVIDER)
    dimension = int(embedding_section.pop("dimension", DEFAULT_VECTOR_DIMENSION))
    if dimension <= 0:
        raise ValueError(f"Embedding dimension must be positive: {dimension}")

    index_section = data.get("index", {})
    search_section = data.get("search", {})
    threshold = float(search_section.get("threshold", SearchDefaults.threshold))
    if not 0.0 <= threshold <= 1.0:
        raise ValueError(f"Search threshold must be within [0, 1]: {threshold}")

    return StoreConfig(
        path=config_dir,
        version=version,
        created=store.get("created", ""),
        backend=store.get("backend", "local"),
        embedding=ProviderConfig(embedding_name, embedding_section),
        dimension=dimension,
        postgres=PostgresConfig(**data.get("postgres", {})),
        local=LocalConfig(**data.get("local", {})),
        index=IndexConfig(
            name=index_section.get("name", DEFAULT_INDEX_NAME),
            params=IndexParams(
                m=int(index_section.get("m", IndexParams.m)),
                ef_construction=int(index_section.get("ef_construction", IndexParams.ef_construction)),
                ef_search=int(index_section.get("ef_search", IndexParams.ef_search)),
            ),
        ),
        search=SearchDefaults(
            threshold=threshold,
            limit=int(search_section.get("limit", SearchDefaults.limit)),
            list_limit=int(search_section.get("list_limit", SearchDefaults.list_limit)),
        ),
    )


def save_config(config: StoreConfig) -> None:
    """
    Save configuration to the config directory.

    Creates the directory if it doesn't exist.
    """
    config.path.mkdir(parents=True, exist_ok=True)

    # Never persist credentials
    embedding = {"name": config.embedding.name, "dimension": config.dimension}
    embedding.update(
        {k: v for k, v in config.embedding.params.items() if k != "api_key"}
    )

    data = {
        "store": {
            "version": config.version,
            "created": config.created,
            "backend": config.backend,
        },
        "postgres": {
            "dsn": config.postgres.dsn,
            "min_pool_size": config.postgres.min_pool_size,
            "max_pool_size": config.postgres.max_pool_size,
            "connect_timeout": config.postgres.connect_timeout,
        },
        "local": {
            "database": config.local.database,
            "chroma_path": config.local.chroma_path,
            "chroma_host": config.local.chroma_host,
            "chroma_port": config.local.chroma_port,
        },
        "embedding": embedding,
        "index": {
            "name": config.index.name,
            "m": config.index.params.m,
            "ef_construction": config.index.params.ef_construction,
            "ef_search": config.index.params.ef_search,
        },
        "search": {
            "threshold": config.search.threshold,
            "limit": config.search.limit,
            "list_limit": config.search.list_limit,
        },
    }

    with open(config.config_path, "wb") as f:
        tomli_w.dump(data, f)


def load_or_create_config(config_dir: Path) -> StoreConfig:
    """
    Load existing config or create a new one with defaults.

    Environment overrides are applied after loading.
    This is the main entry point for config management.
    """
    config_path = config_dir / CONFIG_FILENAME

    if config_path.exists():
        config = load_config(config_dir)
    else:
        config = StoreConfig(path=config_dir)
        save_config(config)
    return apply_env_overrides(config)
