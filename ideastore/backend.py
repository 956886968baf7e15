"""
Pluggable storage backend factory.

Creates the record store and vector index pair for a configuration.
Built-in backends are ``local`` (SQLite + ChromaDB) and ``postgres``
(PostgreSQL + pgvector). External backends register via the
``ideastore.backends`` entry point group.

External backend packages provide a factory function::

    def create_stores(config: StoreConfig) -> StoreBundle:
        ...

and register it in their pyproject.toml::

    [project.entry-points."ideastore.backends"]
    my-backend = "my_package.backend:create_stores"
"""

from pathlib import Path
from typing import NamedTuple

from .config import StoreConfig
from .protocol import RecordStore, VectorIndex


class StoreBundle(NamedTuple):
    """Storage backends returned by the factory."""
    record_store: RecordStore
    vector_index: VectorIndex
    name: str


def create_stores(config: StoreConfig) -> StoreBundle:
    """
    Create storage backends from configuration.

    For other values than ``local`` or ``postgres``, loads the backend via
    the ``ideastore.backends`` entry point group.
    """
    if config.backend == "local":
        return _create_local_stores(config)
    if config.backend == "postgres":
        return _create_postgres_stores(config)
    return _load_backend(config.backend, config)


def _create_local_stores(config: StoreConfig) -> StoreBundle:
    """SQLite records plus a Chroma collection."""
    from .document_store import SqliteRecordStore
    from .store import ChromaVectorIndex, create_chroma_client

    local = config.local
    database = local.database
    if database != ":memory:" and not Path(database).is_absolute():
        database = str(config.path / database)

    chroma_path = local.chroma_path
    if chroma_path and not Path(chroma_path).is_absolute():
        chroma_path = str(config.path / chroma_path)

    client = create_chroma_client(
        path=chroma_path, host=local.chroma_host, port=local.chroma_port,
    )
    return StoreBundle(
        record_store=SqliteRecordStore(database),
        vector_index=ChromaVectorIndex(client, collection_name=config.index.name),
        name="local",
    )


def _create_postgres_stores(config: StoreConfig) -> StoreBundle:
    """One pool shared by the record store and the pgvector index."""
    from .postgres import PgVectorIndex, PostgresConnection, PostgresRecordStore

    pg = config.postgres
    db = PostgresConnection(
        pg.dsn,
        min_size=pg.min_pool_size,
        max_size=pg.max_pool_size,
        timeout=pg.connect_timeout,
    )
    return StoreBundle(
        record_store=PostgresRecordStore(db),
        vector_index=PgVectorIndex(db, index_name=config.index.name),
        name="postgres",
    )


def _load_backend(name: str, config: StoreConfig) -> StoreBundle:
    """Load a backend by entry point name."""
    from importlib.metadata import entry_points

    eps = entry_points(group="ideastore.backends")
    for ep in eps:
        if ep.name == name:
            factory = ep.load()
            return factory(config)

    available = ["local", "postgres"] + [ep.name for ep in eps]
    raise ValueError(f"Unknown backend: {name!r}. Available: {available}")
