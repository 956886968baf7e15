"""Tests for TOML configuration loading, saving and environment overrides."""

import tomllib

import pytest

from ideastore.config import (
    CONFIG_FILENAME,
    CONFIG_VERSION,
    StoreConfig,
    get_config_dir,
    load_config,
    load_or_create_config,
    save_config,
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in (
        "IDEASTORE_BACKEND", "IDEASTORE_DATABASE_URL", "DATABASE_URL",
        "IDEASTORE_EMBEDDING_MODEL", "EMBEDDING_MODEL", "IDEASTORE_CONFIG_DIR",
    ):
        monkeypatch.delenv(name, raising=False)


class TestDefaults:

    def test_creates_file_with_defaults(self, tmp_path):
        config = load_or_create_config(tmp_path)
        assert (tmp_path / CONFIG_FILENAME).exists()
        assert config.backend == "local"
        assert config.local.database == ":memory:"
        assert config.embedding.name == "openai"
        assert config.embedding.params["model"] == "text-embedding-3-small"
        assert config.dimension == 1536
        assert config.index.params.m == 16
        assert config.index.params.ef_construction == 64
        assert config.search.threshold == 0.1
        assert config.search.limit == 10
        assert config.search.list_limit == 50

    def test_round_trip(self, tmp_path):
        config = StoreConfig(path=tmp_path, backend="postgres")
        config.postgres.dsn = "postgresql://db/ideas"
        config.search.threshold = 0.3
        config.index.params.ef_search = 100
        save_config(config)

        loaded = load_config(tmp_path)
        assert loaded.backend == "postgres"
        assert loaded.postgres.dsn == "postgresql://db/ideas"
        assert loaded.search.threshold == 0.3
        assert loaded.index.params.ef_search == 100

    def test_config_dir_from_env(self, tmp_path, monkeypatch):
        monkeypatch.setenv("IDEASTORE_CONFIG_DIR", str(tmp_path))
        assert get_config_dir() == tmp_path.resolve()


class TestSecrets:

    def test_api_key_never_written(self, tmp_path):
        config = StoreConfig(path=tmp_path)
        config.embedding.params["api_key"] = "sk-secret"
        save_config(config)
        text = (tmp_path / CONFIG_FILENAME).read_text()
        assert "sk-secret" not in text
        assert "api_key" not in text


class TestEnvOverrides:

    def test_backend_and_dsn(self, tmp_path, monkeypatch):
        monkeypatch.setenv("IDEASTORE_BACKEND", "postgres")
        monkeypatch.setenv("DATABASE_URL", "postgresql://env/ideas")
        config = load_or_create_config(tmp_path)
        assert config.backend == "postgres"
        assert config.postgres.dsn == "postgresql://env/ideas"

    def test_prefixed_dsn_wins(self, tmp_path, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "postgresql://generic")
        monkeypatch.setenv("IDEASTORE_DATABASE_URL", "postgresql://specific")
        assert load_or_create_config(tmp_path).postgres.dsn == "postgresql://specific"

    def test_embedding_model(self, tmp_path, monkeypatch):
        monkeypatch.setenv("EMBEDDING_MODEL", "text-embedding-3-large")
        config = load_or_create_config(tmp_path)
        assert config.embedding.params["model"] == "text-embedding-3-large"

    def test_overrides_not_persisted(self, tmp_path, monkeypatch):
        load_or_create_config(tmp_path)
        monkeypatch.setenv("IDEASTORE_BACKEND", "postgres")
        load_or_create_config(tmp_path)
        with open(tmp_path / CONFIG_FILENAME, "rb") as f:
            assert tomllib.load(f)["store"]["backend"] == "local"


class TestInvalidConfig:

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path)

    def test_newer_version_rejected(self, tmp_path):
        (tmp_path / CONFIG_FILENAME).write_text(f"[store]\nversion = {CONFIG_VERSION + 1}\n")
        with pytest.raises(ValueError, match="newer"):
            load_config(tmp_path)

    def test_threshold_out_of_range(self, tmp_path):
        (tmp_path / CONFIG_FILENAME).write_text("[search]\nthreshold = 1.5\n")
        with pytest.raises(ValueError, match="threshold"):
            load_config(tmp_path)

    def test_partial_file_uses_defaults(self, tmp_path):
        (tmp_path / CONFIG_FILENAME).write_text('[embedding]\nname = "ollama"\ndimension = 768\n')
        config = load_config(tmp_path)
        assert config.embedding.name == "ollama"
        assert config.dimension == 768
        assert config.backend == "local"
        assert config.search.limit == 10
