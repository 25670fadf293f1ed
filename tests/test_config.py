"""Tests for AppConfig."""

from __future__ import annotations

from pathlib import Path

import pytest

from semindex.config import DB_FILENAME, DEFAULT_MODEL, AppConfig


class TestAppConfig:
    def test_defaults(self) -> None:
        config = AppConfig()
        assert config.model_name == DEFAULT_MODEL
        assert config.data_dir == Path.home() / ".semindex"
        assert config.embed_workers >= 1
        assert "target" in config.skip_dirs
        assert ".git" in config.skip_dirs

    def test_resolve_db_path(self, tmp_path: Path) -> None:
        config = AppConfig(data_dir=tmp_path)
        assert config.resolve_db_path() == tmp_path / DB_FILENAME

    def test_data_dir_expands_user(self) -> None:
        config = AppConfig(data_dir=Path("~/indexes"))
        assert config.data_dir == Path.home() / "indexes"

    @pytest.mark.parametrize("field", ["embed_workers", "queue_size", "batch_size", "max_attempts"])
    def test_rejects_non_positive_sizes(self, field: str) -> None:
        with pytest.raises(ValueError, match=field):
            AppConfig(**{field: 0})

    def test_rejects_non_positive_timeout(self) -> None:
        with pytest.raises(ValueError, match="embed_timeout"):
            AppConfig(embed_timeout=0)


class TestFromEnv:
    def test_reads_environment(self, monkeypatch, tmp_path: Path) -> None:
        monkeypatch.setenv("SEMINDEX_DATA_DIR", str(tmp_path))
        monkeypatch.setenv("SEMINDEX_MODEL", "custom/model")
        monkeypatch.setenv("SEMINDEX_EMBED_WORKERS", "3")
        monkeypatch.setenv("SEMINDEX_EMBED_TIMEOUT", "2.5")

        config = AppConfig.from_env()

        assert config.data_dir == tmp_path
        assert config.model_name == "custom/model"
        assert config.embed_workers == 3
        assert config.embed_timeout == 2.5

    def test_overrides_win(self, monkeypatch, tmp_path: Path) -> None:
        monkeypatch.setenv("SEMINDEX_MODEL", "env/model")
        config = AppConfig.from_env(model_name="arg/model", data_dir=tmp_path)
        assert config.model_name == "arg/model"
        assert config.data_dir == tmp_path

    def test_none_overrides_are_ignored(self, monkeypatch) -> None:
        monkeypatch.setenv("SEMINDEX_MODEL", "env/model")
        config = AppConfig.from_env(model_name=None, data_dir=None)
        assert config.model_name == "env/model"

    def test_invalid_worker_count(self, monkeypatch) -> None:
        monkeypatch.setenv("SEMINDEX_EMBED_WORKERS", "0")
        with pytest.raises(ValueError):
            AppConfig.from_env()
