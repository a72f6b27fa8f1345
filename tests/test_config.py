"""Tests for configuration loading and backend selection."""

import json
import os

import pytest

from rss_digest.config import Config, default_data_dir, expand_path, get_config_path, load_config
from rss_digest.errors import ConfigError
from rss_digest.storage import MarkdownStore, SQLiteStore


@pytest.fixture
def xdg(tmp_path, monkeypatch):
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "config"))
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "share"))
    return tmp_path


class TestPaths:
    def test_xdg_locations(self, xdg):
        assert get_config_path() == str(xdg / "config" / "digest" / "config.json")
        assert default_data_dir() == str(xdg / "share" / "digest")

    def test_home_fallback(self, tmp_path, monkeypatch):
        monkeypatch.delenv("XDG_CONFIG_HOME", raising=False)
        monkeypatch.delenv("XDG_DATA_HOME", raising=False)
        monkeypatch.setenv("HOME", str(tmp_path))
        assert get_config_path() == str(tmp_path / ".config" / "digest" / "config.json")
        assert default_data_dir() == str(tmp_path / ".local" / "share" / "digest")

    def test_expand_path(self, monkeypatch, tmp_path):
        monkeypatch.setenv("HOME", str(tmp_path))
        assert expand_path("~/digest") == os.path.join(str(tmp_path), "digest")
        assert expand_path("~") == str(tmp_path)
        assert expand_path("/abs/path") == "/abs/path"
        assert expand_path("rel/~x") == "rel/~x"


class TestLoadConfig:
    def test_first_run_defaults_to_markdown_and_saves(self, xdg):
        config = load_config()

        assert config.backend == "markdown"
        saved = json.loads((xdg / "config" / "digest" / "config.json").read_text())
        assert saved == {"backend": "markdown"}

    def test_first_run_keeps_existing_database(self, xdg):
        data_dir = xdg / "share" / "digest"
        data_dir.mkdir(parents=True)
        (data_dir / "digest.db").write_bytes(b"")

        assert load_config().backend == "sqlite"

    def test_reads_existing_file(self, xdg):
        path = xdg / "config" / "digest" / "config.json"
        path.parent.mkdir(parents=True)
        path.write_text(json.dumps({"backend": "sqlite", "data_dir": "/srv/digest"}))

        config = load_config()

        assert config == Config(backend="sqlite", data_dir="/srv/digest")
        assert isinstance(config.open_store(), SQLiteStore)

    def test_unknown_backend(self, xdg):
        path = xdg / "config" / "digest" / "config.json"
        path.parent.mkdir(parents=True)
        path.write_text(json.dumps({"backend": "postgres"}))
        with pytest.raises(ConfigError):
            load_config()

    def test_invalid_json(self, xdg):
        path = xdg / "config" / "digest" / "config.json"
        path.parent.mkdir(parents=True)
        path.write_text("{not json")
        with pytest.raises(ConfigError):
            load_config()

    def test_default_data_dir_used(self, xdg):
        config = Config(backend="markdown")
        store = config.open_store()
        assert isinstance(store, MarkdownStore)
        assert store.data_dir == str(xdg / "share" / "digest")
