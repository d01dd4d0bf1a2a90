"""
Tests for configuration loading — deken.yml parsing and validation.
"""

import textwrap
from pathlib import Path

import pytest

from deken.core.config.loader import (
    DEFAULT_SEARCH_URL,
    ConfigError,
    DekenConfig,
    default_library_dir,
    find_config_file,
    load_config,
)


@pytest.fixture(autouse=True)
def _no_env_override(monkeypatch):
    monkeypatch.delenv("DEKEN_LIBRARY_DIR", raising=False)


@pytest.fixture
def valid_deken_yml(tmp_path: Path) -> Path:
    """Create a valid deken.yml in a temp directory."""
    content = textwrap.dedent("""\
        search_url: https://mirror.test/search.json
        info_url: https://mirror.test/info.json
        library_dir: ~/pd/Deken
        connect_timeout: 2.5
        float_size: 64
        os_name: Darwin
        arch_aliases: [arm64]
        case_sensitive_search: false
    """)
    path = tmp_path / "deken.yml"
    path.write_text(content)
    return path


class TestLoadConfig:
    def test_valid_file(self, valid_deken_yml: Path):
        config = load_config(valid_deken_yml)
        assert config.search_url == "https://mirror.test/search.json"
        assert config.connect_timeout == 2.5
        assert config.float_size == 64
        assert config.os_name == "Darwin"
        assert config.arch_aliases == ["arm64"]
        assert config.case_sensitive_search is False

    def test_library_dir_expanded(self, valid_deken_yml: Path):
        config = load_config(valid_deken_yml)
        assert config.library_dir == Path.home() / "pd" / "Deken"
        assert config.state_file == config.library_dir / ".pkg_info.json"

    def test_wrapped_under_deken_key(self, tmp_path: Path):
        path = tmp_path / "deken.yml"
        path.write_text("deken:\n  chunk_size: 1024\n")
        assert load_config(path).chunk_size == 1024

    def test_empty_file_means_defaults(self, tmp_path: Path):
        path = tmp_path / "deken.yml"
        path.write_text("")
        config = load_config(path)
        assert config.search_url == DEFAULT_SEARCH_URL
        assert config.library_dir == default_library_dir()

    def test_no_file_means_defaults(self, tmp_path: Path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setattr("deken.core.config.loader.find_config_file", lambda: None)
        config = load_config()
        assert config.connect_timeout == 5.0
        assert config.force_https is True

    def test_explicit_missing_file(self, tmp_path: Path):
        with pytest.raises(ConfigError, match="not found"):
            load_config(tmp_path / "nope.yml")

    def test_invalid_yaml(self, tmp_path: Path):
        path = tmp_path / "deken.yml"
        path.write_text("search_url: [unclosed")
        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_config(path)

    def test_not_a_mapping(self, tmp_path: Path):
        path = tmp_path / "deken.yml"
        path.write_text("- just\n- a list\n")
        with pytest.raises(ConfigError, match="mapping"):
            load_config(path)

    def test_invalid_values(self, tmp_path: Path):
        path = tmp_path / "deken.yml"
        path.write_text("connect_timeout: 0\n")
        with pytest.raises(ConfigError, match="Invalid deken configuration"):
            load_config(path)

    def test_env_overrides_library_dir(self, valid_deken_yml: Path, tmp_path: Path, monkeypatch):
        monkeypatch.setenv("DEKEN_LIBRARY_DIR", str(tmp_path / "override"))
        assert load_config(valid_deken_yml).library_dir == tmp_path / "override"


class TestFindConfigFile:
    def test_in_start_dir(self, valid_deken_yml: Path):
        assert find_config_file(valid_deken_yml.parent) == valid_deken_yml.resolve()

    def test_walks_up(self, valid_deken_yml: Path):
        nested = valid_deken_yml.parent / "a" / "b"
        nested.mkdir(parents=True)
        assert find_config_file(nested) == valid_deken_yml.resolve()


class TestDekenConfig:
    def test_chunk_size_positive(self):
        with pytest.raises(ValueError):
            DekenConfig(chunk_size=0)
