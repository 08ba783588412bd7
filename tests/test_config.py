"""
Tests for YAML configuration loading.
"""
import textwrap

import pytest

from pkg.board.config import BoardConfig, ConfigError


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("FOARD_CONFIG", "FOARD_DB", "FOARD_API_SECRET", "FOARD_TEST_TOKEN"):
        monkeypatch.delenv(name, raising=False)


def write_config(tmp_path, text):
    path = tmp_path / "foard.yaml"
    path.write_text(textwrap.dedent(text))
    return str(path)


class TestBoardConfig:

    def test_nested_sections_flattened(self, tmp_path):
        path = write_config(tmp_path, """
            store: memory
            write_attempts: 5
            server:
              host: 0.0.0.0
              port: 8080
            telegram:
              token_env: FOARD_TEST_TOKEN
              chats:
                -1001: board-1
              users:
                42: user-abc
        """)
        cfg = BoardConfig.load(path)
        assert cfg.store == "memory"
        assert cfg.write_attempts == 5
        assert (cfg.host, cfg.port) == ("0.0.0.0", 8080)
        assert cfg.telegram_token_env == "FOARD_TEST_TOKEN"
        assert cfg.telegram_chats == {"-1001": "board-1"}
        assert cfg.telegram_users == {"42": "user-abc"}

    def test_unknown_keys_ignored(self, tmp_path):
        cfg = BoardConfig.load(write_config(tmp_path, "colour: blue\n"))
        assert cfg.store == "sqlite"

    def test_env_overrides(self, tmp_path, monkeypatch):
        monkeypatch.setenv("FOARD_DB", str(tmp_path / "env.db"))
        monkeypatch.setenv("FOARD_API_SECRET", "s3cret")
        cfg = BoardConfig.load(write_config(tmp_path, "db_path: /elsewhere.db\n"))
        assert cfg.db_path == str(tmp_path / "env.db")
        assert cfg.api_secret == "s3cret"

    def test_config_path_from_env(self, tmp_path, monkeypatch):
        monkeypatch.setenv("FOARD_CONFIG", write_config(tmp_path, "invite_ttl_hours: 24\n"))
        assert BoardConfig.load().invite_ttl_hours == 24

    def test_home_expanded(self, tmp_path):
        cfg = BoardConfig.load(write_config(tmp_path, "db_path: ~/boards.db\n"))
        assert not cfg.db_path.startswith("~")

    def test_missing_explicit_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            BoardConfig.load(str(tmp_path / "absent.yaml"))

    def test_invalid_yaml(self, tmp_path):
        with pytest.raises(ConfigError):
            BoardConfig.load(write_config(tmp_path, "store: [unclosed\n"))

    def test_not_a_mapping(self, tmp_path):
        with pytest.raises(ConfigError):
            BoardConfig.load(write_config(tmp_path, "- just\n- a list\n"))

    def test_unknown_store(self, tmp_path):
        with pytest.raises(ConfigError, match="Unknown store"):
            BoardConfig.load(write_config(tmp_path, "store: redis\n"))

    def test_attempts_must_be_positive(self, tmp_path):
        with pytest.raises(ConfigError):
            BoardConfig.load(write_config(tmp_path, "write_attempts: 0\n"))

    def test_bot_token(self, monkeypatch):
        cfg = BoardConfig(telegram_token_env="FOARD_TEST_TOKEN")
        with pytest.raises(ConfigError, match="FOARD_TEST_TOKEN"):
            cfg.bot_token()
        monkeypatch.setenv("FOARD_TEST_TOKEN", "123:abc")
        assert cfg.bot_token() == "123:abc"
