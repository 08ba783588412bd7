# Foard — configuration
# Override settings via foard.yaml, FOARD_* environment variables or CLI args.

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

import yaml

CONFIG_PATH = Path(__file__).resolve().parents[2] / "config" / "foard.yaml"

STORE_KINDS = ("sqlite", "memory")


class ConfigError(Exception):
    """Raised when configuration is invalid or incomplete."""
    pass


@dataclass
class BoardConfig:
    """Runtime configuration shared by the HTTP server and the bot."""

    # Storage
    store: str = "sqlite"
    db_path: str = "~/.local/share/foard/foard.db"

    # Behavior: identity and invites
    identity_timeout: float = 8.0
    invite_ttl_hours: int = 72

    # Behavior: writes
    write_attempts: int = 3
    retry_delay: float = 0.2
    transaction_attempts: int = 5

    # HTTP server
    host: str = "0.0.0.0"
    port: int = 5000
    api_secret: str = ""
    log_level: str = "INFO"

    # Telegram
    telegram_token_env: str = "FOARD_BOT_TOKEN"
    telegram_chats: Dict[str, str] = field(default_factory=dict)   # chat id → board id
    telegram_users: Dict[str, str] = field(default_factory=dict)   # Telegram user id → user id

    def resolve_paths(self):
        """Expand ~ in file paths."""
        self.db_path = str(Path(self.db_path).expanduser())

    def validate(self):
        if self.store not in STORE_KINDS:
            raise ConfigError(f"Unknown store '{self.store}'. Allowed: {', '.join(STORE_KINDS)}")
        for name in ("write_attempts", "transaction_attempts", "invite_ttl_hours", "port"):
            if int(getattr(self, name)) < 1:
                raise ConfigError(f"{name} must be at least 1")
        if self.identity_timeout <= 0:
            raise ConfigError("identity_timeout must be positive")
        if self.retry_delay < 0:
            raise ConfigError("retry_delay must not be negative")

    @staticmethod
    def _flatten(data: dict) -> dict:
        """Turn the nested `server:` and `telegram:` sections into field names."""
        flat = {k: v for k, v in data.items() if k not in ("server", "telegram")}
        server = data.get("server") or {}
        for key in ("host", "port", "api_secret"):
            if key in server:
                flat[key] = server[key]
        telegram = data.get("telegram") or {}
        if "token_env" in telegram:
            flat["telegram_token_env"] = telegram["token_env"]
        if "chats" in telegram:
            flat["telegram_chats"] = {str(k): str(v) for k, v in (telegram["chats"] or {}).items()}
        if "users" in telegram:
            flat["telegram_users"] = {str(k): str(v) for k, v in (telegram["users"] or {}).items()}
        return flat

    @classmethod
    def load(cls, path: Optional[str] = None) -> "BoardConfig":
        """Load config from YAML, falling back to defaults when the file is missing."""
        path = path or os.environ.get("FOARD_CONFIG")
        cfg_path = Path(path) if path else CONFIG_PATH
        data = {}
        if cfg_path.exists():
            try:
                with open(cfg_path, "r") as f:
                    data = yaml.safe_load(f) or {}
            except (OSError, yaml.YAMLError) as e:
                raise ConfigError(f"Cannot read config {cfg_path}: {e}") from e
            if not isinstance(data, dict):
                raise ConfigError(f"Config {cfg_path} must be a mapping")
        elif path:
            raise ConfigError(f"Config file not found: {cfg_path}")

        known = cls.__dataclass_fields__
        try:
            cfg = cls(**{k: v for k, v in cls._flatten(data).items() if k in known})
        except TypeError as e:
            raise ConfigError(f"Invalid config {cfg_path}: {e}") from e

        # ── Environment overrides ──
        if os.environ.get("FOARD_DB"):
            cfg.db_path = os.environ["FOARD_DB"]
        if os.environ.get("FOARD_API_SECRET"):
            cfg.api_secret = os.environ["FOARD_API_SECRET"]

        cfg.validate()
        cfg.resolve_paths()
        return cfg

    def bot_token(self) -> str:
        """Read the Telegram token from the environment variable named in config."""
        token = os.environ.get(self.telegram_token_env)
        if not token:
            raise ConfigError(
                f"Environment variable {self.telegram_token_env} is not set.\n"
                f"Set it:  export {self.telegram_token_env}=your_bot_token\n"
                f"Get a token from @BotFather on Telegram."
            )
        return token
