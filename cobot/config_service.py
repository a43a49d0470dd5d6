from __future__ import annotations

from dataclasses import dataclass, field
import os
from pathlib import Path
import yaml

from .errors import ConfigError

DEFAULT_WINDOW_SIZE = 5
DEFAULT_MAX_IMAGE_SIZE_MB = 5
DEFAULT_LINE_TEMPLATE = "{{ author }}: {{ content }}"


@dataclass
class Config:
    raw: dict


@dataclass(frozen=True)
class CoreSettings:
    """Immutable settings handed to the message pipeline at construction time.

    context_window: 0 = unlimited (capped at 1000), 1 = current message only, N = last N messages.
    """

    guild_id: str | None = None
    channel_id: str | None = None
    allowed_channels: frozenset[str] = field(default_factory=frozenset)
    blacklisted_channels: frozenset[str] = field(default_factory=frozenset)
    reply_to_bot: bool = False
    context_window: int = DEFAULT_WINDOW_SIZE
    line_template: str = DEFAULT_LINE_TEMPLATE
    image_support: bool = True
    max_image_size_mb: int = DEFAULT_MAX_IMAGE_SIZE_MB
    message_char_limit: int = 2000
    typing_interval_seconds: float = 7.0


def _as_bool(value, default: bool) -> bool:
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def _as_int(value, default: int) -> int:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return default


def _as_id_set(value) -> frozenset[str]:
    if not value:
        return frozenset()
    if isinstance(value, str):
        items = value.split(",")
    else:
        items = [str(v) for v in value]
    return frozenset(s.strip() for s in items if s and s.strip())


class ConfigService:
    """config.yaml plus environment overrides.

    Environment variables (usually loaded from .env) take precedence over YAML so that
    secrets and per-deployment ids never have to live in the YAML file.
    """

    def __init__(self, path: str | Path = "config.yaml", env: dict | None = None):
        self._path = Path(path)
        self._env = os.environ if env is None else env
        raw: dict = {}
        if self._path.exists():
            with self._path.open("r", encoding="utf-8") as f:
                loaded = yaml.safe_load(f) or {}
            raw = loaded if isinstance(loaded, dict) else {}
        self._cfg = Config(raw=raw)

    def _section(self, name: str) -> dict:
        v = self._cfg.raw.get(name) or {}
        return v if isinstance(v, dict) else {}

    def _env_or(self, key: str, fallback=None):
        v = self._env.get(key)
        return v if v not in (None, "") else fallback

    # ---------- Discord ----------
    def discord_token(self) -> str | None:
        return self._env_or("DISCORD_TOKEN")

    def guild_id(self) -> str | None:
        v = self._env_or("DISCORD_GUILD_ID", self._section("discord").get("guild_id"))
        return str(v) if v else None

    def channel_id(self) -> str | None:
        v = self._env_or("DISCORD_CHANNEL_ID", self._section("discord").get("channel_id"))
        return str(v) if v else None

    def blacklisted_channels(self) -> frozenset[str]:
        return _as_id_set(self._env_or("BLACKLISTED_CHANNEL_IDS", self._section("discord").get("blacklisted_channels")))

    def allowed_channels(self) -> frozenset[str]:
        return _as_id_set(self._env_or("ALLOWED_CHANNEL_IDS", self._section("discord").get("allowed_channels")))

    def reply_to_bot(self) -> bool:
        return _as_bool(self._env_or("REPLY_TO_BOT", self._section("discord").get("reply_to_bot")), False)

    def message_char_limit(self) -> int:
        return max(1, _as_int(self._section("discord").get("message_char_limit", 2000), 2000))

    # ---------- Context / images ----------
    def window_size(self) -> int:
        v = _as_int(self._env_or("CONTEXT_MESSAGE_COUNT", self._section("context").get("window_size")), DEFAULT_WINDOW_SIZE)
        return v if v >= 0 else DEFAULT_WINDOW_SIZE

    def line_template(self) -> str:
        v = self._section("context").get("line_template")
        return str(v) if isinstance(v, str) and v.strip() else DEFAULT_LINE_TEMPLATE

    def image_support(self) -> bool:
        return _as_bool(self._env_or("IMAGE_SUPPORT", self._section("images").get("enabled")), True)

    def max_image_size_mb(self) -> int:
        v = _as_int(self._env_or("MAX_IMAGE_SIZE_MB", self._section("images").get("max_size_mb")), DEFAULT_MAX_IMAGE_SIZE_MB)
        return v if v > 0 else DEFAULT_MAX_IMAGE_SIZE_MB

    def typing_interval_seconds(self) -> float:
        try:
            v = float(self._cfg.raw.get("typing_interval_seconds", 7.0))
        except (TypeError, ValueError):
            return 7.0
        return v if v > 0 else 7.0

    # ---------- GitHub / Copilot ----------
    def github_token(self) -> str | None:
        return self._env_or("COPILOT_GITHUB_TOKEN", self._section("github").get("token"))

    def copilot(self) -> dict:
        return self._section("copilot")

    # ---------- Logging ----------
    def log_level(self) -> str:
        return str(self._env_or("LOG_LEVEL", self._cfg.raw.get("LOG_LEVEL", "INFO"))).upper()

    def lib_log_level(self) -> str | None:
        v = self._env_or("LIB_LOG_LEVEL", self._cfg.raw.get("LIB_LOG_LEVEL"))
        return str(v).upper() if v else None

    def log_console(self) -> bool:
        return _as_bool(self._cfg.raw.get("LOG_CONSOLE"), False)

    def log_errors(self) -> bool:
        return _as_bool(self._cfg.raw.get("LOG_ERRORS"), False)

    # ---------- Status endpoint ----------
    def http_enabled(self) -> bool:
        return _as_bool(self._section("http").get("enabled"), False)

    def http_host(self) -> str:
        v = self._section("http").get("host")
        return str(v) if v else "127.0.0.1"

    def http_port(self) -> int:
        return _as_int(self._section("http").get("port", 8005), 8005)

    # ---------- Aggregates ----------
    def validate(self) -> None:
        missing = []
        if not self.discord_token():
            missing.append("DISCORD_TOKEN")
        if not self.guild_id():
            missing.append("DISCORD_GUILD_ID")
        if missing:
            raise ConfigError(missing)

    def core_settings(self) -> CoreSettings:
        return CoreSettings(
            guild_id=self.guild_id(),
            channel_id=self.channel_id(),
            allowed_channels=self.allowed_channels(),
            blacklisted_channels=self.blacklisted_channels(),
            reply_to_bot=self.reply_to_bot(),
            context_window=self.window_size(),
            line_template=self.line_template(),
            image_support=self.image_support(),
            max_image_size_mb=self.max_image_size_mb(),
            message_char_limit=self.message_char_limit(),
            typing_interval_seconds=self.typing_interval_seconds(),
        )
