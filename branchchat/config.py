"""Configuration settings for branchchat."""

import logging
import os
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler
from typing import Optional

from dotenv import load_dotenv


FULL_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
SHORT_LOG_FORMAT = "%(asctime)s - %(message)s"
LOG_FILE_MAX_BYTES = 10 * 1024 * 1024
LOG_FILE_BACKUPS = 5

# Loggers of HTTP/MCP libraries that are noisy at INFO
THIRD_PARTY_LOGGERS = (
    "httpx",
    "httpcore",
    "openai",
    "mcp",
    "mcp.client",
    "mcp.client.streamable_http",
    "fastmcp",
)

TRUE_VALUES = ("true", "1", "yes", "on")


def _env_bool(name: str, fallback: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return fallback
    return raw.strip().lower() in TRUE_VALUES


def _env_int(name: str, fallback: Optional[int]) -> Optional[int]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return fallback
    try:
        return int(raw)
    except ValueError:
        logging.getLogger(__name__).warning(f"Ignoring non-integer {name}={raw!r}")
        return fallback


def _env_str(name: str, fallback: Optional[str] = None) -> Optional[str]:
    return os.getenv(name) or fallback


@dataclass
class Config:
    """Main configuration for the chat client.

    Every field can be set through the environment variable of the same
    name in upper case (``DB_PATH``, ``REQUEST_LIMIT``, ...).
    """

    # Storage
    db_path: str = "./branchchat.db"

    # Model selection used when a thread has no settings of its own
    default_provider_id: Optional[int] = None
    default_model: Optional[str] = None
    default_system_prompt: Optional[str] = None
    default_context_window: Optional[int] = None
    default_max_tokens: Optional[int] = None
    stream_by_default: bool = True

    # Conversation behaviour
    auto_generate_title: bool = False
    request_limit: int = 50  # provider requests per turn, including tool-loop re-entries

    # Tools
    enable_mcp_tools: bool = True
    log_tool_calls: bool = True

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = "branchchat.log"
    enable_file_logging: bool = True
    log_format: str = FULL_LOG_FORMAT
    cli_log_format: str = SHORT_LOG_FORMAT
    debug_mode: bool = False

    @classmethod
    def from_env(cls, env_file: Optional[str] = ".env") -> "Config":
        """Build a config from the process environment.

        Args:
            env_file: Optional dotenv file loaded first; variables already
                set in the environment take precedence over it.
        """
        if env_file and os.path.exists(env_file):
            load_dotenv(env_file)

        defaults = cls()
        return cls(
            db_path=_env_str("DB_PATH", defaults.db_path),
            default_provider_id=_env_int("DEFAULT_PROVIDER_ID", None),
            default_model=_env_str("DEFAULT_MODEL"),
            default_system_prompt=_env_str("DEFAULT_SYSTEM_PROMPT"),
            default_context_window=_env_int("DEFAULT_CONTEXT_WINDOW", None),
            default_max_tokens=_env_int("DEFAULT_MAX_TOKENS", None),
            stream_by_default=_env_bool("STREAM_BY_DEFAULT", defaults.stream_by_default),
            auto_generate_title=_env_bool("AUTO_GENERATE_TITLE", defaults.auto_generate_title),
            request_limit=_env_int("REQUEST_LIMIT", defaults.request_limit),
            enable_mcp_tools=_env_bool("ENABLE_MCP_TOOLS", defaults.enable_mcp_tools),
            log_tool_calls=_env_bool("LOG_TOOL_CALLS", defaults.log_tool_calls),
            log_level=_env_str("LOG_LEVEL", defaults.log_level),
            log_file=_env_str("LOG_FILE", defaults.log_file),
            enable_file_logging=_env_bool("ENABLE_FILE_LOGGING", defaults.enable_file_logging),
            log_format=_env_str("LOG_FORMAT", defaults.log_format),
            cli_log_format=_env_str("CLI_LOG_FORMAT", defaults.cli_log_format),
            debug_mode=_env_bool("DEBUG_MODE", defaults.debug_mode),
        )

    @classmethod
    def from_env_or_default(cls, env_file: Optional[str] = ".env") -> "Config":
        """Read the environment only when the dotenv file exists."""
        if env_file and os.path.exists(env_file):
            return cls.from_env(env_file)
        return cls()

    def _install_handlers(self, console_format: str) -> None:
        root = logging.getLogger()
        root.setLevel(getattr(logging, self.log_level.upper(), logging.INFO))
        # Re-running setup must not stack handlers
        for handler in list(root.handlers):
            root.removeHandler(handler)

        console = logging.StreamHandler()
        console.setFormatter(logging.Formatter(console_format))
        root.addHandler(console)

        # The log file always gets the full format
        if self.enable_file_logging and self.log_file:
            rotating = RotatingFileHandler(
                self.log_file, maxBytes=LOG_FILE_MAX_BYTES, backupCount=LOG_FILE_BACKUPS
            )
            rotating.setFormatter(logging.Formatter(self.log_format))
            root.addHandler(rotating)

        library_level = logging.DEBUG if self.debug_mode else logging.WARNING
        for name in THIRD_PARTY_LOGGERS:
            logging.getLogger(name).setLevel(library_level)

        log_target = self.log_file if self.enable_file_logging else "None"
        logging.info(
            f"Logging ready - level={self.log_level} debug={self.debug_mode} file={log_target}"
        )

    def setup_logging(self) -> None:
        """Configure the root logger for library and service use."""
        self._install_handlers(self.log_format)

    def setup_cli_logging(self) -> None:
        """Configure the root logger with the shorter CLI console format."""
        self._install_handlers(self.cli_log_format)
