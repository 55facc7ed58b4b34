"""Configuration dataclass for ForumGrabber."""

import json
import os
from dataclasses import dataclass, field, fields
from typing import Optional


ENV_PREFIX = "FORUMGRABBER_"
DEFAULT_CONFIG_FILE = "config.json"


class ConfigError(Exception):
    """Raised when a configuration file exists but cannot be used."""


@dataclass
class ArchiveConfig:
    """Configuration for an archive run."""

    sub_forum_list_file: str = "data/subforum_list.csv"
    topic_index_dir: str = "data/topic_indices"
    topic_index_file_pattern: str = "topic_index_forum_{}.csv"  # {} = sub-forum ID
    politeness_delay: float = 3.0  # Seconds between consecutive requests
    timeout: int = 30
    user_agent: str = "ForumGrabber/1.0"
    archive_root: str = "archive_output"
    state_file_path: str = "archive_progress.json"
    checkpoint_interval: float = 300.0  # Seconds; 0 = after every page
    performance_log_path: str = "logs/performance_log.csv"
    jit_refresh_pages: int = 1  # 0 disables JIT refresh
    jit_refresh_interval: float = 86400.0
    forum_base_url: str = ""
    test_sub_forum_ids: list[str] = field(default_factory=list)
    test_archive_root: str = "test_archive_output"
    verbose: bool = False

    @property
    def jit_enabled(self) -> bool:
        return self.jit_refresh_pages > 0

    @property
    def test_mode(self) -> bool:
        return bool(self.test_sub_forum_ids)

    @property
    def effective_archive_root(self) -> str:
        """Archive root actually written to (redirected in test mode)."""
        return self.test_archive_root if self.test_mode else self.archive_root


def _coerce(name: str, current, raw):
    """Convert a raw JSON/env value to the type of the field's current value."""
    if isinstance(current, bool):
        if isinstance(raw, bool):
            return raw
        text = str(raw).strip().lower()
        if text in ("1", "true", "yes", "on"):
            return True
        if text in ("0", "false", "no", "off"):
            return False
        raise ValueError(f"invalid boolean '{raw}'")
    if isinstance(current, int):
        return int(raw)
    if isinstance(current, float):
        return float(raw)
    if isinstance(current, list):
        if isinstance(raw, list):
            return [str(item).strip() for item in raw if str(item).strip()]
        return [part.strip() for part in str(raw).split(",") if part.strip()]
    return str(raw)


def _apply(config: ArchiveConfig, values: dict, source: str) -> None:
    """Overlay values onto config, keeping the previous value on bad input."""
    known = {f.name for f in fields(config)}
    for name, raw in values.items():
        if name not in known:
            print(f"[WARN] Unknown config key '{name}' in {source}; ignored")
            continue
        current = getattr(config, name)
        try:
            setattr(config, name, _coerce(name, current, raw))
        except (TypeError, ValueError) as e:
            print(f"[WARN] Invalid value for '{name}' in {source}: {e}. Keeping {current!r}")


def load_config_file(config: ArchiveConfig, path: str) -> None:
    """Overlay a JSON config file onto config.

    Raises:
        ConfigError: If the file exists but is not a JSON object.
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigError(f"config file {path} is not valid JSON: {e}") from e
    except OSError as e:
        raise ConfigError(f"cannot read config file {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"config file {path} must contain a JSON object")

    _apply(config, data, path)


def load_env(config: ArchiveConfig, environ: Optional[dict] = None) -> None:
    """Overlay FORUMGRABBER_<FIELD> environment variables onto config."""
    environ = os.environ if environ is None else environ
    values = {}
    for f in fields(config):
        raw = environ.get(ENV_PREFIX + f.name.upper())
        if raw:
            values[f.name] = raw
    _apply(config, values, "environment")


def build_config(
    config_file: Optional[str] = None,
    overrides: Optional[dict] = None,
    environ: Optional[dict] = None,
) -> ArchiveConfig:
    """Build the effective configuration.

    Precedence (lowest to highest): defaults, JSON config file,
    environment variables, explicit overrides (CLI flags).

    Args:
        config_file: Path to a JSON config file. When None, config.json is
            used if it exists in the working directory.
        overrides: Values set explicitly on the command line.
        environ: Environment mapping (defaults to os.environ).

    Returns:
        Populated ArchiveConfig.
    """
    config = ArchiveConfig()

    if config_file is not None:
        load_config_file(config, config_file)
    elif os.path.isfile(DEFAULT_CONFIG_FILE):
        load_config_file(config, DEFAULT_CONFIG_FILE)

    load_env(config, environ)

    if overrides:
        _apply(config, overrides, "command line")

    return config
