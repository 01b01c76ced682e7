"""
Config loader for chatdesk.
Reads config.yaml once at startup. All other modules import from here.
${ENV_VAR} placeholders are resolved from the environment (and .env).
"""

import copy
import os
import re
from pathlib import Path

import yaml
from dotenv import load_dotenv

load_dotenv()

_CONFIG_PATH = Path(os.environ.get(
    "CHATDESK_CONFIG",
    Path(__file__).parent.parent / "config.yaml",
))

_config: dict | None = None

DEFAULTS: dict = {
    "server": {
        "host": "0.0.0.0",
        "port": 5001,
    },
    "provider": {
        "name": "openrouter",
        "url": "https://openrouter.ai/api/v1",
        "api_key": "",
        "default_model": "amazon/nova-2-lite-v1:free",
        "title_model": "",
        "timeout": 120,
        "referer": "",
        "app_title": "chatdesk",
    },
    "storage": {
        "sqlite_path": "./data/chatdesk.db",
    },
    "chat": {
        "max_context_messages": 100,
        "max_message_chars": 100_000,
        "default_title": "New chat",
        "title_max_chars": 50,
        "title_fallback_chars": 30,
        "reject_concurrent_turns": True,
        "system_prompt": (
            "You are a helpful, professional assistant. Answer clearly and concisely, "
            "in the language the user writes in. Markdown is allowed for formatting."
        ),
        "demo_system_prompt": (
            "You are a helpful assistant in a public demo. Keep answers short and useful."
        ),
    },
    "auth": {
        "session_secret": "",
        "session_max_age": 30 * 24 * 60 * 60,
        "dev_login": False,
        "https_only": False,
    },
    "logging": {
        "level": "INFO",
        "file": "",
    },
}


def _resolve_env_vars(value: str) -> str:
    """Replace ${ENV_VAR} patterns with actual environment variable values."""
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, "")
    return re.sub(r"\$\{(\w+)\}", replacer, value)


def _walk_and_resolve(obj):
    """Recursively resolve env vars in all string values."""
    if isinstance(obj, dict):
        return {k: _walk_and_resolve(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_walk_and_resolve(v) for v in obj]
    elif isinstance(obj, str):
        return _resolve_env_vars(obj)
    return obj


def load_config(path: Path | None = None) -> dict:
    """Load and cache config from YAML file."""
    global _config
    if _config is not None:
        return _config

    config_path = path or _CONFIG_PATH
    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    _config = _walk_and_resolve(raw)
    return _config


def get_config() -> dict:
    """Return cached base config, loading if necessary."""
    if _config is None:
        return load_config()
    return _config


def get_section(name: str, cfg: dict | None = None) -> dict:
    """
    Return one config section merged over the built-in defaults.
    Keys missing from config.yaml fall back to DEFAULTS[name].
    """
    cfg = cfg if cfg is not None else get_config()
    merged = copy.deepcopy(DEFAULTS.get(name, {}))
    merged.update(cfg.get(name) or {})
    return merged
