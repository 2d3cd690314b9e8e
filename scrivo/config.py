"""Configuration file loading and merging for scrivo.

Reads TOML config from ~/.config/scrivo/config.toml (global) and
<base_dir>/scrivo.toml (project). Precedence: CLI > project > global > defaults.
The API key is the exception: CLI > environment > config files.
"""

import argparse
import os
import sys
import tomllib
from pathlib import Path
from typing import Any

from .report import ConfigError

_UNSET = object()  # Sentinel for "not set by CLI"


# --- Schema ---

CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    "provider": str,
    "model": str,
    "api_key": str,
    "base_url": str,
    "max_output_tokens": int,
    "temperature": (int, float),
    "max_rounds": int,
    "system_prompt": str,
    "context_file": str,
    "no_context": bool,
    "sessions_dir": str,
    "command_timeout": int,
    "yolo": bool,
    "color": bool,
    "quiet": bool,
}

PROVIDERS = ("deepseek", "openrouter", "lmstudio")

PROVIDER_ENV_VARS: dict[str, tuple[str, ...]] = {
    "deepseek": ("DEEPSEEK_API_KEY", "DEEPSEEK_TOKEN"),
    "openrouter": ("OPENROUTER_API_KEY",),
    "lmstudio": (),
}

DEFAULT_MODELS: dict[str, str | None] = {
    "deepseek": "deepseek-chat",
    "openrouter": None,
    "lmstudio": None,
}

# Argparse dest -> hardcoded default
_ARGPARSE_DEFAULTS: dict[str, Any] = {
    "provider": "deepseek",
    "model": None,
    "api_key": None,
    "base_url": None,
    "max_output_tokens": 8192,
    "temperature": None,
    "max_rounds": 50,
    "system_prompt": None,
    "context_file": None,
    "no_context": False,
    "sessions_dir": None,
    "command_timeout": 60,
    "yolo": False,
    "color": False,
    "no_color": False,
    "quiet": False,
}

_PATH_KEYS = ("context_file", "sessions_dir")


# --- Internal helpers ---


def global_config_dir() -> Path:
    """Return the global config directory, respecting XDG_CONFIG_HOME."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "scrivo"
    return Path.home() / ".config" / "scrivo"


def _type_name(expected: type | tuple[type, ...]) -> str:
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _validate_config(config: dict, source: str) -> None:
    """Validate types and values in a parsed config dict.

    Raises ConfigError for type mismatches or bad values.
    Prints warnings for unknown keys.
    """
    for key, value in config.items():
        if key not in CONFIG_KEYS:
            print(f"warning: {source}: unknown config key {key!r}", file=sys.stderr)
            continue

        expected = CONFIG_KEYS[key]
        # bool is a subclass of int; reject bools for non-bool fields.
        if isinstance(value, bool) and expected is not bool:
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got bool"
            )
        if not isinstance(value, expected):
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got {type(value).__name__}"
            )

    if "provider" in config and config["provider"] not in PROVIDERS:
        raise ConfigError(
            f"{source}: 'provider' must be one of {', '.join(PROVIDERS)}, "
            f"got {config['provider']!r}"
        )
    for key in ("max_rounds", "max_output_tokens", "command_timeout"):
        if key in config and config[key] < 1:
            raise ConfigError(f"{source}: {key!r} must be at least 1")


def _resolve_paths(config: dict, config_dir: Path) -> None:
    """Resolve relative paths against the config file's directory.

    expanduser() runs first, so ~/... is not treated as relative.
    """
    for key in _PATH_KEYS:
        if key in config:
            p = Path(config[key]).expanduser()
            config[key] = str(p if p.is_absolute() else config_dir / p)


def _check_api_key_in_git(config: dict, config_path: Path) -> None:
    """Warn if api_key is set in a project config inside a git repo."""
    if "api_key" not in config:
        return
    parent = config_path.parent
    while parent != parent.parent:
        if (parent / ".git").exists():
            print(
                f"warning: {config_path}: 'api_key' in a git-tracked project config "
                f"may be committed accidentally. Consider using an environment variable.",
                file=sys.stderr,
            )
            return
        parent = parent.parent


def _load_single(path: Path, label: str) -> dict:
    """Load and validate a single TOML config file. Returns empty dict if missing."""
    if not path.is_file():
        return {}
    try:
        with open(path, "rb") as f:
            config = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{label}: invalid TOML: {e}") from e
    except OSError as e:
        raise ConfigError(f"{label}: cannot read file: {e}") from e

    _validate_config(config, label)
    return {k: v for k, v in config.items() if k in CONFIG_KEYS}


# --- Public API ---


def load_config(base_dir: str | Path) -> dict:
    """Load and merge global + project config.

    Returns a flat dict holding only keys actually set in config files.
    Relative paths are resolved against each file's directory.
    """
    config_dir = global_config_dir()
    global_path = config_dir / "config.toml"
    global_config = _load_single(global_path, str(global_path))
    _resolve_paths(global_config, global_path.parent)

    project_path = Path(base_dir).resolve() / "scrivo.toml"
    project_config = _load_single(project_path, str(project_path))
    if project_config:
        _check_api_key_in_git(project_config, project_path)
        _resolve_paths(project_config, project_path.parent)

    return {**global_config, **project_config}


def apply_config_to_args(args: argparse.Namespace, config: dict) -> None:
    """Fill argparse values the CLI left unset from config, then defaults.

    ``api_key`` is left alone here; see resolve_api_key().
    """

    def _is_unset(dest: str) -> bool:
        return getattr(args, dest, _UNSET) is _UNSET

    # A single config key controls the mutually exclusive --color/--no-color pair
    if "color" in config and _is_unset("color") and _is_unset("no_color"):
        args.color = config["color"]
        args.no_color = not config["color"]

    for key, value in config.items():
        if key in ("color", "api_key"):
            continue
        if _is_unset(key):
            setattr(args, key, value)

    for dest, default in _ARGPARSE_DEFAULTS.items():
        if _is_unset(dest):
            setattr(args, dest, default)


def resolve_api_key(
    provider: str, cli_key: str | None, config: dict, env: dict | None = None
) -> str | None:
    """Find the credential: --api-key, then the provider's env vars, then config.

    Raises ConfigError when a provider that needs a key has none.
    """
    if cli_key:
        return cli_key
    env = os.environ if env is None else env
    env_vars = PROVIDER_ENV_VARS.get(provider, ())
    for var in env_vars:
        if env.get(var):
            return env[var]
    if config.get("api_key"):
        return config["api_key"]
    if not env_vars:
        return None
    raise ConfigError(
        f"no API key for provider {provider!r}: pass --api-key, set "
        f"{' or '.join(env_vars)}, or add api_key to {global_config_dir() / 'config.toml'}"
    )


def generate_config(project: bool = False) -> str:
    """Return a commented-out template config string."""
    lines = [
        "# scrivo configuration file",
        f"# {'Project' if project else 'Global'} config: "
        f"{'<project>/scrivo.toml' if project else '~/.config/scrivo/config.toml'}",
        "#",
        "# CLI flags override these values. Only uncomment what you need.",
        "",
        "# --- Provider / model ---",
        '# provider = "deepseek"          # "deepseek" | "openrouter" | "lmstudio"',
        '# model = "deepseek-chat"',
        '# api_key = "sk-..."             # used only when no env var is set',
        '# base_url = "https://..."',
        "",
        "# --- Generation parameters ---",
        "# max_output_tokens = 8192",
        "# temperature = 0.7",
        "",
        "# --- Agent behaviour ---",
        "# max_rounds = 50",
        '# system_prompt = "You are a helpful assistant."',
        '# context_file = "SCRIVO.md"',
        "# no_context = false",
        '# sessions_dir = ".scrivo/sessions"',
        "# command_timeout = 60",
        "# yolo = false                   # allow file tools outside the base directory",
        "",
        "# --- UI ---",
        "# color = true       # true = force color, false = force no-color, absent = auto",
        "# quiet = false",
        "",
    ]
    return "\n".join(lines)
