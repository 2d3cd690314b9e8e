"""Tests for scrivo.config: TOML config file loading, merging, and CLI integration."""

import argparse
import tomllib

import pytest

from scrivo.config import (
    _UNSET,
    ConfigError,
    apply_config_to_args,
    generate_config,
    global_config_dir,
    load_config,
    resolve_api_key,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _write_toml(path, content):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


def _make_args(**overrides):
    """Build a namespace mimicking build_parser() with _UNSET sentinels."""
    defaults = {
        "provider": _UNSET,
        "model": _UNSET,
        "api_key": _UNSET,
        "base_url": _UNSET,
        "max_output_tokens": _UNSET,
        "temperature": _UNSET,
        "max_rounds": _UNSET,
        "system_prompt": _UNSET,
        "context_file": _UNSET,
        "no_context": _UNSET,
        "sessions_dir": _UNSET,
        "command_timeout": _UNSET,
        "yolo": _UNSET,
        "color": _UNSET,
        "no_color": _UNSET,
        "quiet": _UNSET,
    }
    defaults.update(overrides)
    return argparse.Namespace(**defaults)


@pytest.fixture(autouse=True)
def _isolated_global_config(tmp_path, monkeypatch):
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))


# ===========================================================================
# Config loading
# ===========================================================================


class TestLoadConfig:
    def test_missing_files_returns_empty(self, tmp_path):
        assert load_config(tmp_path) == {}

    def test_global_dir_respects_xdg(self, tmp_path):
        assert global_config_dir() == tmp_path / "xdg" / "scrivo"

    def test_global_only(self, tmp_path):
        _write_toml(tmp_path / "xdg" / "scrivo" / "config.toml", 'provider = "openrouter"\n')
        assert load_config(tmp_path / "project")["provider"] == "openrouter"

    def test_project_overrides_global(self, tmp_path):
        _write_toml(tmp_path / "xdg" / "scrivo" / "config.toml", "max_rounds = 10\nyolo = true\n")
        _write_toml(tmp_path / "project" / "scrivo.toml", "max_rounds = 3\n")
        config = load_config(tmp_path / "project")
        assert config == {"max_rounds": 3, "yolo": True}

    def test_relative_paths_resolved_against_file(self, tmp_path):
        _write_toml(tmp_path / "project" / "scrivo.toml", 'sessions_dir = "state/sessions"\n')
        config = load_config(tmp_path / "project")
        assert config["sessions_dir"] == str(tmp_path.resolve() / "project" / "state" / "sessions")

    def test_invalid_toml(self, tmp_path):
        _write_toml(tmp_path / "scrivo.toml", "max_rounds = \n")
        with pytest.raises(ConfigError, match="invalid TOML"):
            load_config(tmp_path)

    def test_wrong_type(self, tmp_path):
        _write_toml(tmp_path / "scrivo.toml", 'max_rounds = "ten"\n')
        with pytest.raises(ConfigError, match="expected int"):
            load_config(tmp_path)

    def test_bool_is_not_int(self, tmp_path):
        _write_toml(tmp_path / "scrivo.toml", "command_timeout = true\n")
        with pytest.raises(ConfigError, match="got bool"):
            load_config(tmp_path)

    def test_unknown_provider(self, tmp_path):
        _write_toml(tmp_path / "scrivo.toml", 'provider = "acme"\n')
        with pytest.raises(ConfigError, match="provider"):
            load_config(tmp_path)

    def test_non_positive_rounds(self, tmp_path):
        _write_toml(tmp_path / "scrivo.toml", "max_rounds = 0\n")
        with pytest.raises(ConfigError, match="at least 1"):
            load_config(tmp_path)

    def test_unknown_key_warns_and_is_dropped(self, tmp_path, capsys):
        _write_toml(tmp_path / "scrivo.toml", "frobnicate = 1\nmax_rounds = 4\n")
        assert load_config(tmp_path) == {"max_rounds": 4}
        assert "unknown config key 'frobnicate'" in capsys.readouterr().err

    def test_api_key_in_git_project_warns(self, tmp_path, capsys):
        (tmp_path / ".git").mkdir()
        _write_toml(tmp_path / "scrivo.toml", 'api_key = "sk-test"\n')
        load_config(tmp_path)
        assert "git-tracked" in capsys.readouterr().err


# ===========================================================================
# Merging into argparse
# ===========================================================================


class TestApplyConfig:
    def test_cli_wins(self):
        args = _make_args(max_rounds=7)
        apply_config_to_args(args, {"max_rounds": 3})
        assert args.max_rounds == 7

    def test_config_fills_unset(self):
        args = _make_args()
        apply_config_to_args(args, {"model": "deepseek-reasoner"})
        assert args.model == "deepseek-reasoner"

    def test_defaults_fill_the_rest(self):
        args = _make_args()
        apply_config_to_args(args, {})
        assert args.provider == "deepseek"
        assert args.max_rounds == 50
        assert args.command_timeout == 60
        assert args.yolo is False
        assert args.api_key is None

    def test_api_key_not_copied(self):
        args = _make_args()
        apply_config_to_args(args, {"api_key": "sk-config"})
        assert args.api_key is None

    def test_color_false_sets_no_color(self):
        args = _make_args()
        apply_config_to_args(args, {"color": False})
        assert args.color is False
        assert args.no_color is True

    def test_cli_no_color_beats_config_color(self):
        args = _make_args(no_color=True)
        apply_config_to_args(args, {"color": True})
        assert args.no_color is True
        assert args.color is False


# ===========================================================================
# API key resolution
# ===========================================================================


class TestResolveApiKey:
    def test_cli_first(self):
        assert resolve_api_key("deepseek", "sk-cli", {"api_key": "sk-cfg"}, env={"DEEPSEEK_API_KEY": "sk-env"}) == "sk-cli"

    def test_env_before_config(self):
        assert resolve_api_key("deepseek", None, {"api_key": "sk-cfg"}, env={"DEEPSEEK_API_KEY": "sk-env"}) == "sk-env"

    def test_legacy_token_variable(self):
        assert resolve_api_key("deepseek", None, {}, env={"DEEPSEEK_TOKEN": "sk-token"}) == "sk-token"

    def test_config_last(self):
        assert resolve_api_key("openrouter", None, {"api_key": "sk-cfg"}, env={}) == "sk-cfg"

    def test_missing_key_is_config_error(self):
        with pytest.raises(ConfigError, match="DEEPSEEK_API_KEY"):
            resolve_api_key("deepseek", None, {}, env={})

    def test_lmstudio_needs_no_key(self):
        assert resolve_api_key("lmstudio", None, {}, env={}) is None


class TestGenerateConfig:
    def test_template_is_valid_toml(self):
        for project in (False, True):
            assert tomllib.loads(generate_config(project=project)) == {}

    def test_template_mentions_every_section(self):
        text = generate_config()
        for key in ("provider", "max_rounds", "command_timeout", "sessions_dir"):
            assert f"# {key}" in text
