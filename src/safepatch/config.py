"""
safepatch configuration

Loads config from:
  1. Defaults
  2. Global user config (CLI --config or $SAFEPATCH_HOME/config.json,
     default ~/.safepatch/config.json)
  3. Workspace override (<repo>/.safepatch/config.json)
  4. Environment variables

The global layer is user-scoped (preferred test timeout, backend). The
workspace layer is repo-scoped (the repo's own test command). The current
working directory is never an implicit config source.
"""
from __future__ import annotations

import copy
import json
import os
import shlex
from pathlib import Path
from typing import Optional

from .errors import ConfigError

DEFAULT_CONFIG = {
    # argv list, or a string split with shlex
    "test_cmd": ["python", "-m", "pytest", "-q", "-rfE", "-p", "no:cacheprovider"],
    "test_timeout": 600.0,
    "test_format": "pytest",  # pytest, junit, exit_code
    "junit_path": None,  # required when test_format == "junit"
    "checkpoint_backend": "auto",  # auto, git, snapshot
    "runs_dir": ".safepatch/runs",
    "ignore": [],  # extra glob patterns for the snapshot backend
    "baseline_blobs": True,  # store baseline file content for full reconstruction
}

TEST_FORMATS = ("pytest", "junit", "exit_code")
BACKENDS = ("auto", "git", "snapshot")


def load_config(config_path: Optional[Path] = None, workspace: Optional[Path] = None) -> dict:
    """Load safepatch config.

    ``config_path`` (CLI --config) is treated as the global user layer.
    If absent, $SAFEPATCH_HOME/config.json (or ~/.safepatch/config.json) is used.

    If ``workspace`` is provided, <workspace>/.safepatch/config.json is loaded
    as a workspace-specific override on top of the global layer.

    The returned dict lists the files it was built from under ``_sources``.
    """
    config = copy.deepcopy(DEFAULT_CONFIG)
    sources: list[str] = []

    # NOTE: Under pytest the real user config is never read unless passed explicitly.
    is_pytest = bool(os.environ.get("PYTEST_CURRENT_TEST"))

    home = Path(os.environ["SAFEPATCH_HOME"]) if os.environ.get("SAFEPATCH_HOME") else None
    default_global_path = (home or (Path.home() / ".safepatch")) / "config.json"

    global_path = Path(config_path) if config_path else default_global_path
    if is_pytest and config_path is None and home is None:
        global_path = None
    if config_path is not None and not global_path.exists():
        raise ConfigError(f"Config file {global_path} does not exist", path=str(global_path))
    if global_path is not None and global_path.exists():
        config = _merge(config, _read_json(global_path))
        sources.append(str(global_path))

    if workspace:
        ws_config_path = Path(workspace) / ".safepatch" / "config.json"
        if ws_config_path.exists():
            config = _merge(config, _read_json(ws_config_path))
            sources.append(str(ws_config_path))

    _apply_env_overrides(config)
    validate_config(config)
    config["_sources"] = sources
    return config


def validate_config(config: dict) -> dict:
    """Normalize config values in place; raise ConfigError on bad ones."""
    config["test_cmd"] = split_test_command(config.get("test_cmd"))

    try:
        timeout = float(config.get("test_timeout"))
    except (TypeError, ValueError):
        raise ConfigError(f"test_timeout must be a number, got {config.get('test_timeout')!r}") from None
    if timeout <= 0:
        raise ConfigError(f"test_timeout must be positive, got {timeout}")
    config["test_timeout"] = timeout

    if config.get("test_format") not in TEST_FORMATS:
        raise ConfigError(
            f"test_format must be one of {', '.join(TEST_FORMATS)}, got {config.get('test_format')!r}"
        )
    if config["test_format"] == "junit" and not config.get("junit_path"):
        raise ConfigError("test_format 'junit' requires junit_path")

    if config.get("checkpoint_backend") not in BACKENDS:
        raise ConfigError(
            f"checkpoint_backend must be one of {', '.join(BACKENDS)}, "
            f"got {config.get('checkpoint_backend')!r}"
        )

    ignore = config.get("ignore") or []
    if not isinstance(ignore, list) or not all(isinstance(p, str) for p in ignore):
        raise ConfigError("ignore must be a list of glob patterns")
    config["ignore"] = ignore
    return config


def split_test_command(value) -> list[str]:
    """Turn a configured test command into an argv list."""
    if isinstance(value, str):
        argv = shlex.split(value)
    elif isinstance(value, (list, tuple)) and all(isinstance(v, str) for v in value):
        argv = list(value)
    else:
        raise ConfigError(f"test_cmd must be a string or list of strings, got {value!r}")
    if not argv:
        raise ConfigError("test_cmd is empty")
    return argv


def _read_json(path: Path) -> dict:
    try:
        with open(path) as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        raise ConfigError(f"Could not read {path}: {e}", path=str(path)) from e
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a JSON object", path=str(path))
    return data


def _merge(base: dict, override: dict) -> dict:
    """Deep merge override into base."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _merge(result[key], value)
        else:
            result[key] = value
    return result


def _apply_env_overrides(config: dict) -> None:
    """Apply explicit env var overrides after file/default loading."""
    test_cmd = os.environ.get("SAFEPATCH_TEST_CMD")
    if test_cmd:
        config["test_cmd"] = test_cmd

    timeout = os.environ.get("SAFEPATCH_TEST_TIMEOUT")
    if timeout:
        config["test_timeout"] = timeout

    backend = os.environ.get("SAFEPATCH_CHECKPOINT_BACKEND")
    if backend:
        config["checkpoint_backend"] = backend.strip().lower()


__all__ = ["DEFAULT_CONFIG", "load_config", "validate_config", "split_test_command"]
