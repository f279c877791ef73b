"""Environment variable handling for sync configuration files.

``${VAR}``, ``$VAR`` and ``${VAR:-fallback}`` references in YAML values are
expanded from the process environment, after an optional ``.env`` file has
been loaded with python-dotenv.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, Optional, Union

from dotenv import load_dotenv

__all__ = ["expand_env_vars", "expand_options", "load_env_file"]

# ${VAR}, ${VAR:-fallback} or $VAR
ENV_VAR_PATTERN = re.compile(
    r"\$\{(?P<braced>[A-Za-z_][A-Za-z0-9_]*)(?::-(?P<fallback>[^}]*))?\}"
    r"|\$(?P<bare>[A-Za-z_][A-Za-z0-9_]*)"
)


def load_env_file(
    path: Optional[Union[str, Path]] = None,
    *,
    override: bool = False,
) -> bool:
    """Load environment variables from a .env file.

    Without a path, python-dotenv searches the current directory and its
    parents. Returns True if a file was found and loaded.
    """
    if path is not None and not Path(path).exists():
        raise FileNotFoundError(f"Environment file not found: {path}")
    return load_dotenv(dotenv_path=path, override=override)


def expand_env_vars(value: str, *, strict: bool = False) -> str:
    """Expand environment variable references in a string.

    Unset variables without a fallback are left as written unless
    ``strict`` is set, in which case they raise KeyError.

    >>> os.environ["WAREHOUSE_DIR"] = "/data"
    >>> expand_env_vars("${WAREHOUSE_DIR}/sync.duckdb")
    '/data/sync.duckdb'
    >>> expand_env_vars("${MISSING_DIR:-/tmp}/sync.duckdb")
    '/tmp/sync.duckdb'
    """

    def replacer(match: "re.Match[str]") -> str:
        name = match.group("braced") or match.group("bare")
        env_value = os.environ.get(name)
        if env_value is not None:
            return env_value
        if match.group("fallback") is not None:
            return match.group("fallback")
        if strict:
            raise KeyError(f"Environment variable not set: {name}")
        return match.group(0)

    return ENV_VAR_PATTERN.sub(replacer, value)


def expand_options(options: Any, *, strict: bool = False) -> Any:
    """Recursively expand environment variables in parsed YAML.

    Strings inside nested dicts and lists are expanded; other values are
    returned unchanged.
    """
    if isinstance(options, str):
        return expand_env_vars(options, strict=strict)
    if isinstance(options, dict):
        return {key: expand_options(value, strict=strict) for key, value in options.items()}
    if isinstance(options, list):
        return [expand_options(item, strict=strict) for item in options]
    return options
