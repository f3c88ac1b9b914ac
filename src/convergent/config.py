"""Settings from an optional JSON file, overridden by environment variables.

Environment variables follow the pattern ``CONVERGENT_<FIELD>``, for example
``CONVERGENT_MAX_CONCURRENT=20``. GitHub credentials use the conventional
``GITHUB_TOKEN`` and ``GITHUB_REPO``.
"""

import dataclasses
import json
import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from convergent.errors import ConfigurationError
from convergent.models import RunOptions

logger = logging.getLogger(__name__)

ENV_PREFIX = "CONVERGENT_"
_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


@dataclass(frozen=True)
class Settings:
    region: str | None = None
    max_concurrent: int = 10
    timeout: float | None = None
    tolerate_skipped_dependencies: bool = False
    lifecycle_violations_warn_only: bool = False
    log_level: str = "WARNING"
    slack_webhook: str | None = None
    github_token: str | None = None
    github_repo: str | None = None

    def run_options(self, **overrides) -> RunOptions:
        values = {
            "max_workers": self.max_concurrent,
            "timeout": self.timeout,
            "tolerate_skipped_dependencies": self.tolerate_skipped_dependencies,
            "lifecycle_violations_warn_only": self.lifecycle_violations_warn_only,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        try:
            return RunOptions(**values)
        except ValueError as e:
            raise ConfigurationError(str(e)) from e


def _coerce(name: str, kind: type, value):
    if isinstance(value, bool) and kind is not bool:
        raise ConfigurationError(f"Invalid value for {name}: {value!r}")
    if value is None or isinstance(value, kind):
        return value
    if kind is bool:
        text = str(value).strip().lower()
        if text in _TRUE:
            return True
        if text in _FALSE:
            return False
    else:
        try:
            return kind(value)
        except (TypeError, ValueError):
            pass
    raise ConfigurationError(f"Invalid value for {name}: {value!r}")


_TYPES = {
    "region": str,
    "max_concurrent": int,
    "timeout": float,
    "tolerate_skipped_dependencies": bool,
    "lifecycle_violations_warn_only": bool,
    "log_level": str,
    "slack_webhook": str,
    "github_token": str,
    "github_repo": str,
}


def _read_file(path: Path) -> dict:
    try:
        with open(path) as f:
            data = json.load(f)
    except FileNotFoundError:
        raise ConfigurationError(f"Config file not found: {path}") from None
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Invalid config file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"Invalid config file {path}: expected a JSON object")
    unknown = set(data) - set(_TYPES)
    if unknown:
        logger.warning("Ignoring unknown config keys in %s: %s", path, ", ".join(sorted(unknown)))
    return {k: v for k, v in data.items() if k in _TYPES}


def load_settings(
    path: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> Settings:
    """Build Settings from defaults, then ``path``, then the environment."""
    env = os.environ if environ is None else environ
    data: dict = _read_file(Path(path)) if path else {}

    for field in dataclasses.fields(Settings):
        value = env.get(f"{ENV_PREFIX}{field.name.upper()}")
        if value is not None:
            data[field.name] = value
    for field_name, var in (("github_token", "GITHUB_TOKEN"), ("github_repo", "GITHUB_REPO")):
        if env.get(var):
            data.setdefault(field_name, env[var])

    return Settings(**{k: _coerce(k, _TYPES[k], v) for k, v in data.items()})
