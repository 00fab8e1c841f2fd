"""
Planner configuration.

Precedence: defaults < YAML file < environment < explicit overrides (CLI flags).
The configuration object is passed to the planner and backends explicitly;
nothing reads provider settings from global state.
"""
import os
from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, Optional

import yaml

from stackplan.errors import PlanFileError

DEFAULT_CONFIG_FILE = "stackplan.yaml"

_ENV_VARS = {
    "region": ("AWS_REGION", "AWS_DEFAULT_REGION"),
    "profile": ("AWS_PROFILE",),
    "max_workers": ("STACKPLAN_MAX_WORKERS",),
}


@dataclass(frozen=True)
class PlannerConfig:
    region: str = "us-east-1"
    profile: Optional[str] = None
    max_workers: int = 4
    max_attempts: int = 5          # per backend call, transient failures only
    retry_initial: float = 1.0     # seconds
    retry_max: float = 30.0
    stack: Dict[str, Any] = field(default_factory=dict)

    def with_overrides(self, **overrides: Any) -> "PlannerConfig":
        known = {f.name for f in fields(self)}
        clean = {k: v for k, v in overrides.items() if v is not None and k in known}
        return replace(self, **clean)


def _coerce(name: str, value: Any, source: str) -> Any:
    try:
        if name == "max_workers" or name == "max_attempts":
            return int(value)
        if name in ("retry_initial", "retry_max"):
            return float(value)
    except (TypeError, ValueError) as exc:
        raise PlanFileError(source, f"{name} must be a number, got {value!r}") from exc
    return value


def _from_file(path: str) -> Dict[str, Any]:
    try:
        with open(path, "r") as fh:
            data = yaml.safe_load(fh) or {}
    except OSError as exc:
        raise PlanFileError(path, exc.strerror or str(exc)) from exc
    except yaml.YAMLError as exc:
        raise PlanFileError(path, f"invalid YAML: {exc}") from exc
    if not isinstance(data, dict):
        raise PlanFileError(path, "configuration must be a mapping")
    known = {f.name for f in fields(PlannerConfig)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise PlanFileError(path, "unknown configuration keys: " + ", ".join(unknown))
    return {k: _coerce(k, v, path) for k, v in data.items()}


def _from_env() -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for name, env_names in _ENV_VARS.items():
        for env_name in env_names:
            raw = os.getenv(env_name)
            if raw:
                values[name] = _coerce(name, raw, env_name)
                break
    return values


def load_config(path: Optional[str] = None, **overrides: Any) -> PlannerConfig:
    """
    Build a PlannerConfig. When ``path`` is None, ``stackplan.yaml`` in the
    working directory is used if present.
    """
    if path is None and os.path.exists(DEFAULT_CONFIG_FILE):
        path = DEFAULT_CONFIG_FILE

    values: Dict[str, Any] = {}
    if path is not None:
        values.update(_from_file(path))
    values.update(_from_env())

    stack = dict(values.pop("stack", None) or {})
    secret = os.getenv("STACKPLAN_DB_PASSWORD_SECRET")
    if secret:
        stack["db_password_secret"] = secret

    return PlannerConfig(stack=stack, **values).with_overrides(**overrides)
