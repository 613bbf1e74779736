# env.py
"""
Environment resolution.

Precedence, lowest to highest:

    workflow.env < workflow.env_from < job.env < job.env_from < step.env < runtime

"runtime" is the process environment the run was started with: a declared
variable that is already set there keeps its runtime value.
"""
from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional

from .errors import EnvProviderError

log = logging.getLogger(__name__)

_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_LINE_RE = re.compile(r"^\s*(?:export\s+)?([A-Za-z_][A-Za-z0-9_]*)\s*=\s*(.*)$")


def str_dict(d: Mapping) -> Dict[str, str]:
    """Coerce env values to strings (None -> "", bools -> "true"/"false")."""
    result = {}
    for k, v in (d or {}).items():
        if v is None:
            result[str(k)] = ""
        elif isinstance(v, bool):
            result[str(k)] = str(v).lower()
        else:
            result[str(k)] = str(v)
    return result


def parse_env_file(text: str) -> Dict[str, str]:
    """Parse dotenv-style KEY=VALUE lines; blank lines and # comments are ignored."""
    out: Dict[str, str] = {}
    for line in text.splitlines():
        if not line.strip() or line.lstrip().startswith("#"):
            continue
        m = _LINE_RE.match(line)
        if not m:
            continue
        key, value = m.group(1), m.group(2).strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
            value = value[1:-1]
        out[key] = value
    return out


# ----------------------------------------------------------------------
# Providers
# ----------------------------------------------------------------------

class EnvProvider:
    """Produces variables at job start. `env` is what has been resolved so far."""
    name = "provider"

    def provide(self, env: Mapping[str, str]) -> Dict[str, str]:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"


class StaticEnv(EnvProvider):
    name = "static"

    def __init__(self, values: Mapping[str, object]):
        bad = [k for k in values if not _NAME_RE.match(str(k))]
        if bad:
            raise EnvProviderError(self.name, f"invalid variable names: {bad}")
        self.values = str_dict(values)

    def provide(self, env: Mapping[str, str]) -> Dict[str, str]:
        return dict(self.values)


class FileEnv(EnvProvider):
    name = "file"

    def __init__(self, path: str | Path, required: bool = False):
        self.path = Path(path)
        self.required = required

    def provide(self, env: Mapping[str, str]) -> Dict[str, str]:
        if not self.path.is_file():
            if self.required:
                raise EnvProviderError(self.name, f"required env file not found: {self.path}")
            log.debug("env file %s not found, skipping", self.path)
            return {}
        try:
            return parse_env_file(self.path.read_text(encoding="utf-8"))
        except OSError as e:
            raise EnvProviderError(self.name, f"cannot read {self.path}: {e}") from e


class RequiredEnv(EnvProvider):
    """Validation only: fails when any of `names` is unset."""
    name = "required"

    def __init__(self, names: Iterable[str]):
        self.names = list(names)

    def provide(self, env: Mapping[str, str]) -> Dict[str, str]:
        missing = [n for n in self.names if n not in env and n not in os.environ]
        if missing:
            raise EnvProviderError(self.name, f"required variables not set: {', '.join(missing)}")
        return {}


def static(values: Mapping[str, object] | None = None, **kwargs: object) -> StaticEnv:
    return StaticEnv({**(values or {}), **kwargs})


def from_file(path: str | Path, *, required: bool = False) -> FileEnv:
    return FileEnv(path, required=required)


def required(*names: str) -> RequiredEnv:
    return RequiredEnv(names)


# ----------------------------------------------------------------------
# Resolution
# ----------------------------------------------------------------------

def _apply_providers(env: Dict[str, str], providers: List[EnvProvider]) -> None:
    for p in providers:
        values = p.provide(env)
        if values:
            log.debug("env provider %s set %d variable(s)", p.name, len(values))
        env.update(values)


def _runtime_override(env: Dict[str, str], runtime: Mapping[str, str]) -> Dict[str, str]:
    return {k: runtime.get(k, v) for k, v in env.items()}


def resolve_job_env(
    workflow_env: Mapping[str, object],
    workflow_providers: List[EnvProvider],
    job_env: Mapping[str, object],
    job_providers: List[EnvProvider],
    runtime: Optional[Mapping[str, str]] = None,
) -> Dict[str, str]:
    """Resolve the variables a job exports to all of its steps."""
    runtime = os.environ if runtime is None else runtime
    env: Dict[str, str] = {}
    env.update(str_dict(workflow_env))
    _apply_providers(env, list(workflow_providers))
    env.update(str_dict(job_env))
    _apply_providers(env, list(job_providers))
    return _runtime_override(env, runtime)


def resolve_step_env(
    job_env: Mapping[str, str],
    step_env: Mapping[str, object],
    runtime: Optional[Mapping[str, str]] = None,
) -> Dict[str, str]:
    runtime = os.environ if runtime is None else runtime
    env = dict(job_env)
    env.update(str_dict(step_env))
    return _runtime_override(env, runtime)
