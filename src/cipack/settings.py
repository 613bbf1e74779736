# settings.py
from __future__ import annotations

import os
import re
import tempfile
import time
from pathlib import Path
from typing import Optional

RUN_ID = "CIPACK_RUN_ID"
ARTIFACTS_DIR = "CIPACK_ARTIFACTS_DIR"
KEEP_WORKSPACE = "CIPACK_KEEP_WORKSPACE"
WORKSPACE_ROOT = "CIPACK_WORKSPACE_ROOT"
LOG_FORMAT = "CIPACK_LOG_FORMAT"
MAX_WORKERS = "CIPACK_MAX_WORKERS"

DEFAULT_LOG_FORMAT = "text"

_TRUTHY = {"1", "true", "yes", "on"}


def new_run_id(workflow_name: str) -> str:
    """<workflow>-<unix time>-<pid>, safe to use as a directory name."""
    safe = re.sub(r"[^A-Za-z0-9_.-]+", "-", workflow_name).strip("-") or "workflow"
    return f"{safe}-{int(time.time())}-{os.getpid()}"


def run_id() -> Optional[str]:
    return os.environ.get(RUN_ID) or None


def workspace_root() -> Path:
    root = os.environ.get(WORKSPACE_ROOT)
    return Path(root) if root else Path(tempfile.gettempdir()) / "cipack"


def artifacts_dir(run: str) -> Path:
    configured = os.environ.get(ARTIFACTS_DIR)
    if configured:
        return Path(configured)
    return Path.home() / ".cache" / "cipack" / run / "artifacts"


def keep_workspace() -> bool:
    return os.environ.get(KEEP_WORKSPACE, "").strip().lower() in _TRUTHY


def max_workers() -> Optional[int]:
    raw = os.environ.get(MAX_WORKERS)
    return int(raw) if raw else None
