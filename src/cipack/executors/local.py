# executors/local.py
from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Mapping, Optional, Sequence

from .. import settings
from ..env import parse_env_file
from ..errors import ExecutorError
from ..model import Unit
from .base import ProcessExecutor

if TYPE_CHECKING:
    from ..artifacts import ArtifactStore

log = logging.getLogger(__name__)


class LocalExecutor(ProcessExecutor):
    """
    Bare-process executor.

    workspace = <workspace_root>/<run_id>/<executor name>
    job dir   = <workspace>/jobs/<job name>
    job env   = <workspace>/env/<job name>

    Steps run with `sh -c` inside the job dir. A step can hand variables to
    the steps after it by appending KEY=VALUE lines to $CIPACK_JOB_ENV; that
    file sits outside the job dir so outputs never pick it up.

    With copy_repo=True every job dir starts as a copy of `source` (the
    current directory by default), minus the run's own workspace and
    artifact directories.
    """

    kind = "local"

    def __init__(
        self,
        name: str = "local",
        *,
        workspace_root: str | Path | None = None,
        shell: str = "sh",
        copy_repo: bool = False,
        source: str | Path | None = None,
    ):
        super().__init__(name)
        self.workspace_root = Path(workspace_root) if workspace_root else None
        self.shell = shell
        self.copy_repo = copy_repo
        self.source = Path(source) if source else None
        self.workspace: Optional[Path] = None

    def config(self) -> Dict[str, Any]:
        return {
            "workspace_root": self.workspace_root,
            "shell": self.shell,
            "copy_repo": self.copy_repo,
            "source": self.source,
        }

    # ---- workspace level ----

    def setup_workspace(self, units: Sequence[Unit]) -> None:
        if self.workspace is not None:
            return
        if self.run_id is None:
            raise ExecutorError(self.name, "setup_workspace", "executor is not bound to a run")
        root = self.workspace_root or settings.workspace_root()
        workspace = (root / self.run_id / self.name).resolve()
        try:
            (workspace / "jobs").mkdir(parents=True, exist_ok=True)
            (workspace / "env").mkdir(exist_ok=True)
        except OSError as e:
            raise ExecutorError(self.name, "setup_workspace", str(e)) from e
        self.workspace = workspace
        log.info(
            "workspace created: %s (%d units)", workspace, len(units),
            extra={"event": "workspace.created", "executor": self.name, "workspace": str(workspace)},
        )

    def cleanup_workspace(self, units: Sequence[Unit]) -> None:
        if self.workspace is None:
            return
        workspace, self.workspace = self.workspace, None
        if self.keep_workspace:
            self.console.print_info(f"Workspace preserved: {workspace}")
            return
        shutil.rmtree(workspace, ignore_errors=False)
        # drop the run directory once its last executor is gone
        try:
            workspace.parent.rmdir()
        except OSError:
            pass
        log.info(
            "workspace removed: %s", workspace,
            extra={"event": "workspace.removed", "executor": self.name, "workspace": str(workspace)},
        )

    # ---- job level ----

    def job_dir(self, job_name: str) -> Path:
        if self.workspace is None:
            raise ExecutorError(self.name, "setup_job", "workspace is not set up", job=job_name)
        return self.workspace / "jobs" / job_name

    def job_env_file(self, job_name: str) -> Path:
        if self.workspace is None:
            raise ExecutorError(self.name, "setup_job", "workspace is not set up", job=job_name)
        return self.workspace / "env" / job_name

    def _copy_ignore(self) -> Callable[[str, List[str]], List[str]]:
        skip = {(self.workspace_root or settings.workspace_root()).resolve(), self.workspace.parent}
        if self.artifact_root is not None:
            skip.add(Path(self.artifact_root).resolve())

        def ignore(directory: str, names: List[str]) -> List[str]:
            base = Path(directory).resolve()
            return [n for n in names if (base / n) in skip]

        return ignore

    def _copy_source(self, job_name: str, job_dir: Path) -> None:
        source = (self.source or Path.cwd()).resolve()
        if not source.is_dir():
            raise ExecutorError(self.name, "setup_job", f"source directory not found: {source}", job=job_name)
        shutil.copytree(source, job_dir, ignore=self._copy_ignore(), symlinks=True, dirs_exist_ok=True)
        log.debug(
            "copied %s into %s", source, job_dir,
            extra={"event": "job.source_copied", "executor": self.name, "job": job_name},
        )

    def setup_job(self, job_name: str, units: Sequence[Unit]) -> None:
        job_dir = self.job_dir(job_name)
        try:
            job_dir.mkdir(parents=True, exist_ok=True)
            self.job_env_file(job_name).touch()
            if self.copy_repo:
                self._copy_source(job_name, job_dir)
        except (OSError, shutil.Error) as e:
            raise ExecutorError(self.name, "setup_job", str(e), job=job_name) from e

    def cleanup_job(self, job_name: str) -> None:
        # the job dir itself lives until cleanup_workspace
        if self.workspace is None:
            return
        env_file = self.job_env_file(job_name)
        if env_file.exists() and not self.keep_workspace:
            env_file.unlink()

    def step_env(self, job_name: str, env: Dict[str, str]) -> Dict[str, str]:
        job_dir = self.job_dir(job_name)
        env_file = self.job_env_file(job_name)
        out = dict(env)
        if env_file.exists():
            out.update(parse_env_file(env_file.read_text(encoding="utf-8")))
        out.update({
            "CIPACK_RUN_ID": self.run_id or "",
            "CIPACK_JOB": job_name,
            "CIPACK_JOB_DIR": str(job_dir),
            "CIPACK_JOB_ENV": str(env_file),
            "CIPACK_WORKSPACE": str(self.workspace),
        })
        return out

    def run_unit(self, job_name: str, unit: Unit, env: Mapping[str, str], timeout: Optional[float]) -> int:
        cwd = self.job_dir(job_name) / (unit.step.workdir or ".")
        if not cwd.is_dir():
            self.console.print_failure(f"{job_name}/{unit.name}", f"working directory not found: {cwd}")
            return 1
        full_env = os.environ.copy()
        full_env.update(env)
        return self.run_process(
            [self.shell, "-c", unit.step.run],
            job_name=job_name,
            step_name=unit.name,
            timeout=timeout,
            cwd=cwd,
            env=full_env,
        )

    # ---- artifacts ----

    def save_artifact(self, name: str, path: str, job_name: str, store: "ArtifactStore") -> None:
        store.save(name, self.job_dir(job_name), path, job_name=job_name)

    def restore_artifact(self, name: str, path: str, job_name: str, store: "ArtifactStore") -> None:
        store.restore(name, self.job_dir(job_name), path, job_name=job_name)
