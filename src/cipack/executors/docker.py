# executors/docker.py
from __future__ import annotations

import logging
import re
import shutil
import subprocess
import tempfile
import uuid
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Sequence, Set

from ..artifacts import safe_relpath
from ..env import parse_env_file
from ..errors import ArtifactError, ExecutorError
from ..model import Unit
from .base import ProcessExecutor

if TYPE_CHECKING:
    from ..artifacts import ArtifactStore

log = logging.getLogger(__name__)

CONTAINER_WORKSPACE = "/workspace"

# records the step shell's pid, then becomes the step: sh -c WRAPPER <command> <pidfile>
PID_WRAPPER = 'echo $$ > "$1" && exec sh -c "$0"'
# signals the step's process group, or the bare pid when it leads none
KILL_SCRIPT = 'p=$(cat "$1" 2>/dev/null) && { kill -$0 -- -"$p" 2>/dev/null || kill -$0 "$p"; }'


def _sanitize(s: str) -> str:
    return re.sub(r"[^A-Za-z0-9_.-]+", "-", s).strip("-")


class DockerExecutor(ProcessExecutor):
    """
    Container executor driven through the docker CLI.

    One long-running container per executor name is the workspace; each job
    works in /workspace/jobs/<job> inside it, with its env file at
    /workspace/env/<job>. The job dir is not on the host, so artifacts cross
    the boundary with `docker cp`.

    Killing `docker exec` does not stop the command inside the container, so
    each step records its pid in the container and timeouts and terminate()
    signal it there.
    """

    kind = "docker"

    def __init__(
        self,
        image: str,
        name: str | None = None,
        *,
        docker: str = "docker",
        volumes: List[str] | None = None,
        env: Dict[str, str] | None = None,
        user: str | None = None,
    ):
        super().__init__(name or f"docker-{_sanitize(image)}")
        self.image = image
        self.docker = docker
        self.volumes = list(volumes or [])
        self.env = dict(env or {})
        self.user = user
        self.container: Optional[str] = None
        self._pidfiles: Set[str] = set()

    def config(self) -> Dict[str, Any]:
        return {
            "image": self.image,
            "docker": self.docker,
            "volumes": self.volumes,
            "env": self.env,
            "user": self.user,
        }

    # ---- docker CLI ----

    def _docker(self, *args: str, hook: str, job: str | None = None) -> subprocess.CompletedProcess:
        try:
            proc = subprocess.run(
                [self.docker, *args],
                text=True,
                capture_output=True,
            )
        except FileNotFoundError as e:
            raise ExecutorError(
                self.name, hook, "docker is not available",
                job=job, details={"hint": "Install Docker and ensure the daemon is running."},
            ) from e
        if proc.returncode != 0:
            raise ExecutorError(
                self.name, hook, f"docker {args[0]} failed (exit={proc.returncode})",
                job=job, details={"stderr": (proc.stderr or "").strip()[-2000:]},
            )
        return proc

    def container_name(self) -> str:
        return _sanitize(f"cipack-{self.run_id}-{self.name}")

    def job_dir(self, job_name: str) -> str:
        return f"{CONTAINER_WORKSPACE}/jobs/{job_name}"

    def job_env_file(self, job_name: str) -> str:
        return f"{CONTAINER_WORKSPACE}/env/{job_name}"

    # ---- workspace level ----

    def setup_workspace(self, units: Sequence[Unit]) -> None:
        if self.container is not None:
            return
        if self.run_id is None:
            raise ExecutorError(self.name, "setup_workspace", "executor is not bound to a run")
        self._docker("version", "--format", "{{.Server.Version}}", hook="setup_workspace")

        name = self.container_name()
        # a stale container from an interrupted run with the same id
        subprocess.run([self.docker, "rm", "-f", name], capture_output=True, text=True)

        cmd = ["run", "-d", "--name", name, "-w", CONTAINER_WORKSPACE]
        for vol in self.volumes:
            cmd.extend(["-v", vol])
        for key, value in self.env.items():
            cmd.extend(["-e", f"{key}={value}"])
        if self.user:
            cmd.extend(["--user", self.user])
        cmd.extend([self.image, "sleep", "infinity"])
        self._docker(*cmd, hook="setup_workspace")
        self.container = name
        self._docker(
            "exec", name, "mkdir", "-p",
            f"{CONTAINER_WORKSPACE}/jobs", f"{CONTAINER_WORKSPACE}/env", f"{CONTAINER_WORKSPACE}/pids",
            hook="setup_workspace",
        )
        log.info(
            "container %s started from %s (%d units)", name, self.image, len(units),
            extra={"event": "workspace.created", "executor": self.name, "container": name},
        )

    def cleanup_workspace(self, units: Sequence[Unit]) -> None:
        if self.container is None:
            return
        container, self.container = self.container, None
        if self.keep_workspace:
            self.console.print_info(f"Container preserved: {container}")
            return
        self._docker("rm", "-f", container, hook="cleanup_workspace")
        log.info(
            "container %s removed", container,
            extra={"event": "workspace.removed", "executor": self.name, "container": container},
        )

    # ---- job level ----

    def _require_container(self, hook: str, job_name: str) -> str:
        if self.container is None:
            raise ExecutorError(self.name, hook, "workspace is not set up", job=job_name)
        return self.container

    def setup_job(self, job_name: str, units: Sequence[Unit]) -> None:
        container = self._require_container("setup_job", job_name)
        job_dir = self.job_dir(job_name)
        self._docker(
            "exec", container, "sh", "-c", f"mkdir -p '{job_dir}' && touch '{self.job_env_file(job_name)}'",
            hook="setup_job", job=job_name,
        )

    def cleanup_job(self, job_name: str) -> None:
        # job dirs go away with the container
        pass

    def step_env(self, job_name: str, env: Dict[str, str]) -> Dict[str, str]:
        container = self._require_container("execute_job", job_name)
        job_dir = self.job_dir(job_name)
        out = dict(env)
        proc = subprocess.run(
            [self.docker, "exec", container, "cat", self.job_env_file(job_name)],
            text=True,
            capture_output=True,
        )
        if proc.returncode == 0:
            out.update(parse_env_file(proc.stdout))
        out.update({
            "CIPACK_RUN_ID": self.run_id or "",
            "CIPACK_JOB": job_name,
            "CIPACK_JOB_DIR": job_dir,
            "CIPACK_JOB_ENV": self.job_env_file(job_name),
            "CIPACK_WORKSPACE": CONTAINER_WORKSPACE,
        })
        return out

    def run_unit(self, job_name: str, unit: Unit, env: Mapping[str, str], timeout: Optional[float]) -> int:
        container = self._require_container("execute_job", job_name)
        workdir = str(PurePosixPath(self.job_dir(job_name)) / (unit.step.workdir or "."))
        cmd = [self.docker, "exec", "-w", workdir]
        for key, value in env.items():
            cmd.extend(["-e", f"{key}={value}"])
        pidfile = f"{CONTAINER_WORKSPACE}/pids/{job_name}-{uuid.uuid4().hex[:12]}"
        cmd.extend([container, "sh", "-c", PID_WRAPPER, unit.step.run, pidfile])

        stopped = []

        def on_stop() -> None:
            stopped.append(True)
            self._signal_step(container, pidfile, "TERM")

        with self._lock:
            self._pidfiles.add(pidfile)
        try:
            code = self.run_process(cmd, job_name=job_name, step_name=unit.name, timeout=timeout, on_stop=on_stop)
        finally:
            with self._lock:
                self._pidfiles.discard(pidfile)
        if stopped:
            # the step may have ignored SIGTERM
            self._signal_step(container, pidfile, "KILL")
        return code

    def _signal_step(self, container: str, pidfile: str, signame: str) -> None:
        proc = subprocess.run(
            [self.docker, "exec", container, "sh", "-c", KILL_SCRIPT, signame, pidfile],
            text=True,
            capture_output=True,
        )
        log.debug(
            "SIG%s to step in %s (exit=%d)", signame, container, proc.returncode,
            extra={"event": "step.signalled", "executor": self.name, "container": container, "signal": signame},
        )

    def terminate(self) -> None:
        container = self.container
        with self._lock:
            pidfiles = list(self._pidfiles)
        if container is not None:
            for pidfile in pidfiles:
                self._signal_step(container, pidfile, "TERM")
        super().terminate()
        if container is not None:
            for pidfile in pidfiles:
                self._signal_step(container, pidfile, "KILL")

    # ---- artifacts ----

    def save_artifact(self, name: str, path: str, job_name: str, store: "ArtifactStore") -> None:
        container = self._require_container("save_artifact", job_name)
        try:
            rel = safe_relpath(path, what="artifact path")
        except ValueError as e:
            raise ArtifactError(name, str(e), job=job_name) from e

        staging = Path(tempfile.mkdtemp(prefix=f"cipack-{name}-"))
        try:
            target = staging / rel
            target.parent.mkdir(parents=True, exist_ok=True)
            src = f"{container}:{self.job_dir(job_name)}/{rel}"
            if str(rel) == ".":
                src, target = f"{src}/.", staging
            try:
                self._docker("cp", src, str(target), hook="save_artifact", job=job_name)
            except ExecutorError as e:
                raise ArtifactError(name, f"copy out of container failed: {e.details.get('stderr', e.message)}", job=job_name) from e
            store.save(name, staging, str(rel), job_name=job_name)
        finally:
            shutil.rmtree(staging, ignore_errors=True)

    def restore_artifact(self, name: str, path: str, job_name: str, store: "ArtifactStore") -> None:
        container = self._require_container("restore_artifact", job_name)
        staging = Path(tempfile.mkdtemp(prefix=f"cipack-{name}-"))
        try:
            store.restore(name, staging, ".", job_name=job_name)
            try:
                rel = safe_relpath(path, what="restore path")
            except ValueError as e:
                raise ArtifactError(name, str(e), job=job_name) from e
            dest = f"{self.job_dir(job_name)}/{rel}"
            try:
                self._docker("exec", container, "mkdir", "-p", dest, hook="restore_artifact", job=job_name)
                self._docker("cp", f"{staging}/.", f"{container}:{dest}", hook="restore_artifact", job=job_name)
            except ExecutorError as e:
                raise ArtifactError(name, f"copy into container failed: {e.details.get('stderr', e.message)}", job=job_name) from e
        finally:
            shutil.rmtree(staging, ignore_errors=True)
