# artifacts.py
from __future__ import annotations

import json
import logging
import shutil
import time
import uuid
from pathlib import Path, PurePosixPath
from typing import Dict, Iterable, List, Optional

from .errors import ArtifactError

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------
# Layout
# ---------------------------------------------------------------------
#   root/
#     <name>/<relative path as saved>     artifact tree
#     .manifests/<name>.json              what was saved, by whom, when
#
# A save copies into a temp dir next to the tree and renames it into place,
# so a reader never sees a half-written artifact.
# ---------------------------------------------------------------------

MANIFEST_DIR = ".manifests"


def safe_relpath(path: str, *, what: str = "path") -> PurePosixPath:
    """
    Normalize a job-relative path and reject anything that escapes its root.
    "." (or "") means the root itself.
    """
    p = PurePosixPath(str(path).strip() or ".")
    if p.is_absolute() or ".." in p.parts:
        raise ValueError(f"{what} must be relative and stay inside the job directory: {path!r}")
    return p


def check_artifact_name(name: str) -> None:
    if not name or name.startswith(".") or "/" in name or "\\" in name:
        raise ValueError(f"Invalid artifact name: {name!r}")


def _iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file():
            yield p


def _copy(src: Path, dst: Path) -> None:
    if src.is_dir():
        shutil.copytree(src, dst, symlinks=True, dirs_exist_ok=True)
    else:
        dst.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(src, dst)


class ArtifactStore:
    """Host-resident artifact tree shared by all jobs of one run."""

    def __init__(self, root: str | Path):
        self.root = Path(root).expanduser().resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def path(self, name: str) -> Path:
        try:
            check_artifact_name(name)
        except ValueError as e:
            raise ArtifactError(name, str(e)) from e
        return self.root / name

    def manifest_path(self, name: str) -> Path:
        return self.root / MANIFEST_DIR / f"{name}.json"

    def exists(self, name: str) -> bool:
        return self.path(name).is_dir()

    def names(self) -> List[str]:
        return sorted(p.name for p in self.root.iterdir() if p.is_dir() and not p.name.startswith("."))

    def manifest(self, name: str) -> Dict:
        man = self.manifest_path(name)
        if not man.exists():
            raise ArtifactError(name, "no manifest (artifact was never saved)")
        return json.loads(man.read_text(encoding="utf-8"))

    def save(self, name: str, source_root: str | Path, rel_path: str, job_name: Optional[str] = None) -> Dict:
        """
        Copy `rel_path` (relative to `source_root`) into the artifact `name`.

        The relative path is preserved inside the artifact, so saving "out/"
        stores `<root>/<name>/out/...`. A previous save under the same name
        is replaced.
        """
        final = self.path(name)
        try:
            rel = safe_relpath(rel_path, what="artifact path")
        except ValueError as e:
            raise ArtifactError(name, str(e), job=job_name) from e

        src = Path(source_root) / rel
        if not src.exists():
            raise ArtifactError(name, f"path not found: {rel_path}", job=job_name)

        tmp = self.root / f".{name}.tmp-{uuid.uuid4().hex[:8]}"
        try:
            tmp.mkdir(parents=True)
            _copy(src, tmp / rel if str(rel) != "." else tmp)
            if final.exists():
                shutil.rmtree(final)
            tmp.rename(final)
        except OSError as e:
            raise ArtifactError(name, f"save failed: {e}", job=job_name) from e
        finally:
            if tmp.exists():
                shutil.rmtree(tmp, ignore_errors=True)

        files = [str(f.relative_to(final)) for f in _iter_files_under(final)]
        manifest = {
            "name": name,
            "job": job_name,
            "path": str(rel),
            "saved_at_unix": int(time.time()),
            "files": files,
            "size": sum((final / f).stat().st_size for f in files),
        }
        man = self.manifest_path(name)
        man.parent.mkdir(parents=True, exist_ok=True)
        man.write_text(json.dumps(manifest, sort_keys=True, indent=2), encoding="utf-8")

        log.info(
            "saved artifact %s (%d files)", name, len(files),
            extra={"event": "artifact.saved", "artifact": name, "job": job_name, "path": str(rel)},
        )
        return manifest

    def restore(
        self,
        name: str,
        target_root: str | Path,
        target_path: str = ".",
        job_name: Optional[str] = None,
    ) -> Path:
        """
        Copy the stored tree of `name` under `target_root/target_path`.

        Unknown names are an error, never a silent no-op.
        """
        src = self.path(name)
        if not src.is_dir():
            known = ", ".join(self.names()) or "none"
            raise ArtifactError(name, f"not found (saved artifacts: {known})", job=job_name)
        try:
            rel = safe_relpath(target_path, what="restore path")
        except ValueError as e:
            raise ArtifactError(name, str(e), job=job_name) from e

        dest = Path(target_root) / rel
        try:
            dest.mkdir(parents=True, exist_ok=True)
            shutil.copytree(src, dest, symlinks=True, dirs_exist_ok=True)
        except OSError as e:
            raise ArtifactError(name, f"restore failed: {e}", job=job_name) from e

        log.info(
            "restored artifact %s -> %s", name, rel,
            extra={"event": "artifact.restored", "artifact": name, "job": job_name, "path": str(rel)},
        )
        return dest
