# loader.py
from __future__ import annotations

import runpy
from pathlib import Path

from .dsl import wf
from .errors import ValidationError
from .model import Workflow


def load_workflow(path: str | Path) -> Workflow:
    """
    Load a workflow from a python file path.

    The file must define either:
      - workflow() -> Workflow
      - WORKFLOW = Workflow(...)

    Returns:
      Workflow
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")
    if wf_path.suffix != ".py":
        raise ValueError(f"Workflow must be a .py file, got: {wf_path.name}")

    module_name = f"cipack_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    result = None
    fn = globals_dict.get("workflow")
    # `from cipack import workflow` imports the helper, not a definition
    if callable(fn) and fn is not wf:
        try:
            result = fn()
        except TypeError as e:
            if "positional argument" in str(e) and "given" in str(e):
                raise TypeError(
                    "Your workflow() is being called with arguments (name collision with the helper). "
                    "Use the 'wf' helper instead: `from cipack import wf, job, sh` "
                    "then `def workflow(): return wf(\"ci\", job(...), job(...))`"
                ) from e
            raise
    elif "WORKFLOW" in globals_dict:
        result = globals_dict["WORKFLOW"]

    if not isinstance(result, Workflow):
        raise ValidationError(
            f"{wf_path.name} must define workflow() -> Workflow or WORKFLOW = Workflow(...), "
            f"got {type(result).__name__}"
        )
    return result
