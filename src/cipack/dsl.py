# src/cipack/dsl.py
from __future__ import annotations

import itertools
from dataclasses import replace
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable, List, Optional, Union

from .env import EnvProvider, str_dict
from .model import DEFAULT_CONDITION, ArtifactInput, Backoff, Job, RetryPolicy, Step, Workflow
from .timeouts import Timeout

if TYPE_CHECKING:
    from .executors.base import Executor


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    condition: str = DEFAULT_CONDITION,
    env: Optional[Dict[str, Any]] = None,
    retry: Optional[RetryPolicy] = None,
    timeout: Timeout = None,
    workdir: str | None = None,
) -> Step:
    """Create a shell step."""
    return Step(
        name=name,
        run=cmd,
        condition=condition,
        env=str_dict(env or {}),
        retry=retry,
        timeout=timeout,
        workdir=workdir,
    )


step = sh


def retry(
    max_attempts: int = 3,
    backoff: Union[Backoff, str] = Backoff.EXPONENTIAL,
    min_time: float = 1.0,
    max_time: float = 60.0,
) -> RetryPolicy:
    return RetryPolicy(max_attempts=max_attempts, backoff=backoff, min_time=min_time, max_time=max_time)


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    executor: Optional["Executor"] = None,
    needs: Optional[List[str]] = None,
    condition: str = DEFAULT_CONDITION,
    continue_on_error: bool = False,
    env: Optional[Dict[str, Any]] = None,
    env_from: Optional[List[EnvProvider]] = None,
    inputs: Optional[List[Union[ArtifactInput, str]]] = None,
    outputs: Optional[Dict[str, str]] = None,
    retry: Optional[RetryPolicy] = None,
    timeout: Timeout = None,
    workdir: str | None = None,  # default workdir applied to steps missing one
) -> Job:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise ValueError(f"job({name!r}) must have at least one step")

    if workdir is not None:
        steps_final = [s if s.workdir is not None else replace(s, workdir=workdir) for s in steps_final]

    return Job(
        name=name,
        steps=steps_final,
        executor=executor,
        needs=list(needs or []),
        condition=condition,
        continue_on_error=continue_on_error,
        env=str_dict(env or {}),
        env_from=list(env_from or []),
        inputs=list(inputs or []),
        outputs=dict(outputs or {}),
        retry=retry,
        timeout=timeout,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._needs: list[str] = []
        self._steps: list[Step] = []
        self._inputs: list[ArtifactInput] = []
        self._outputs: dict[str, str] = {}
        self._env: dict[str, str] = {}
        self._env_from: list[EnvProvider] = []
        self._executor: Optional["Executor"] = None
        self._condition: str = DEFAULT_CONDITION
        self._continue_on_error: bool = False
        self._retry: Optional[RetryPolicy] = None
        self._timeout: Timeout = None

    def depends_on(self, *job_names: str):
        self._needs.extend(job_names)
        return self

    def runs_on(self, executor: "Executor"):
        self._executor = executor
        return self

    def when(self, condition: str):
        self._condition = condition
        return self

    def continue_on_error(self, enabled: bool = True):
        self._continue_on_error = enabled
        return self

    def define_step(self, name: str, run: str, **kwargs: Any):
        self._steps.append(sh(name, run, **kwargs))
        return self

    def with_inputs(self, *names: str, path: str = "."):
        self._inputs.extend(ArtifactInput(n, path) for n in names)
        return self

    def with_output(self, name: str, path: str):
        self._outputs[name] = path
        return self

    def with_env(self, **env):
        self._env.update(str_dict(env))
        return self

    def with_env_from(self, *providers: EnvProvider):
        self._env_from.extend(providers)
        return self

    def with_retry(self, policy: RetryPolicy):
        self._retry = policy
        return self

    def with_timeout(self, timeout: Timeout):
        self._timeout = timeout
        return self

    def build(self) -> Job:
        if not self._steps:
            raise ValueError(f"Job '{self.name}' has no steps")

        return Job(
            name=self.name,
            steps=list(self._steps),
            executor=self._executor,
            needs=list(self._needs),
            condition=self._condition,
            continue_on_error=self._continue_on_error,
            env=dict(self._env),
            env_from=list(self._env_from),
            inputs=list(self._inputs),
            outputs=dict(self._outputs),
            retry=self._retry,
            timeout=self._timeout,
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

class Matrix:
    """
    Cartesian product of named dimensions.

    Example:
        matrix(py=["3.11", "3.12"], os=["alpine"]).expand(
            job("test", sh("run", "python$PY -m pytest"))
        )
        # -> test-os-alpine-py-3.11, test-os-alpine-py-3.12, each with
        #    OS and PY set in its env
    """
    def __init__(self, dimensions: Dict[str, Iterable[Any]]):
        if not dimensions:
            raise ValueError("matrix() needs at least one dimension")
        self.dimensions = {k: [str(v) for v in values] for k, values in sorted(dimensions.items())}
        for key, values in self.dimensions.items():
            if not values:
                raise ValueError(f"matrix dimension {key!r} has no values")

    def combinations(self) -> List[Dict[str, str]]:
        keys = list(self.dimensions)
        return [dict(zip(keys, combo)) for combo in itertools.product(*self.dimensions.values())]

    @staticmethod
    def name_for(base: str, values: Dict[str, str]) -> str:
        parts = [base]
        for key in sorted(values):
            parts.extend([key, values[key]])
        return "-".join(parts)

    @staticmethod
    def env_for(values: Dict[str, str]) -> Dict[str, str]:
        return {key.upper(): value for key, value in values.items()}

    def names(self, base: str) -> List[str]:
        """Expanded job names, e.g. for another job's `needs`."""
        return [self.name_for(base, v) for v in self.combinations()]

    def expand(self, template: Job) -> List[Job]:
        jobs = []
        for values in self.combinations():
            jobs.append(replace(
                template,
                name=self.name_for(template.name, values),
                env={**template.env, **self.env_for(values)},
                needs=list(template.needs),
                steps=list(template.steps),
                inputs=list(template.inputs),
                outputs=dict(template.outputs),
            ))
        return jobs

    def jobs(self, builder: Callable[[Dict[str, str]], Job]) -> List[Job]:
        """Build one job per combination; matrix variables are added to each env."""
        out = []
        for values in self.combinations():
            j = builder(values)
            j.env = {**self.env_for(values), **j.env}
            out.append(j)
        return out


def matrix(**dimensions: Iterable[Any]) -> Matrix:
    return Matrix(dimensions)


# ---------------------------------------------------------------------
# Workflow helper (single-file story)
# ---------------------------------------------------------------------

def wf(
    name: str,
    *jobs: Union[Job, List[Job]],
    env: Optional[Dict[str, Any]] = None,
    env_from: Optional[List[EnvProvider]] = None,
    retry: Optional[RetryPolicy] = None,
    timeout: Timeout = None,
) -> Workflow:
    """
    Workflow definition helper. Use this name so you can define your own
    def workflow(): return wf("ci", job(...), job(...)).

    Lists (e.g. from matrix(...).expand(...)) are flattened.

    Users can write:
        from cipack import wf, job, sh

        def workflow():
            return wf(
                "ci",
                job(...),
                job(...),
            )

    Or define WORKFLOW directly:
        WORKFLOW = wf("ci", job(...), job(...))
    """
    flat: List[Job] = []
    for j in jobs:
        if isinstance(j, (list, tuple)):
            flat.extend(j)
        else:
            flat.append(j)
    return Workflow(
        name=name,
        jobs=flat,
        env=str_dict(env or {}),
        env_from=list(env_from or []),
        retry=retry,
        timeout=timeout,
    )


workflow = wf  # alias (avoid naming your function workflow if you use it)
