# cipack_workflow.py
# Workflow for cipack itself: lint, test on each python, build a wheel, report.
# Run from the repo root with `cipack run`; every job works on its own copy of the checkout.
from __future__ import annotations

from cipack import LocalExecutor, from_file, job, matrix, retry, sh, wf

PYTHONS = matrix(py=["3.10", "3.11", "3.12"])

CHECKOUT = LocalExecutor("checkout", copy_repo=True)


def workflow():
    return wf(
        "cipack",
        # Lint job - ruff over the package and tests
        job(
            "lint",
            sh("Ruff check", "ruff check src tests"),
            sh("Ruff format check", "ruff format --check src tests"),
            executor=CHECKOUT,
            continue_on_error=True,
        ),

        # Test jobs - one per interpreter
        PYTHONS.expand(
            job(
                "test",
                sh("Install package", 'python$PY -m pip install -q -e ".[test]"',
                   retry=retry(3, "exponential", min_time=2, max_time=20)),
                sh("Run pytest", "python$PY -m pytest -q", timeout="10m"),
                executor=CHECKOUT,
            )
        ),

        # Build job - wheel into the job directory, published as an artifact
        job(
            "build",
            sh("Build wheel", "python -m pip wheel --no-deps -w dist .", timeout="5m"),
            executor=CHECKOUT,
            needs=PYTHONS.names("test"),
            outputs={"wheel": "dist"},
        ),

        # Report job - runs even when something upstream failed
        job(
            "report",
            sh("Summary", 'echo "run $CIPACK_RUN_ID finished"', condition="always()"),
            needs=["build"],
            condition="always()",
        ),
        env={"PIP_DISABLE_PIP_VERSION_CHECK": "1"},
        env_from=[from_file(".cipack.env")],
        timeout="30m",
    )
