"""Idempotent step executor.

Every provisioning step is a ``Step(name, action, check, policy)``.  The
executor asks ``check`` first; when the effect is already in place the step is
recorded as ``skipped`` and ``action`` never runs.  A failing ``check`` counts
as "not in place": probes such as ``zpool list`` exit non-zero precisely when
the resource does not exist yet.

Failures in ``action`` stop the run for ``FATAL`` steps and turn into a
warning for ``BEST_EFFORT`` steps.
"""

from __future__ import annotations

import subprocess
import time
from typing import Iterable

from . import console
from .errors import ProvisionError
from .executil import error_text, trace
from .model import Step, StepOutcome, StepPolicy


def _satisfied(step: Step) -> bool:
    if step.check is None:
        return False
    try:
        return bool(step.check())
    except Exception as exc:  # noqa: BLE001
        trace("steps.check_error", step=step.name, error=repr(exc))
        return False


def _describe(exc: BaseException) -> str:
    if isinstance(exc, subprocess.CalledProcessError):
        return f"{exc.cmd[0] if exc.cmd else 'command'} failed: {error_text(exc)}"
    return str(exc) or exc.__class__.__name__


def execute(step: Step) -> StepOutcome:
    if _satisfied(step):
        trace("steps.skip", step=step.name)
        console.ok(f"{step.name}: already in place")
        return StepOutcome(step.name, "skipped")

    trace("steps.start", step=step.name, policy=step.policy.value)
    started = time.monotonic()
    try:
        step.action()
    except ProvisionError:
        # already labelled; fatal regardless of policy
        trace("steps.failed", step=step.name, dur=time.monotonic() - started)
        raise
    except (subprocess.CalledProcessError, OSError, RuntimeError) as exc:
        why = _describe(exc)
        dur = time.monotonic() - started
        if step.policy is StepPolicy.BEST_EFFORT:
            trace("steps.warned", step=step.name, error=why, dur=dur)
            console.warn(f"{step.name}: {why} (continuing)")
            return StepOutcome(step.name, "warned", dur, why)
        trace("steps.failed", step=step.name, error=why, dur=dur)
        raise ProvisionError(f"{step.name}: {why}", state={"step": step.name}) from exc
    dur = time.monotonic() - started
    trace("steps.done", step=step.name, dur=dur)
    return StepOutcome(step.name, "done", dur)


def run_steps(steps: Iterable[Step]) -> list[StepOutcome]:
    outcomes: list[StepOutcome] = []
    for step in steps:
        outcomes.append(execute(step))
    return outcomes
