"""Thin wrapper around the terraform CLI.

Plan never raises for tool failures: it returns a PlanResult so the caller
can report the outcome before deciding to halt. Apply raises ApplyFailure
and is never retried, since provisioning changes need human review before
another attempt.
"""
import os
import re
import shlex
import subprocess
from dataclasses import dataclass
from typing import Callable, Mapping, Optional, Sequence

from pipeline_errors import ApplyFailure

PLAN_FILE = "tfplan"
DEFAULT_TIMEOUT = 1800
TOOL_FAILURE_RC = 1

PLAN_SUMMARY_RE = re.compile(
    r"Plan: (\d+) to add, (\d+) to change, (\d+) to destroy")
APPLY_SUMMARY_RE = re.compile(
    r"(\d+) added, (\d+) changed, (\d+) destroyed")


@dataclass(frozen=True)
class CommandOutcome:
    success: bool
    detail: str

    @property
    def outcome(self) -> str:
        return "success" if self.success else "failure"


@dataclass(frozen=True)
class PlanResult:
    success: bool
    detail: str
    has_changes: bool = False
    to_add: int = 0
    to_change: int = 0
    to_destroy: int = 0

    @property
    def outcome(self) -> str:
        return "success" if self.success else "failure"


@dataclass(frozen=True)
class ApplyResult:
    added: int
    changed: int
    destroyed: int
    detail: str

    @property
    def changes(self) -> int:
        return self.added + self.changed + self.destroyed


def _fmt(args: Sequence[str]) -> str:
    return " ".join(shlex.quote(a) for a in args)


def parse_plan(rc: int, output: str) -> PlanResult:
    """Interpret `terraform plan -detailed-exitcode` (0 clean, 2 changes)."""
    if rc not in (0, 2):
        return PlanResult(success=False, detail=output)
    m = PLAN_SUMMARY_RE.search(output)
    counts = tuple(int(g) for g in m.groups()) if m else (0, 0, 0)
    return PlanResult(success=True, detail=output, has_changes=rc == 2,
                      to_add=counts[0], to_change=counts[1],
                      to_destroy=counts[2])


def parse_apply(output: str) -> ApplyResult:
    m = APPLY_SUMMARY_RE.search(output)
    added, changed, destroyed = (int(g) for g in m.groups()) if m else (0, 0, 0)
    return ApplyResult(added=added, changed=changed, destroyed=destroyed,
                       detail=output)


class Terraform:
    def __init__(self, working_dir, *, env: Optional[Mapping[str, str]] = None,
                 timeout: int = DEFAULT_TIMEOUT,
                 run: Callable[..., subprocess.CompletedProcess] = subprocess.run):
        self.working_dir = str(working_dir)
        self.timeout = timeout
        self._env = dict(env) if env else {}
        self._run = run

    def _merged_env(self) -> Mapping[str, str]:
        merged = os.environ.copy()
        merged["TF_IN_AUTOMATION"] = "1"
        merged.update(self._env)
        return merged

    def _terraform(self, *args):
        """Run terraform; returns (rc, combined output).

        A timeout or a missing binary comes back as a non-zero rc so
        callers report it like any other terraform failure.
        """
        cmd = ["terraform", *args]
        print(f"  $ {_fmt(cmd)}")
        try:
            result = self._run(cmd, cwd=self.working_dir, capture_output=True,
                               text=True, env=self._merged_env(),
                               timeout=self.timeout)
        except subprocess.TimeoutExpired:
            return TOOL_FAILURE_RC, f"terraform {args[0]} timed out after {self.timeout}s"
        except OSError as e:
            return TOOL_FAILURE_RC, f"terraform {args[0]} could not be run: {e}"
        output = (result.stdout or "").strip()
        if result.stderr and result.stderr.strip():
            output = f"{output}\n{result.stderr.strip()}".strip()
        return result.returncode, output

    def init(self) -> CommandOutcome:
        rc, out = self._terraform("init", "-input=false", "-no-color")
        return CommandOutcome(success=rc == 0, detail=out)

    def validate(self) -> CommandOutcome:
        rc, out = self._terraform("validate", "-no-color")
        return CommandOutcome(success=rc == 0, detail=out)

    def plan(self) -> PlanResult:
        rc, out = self._terraform("plan", "-no-color", "-input=false",
                                  "-detailed-exitcode", f"-out={PLAN_FILE}")
        result = parse_plan(rc, out)
        if result.success and not result.has_changes:
            print("  No changes. Infrastructure is up to date.")
        elif result.success:
            print(f"  Plan: {result.to_add} to add, {result.to_change} to change, "
                  f"{result.to_destroy} to destroy")
        return result

    def apply(self, plan: Optional[PlanResult] = None) -> ApplyResult:
        """Apply the saved plan, or a fresh plan when none is given.

        A plan with no changes short-circuits to a zero-change result.
        """
        if plan is not None and not plan.success:
            raise ApplyFailure("Refusing to apply a failed plan", plan.detail)
        if plan is not None and not plan.has_changes:
            print("  Nothing to apply.")
            return ApplyResult(added=0, changed=0, destroyed=0,
                               detail="No changes. Infrastructure is up to date.")
        if plan is not None:
            args = ("apply", "-no-color", "-input=false", PLAN_FILE)
        else:
            args = ("apply", "-no-color", "-input=false", "-auto-approve")
        rc, out = self._terraform(*args)
        if rc != 0:
            raise ApplyFailure(f"terraform apply failed (rc={rc})", out)
        result = parse_apply(out)
        print(f"  Applied: {result.added} added, {result.changed} changed, "
              f"{result.destroyed} destroyed")
        return result

    def output(self, name: str) -> str:
        rc, out = self._terraform("output", "-raw", "-no-color", name)
        if rc != 0:
            raise ApplyFailure(f"terraform output {name} failed (rc={rc})", out)
        return out.strip()
