"""Built-in stage actions.

Each action wraps one external collaborator behind the ``run(ctx)``
protocol, so a pipeline is assembled from them like any other stage:

============================ ===============================================
Action                       Collaborator
============================ ===============================================
:class:`CheckoutAction`      source control (``git`` CLI)
:class:`ShellAction`         build / test commands
:class:`ScanAction`          static-analysis scanner CLI (quality gate)
:class:`PublishAction`       :class:`~rollout.release.store.ReleaseStore`
:class:`DeployAction`        :class:`~rollout.deploy.controller.DeploymentController`
:class:`HostAutomationAction` host-automation tool (``ansible-playbook``)
:class:`VerifyAction`        HTTP health endpoint (``httpx``)
============================ ===============================================

Everything an action needs beyond its constructor arguments comes from
the :class:`~rollout.orchestration.context.StageContext`: target, tags,
ref, build number, upstream outputs and credentials. Nothing is read from
the process environment.
"""

from __future__ import annotations

import json
import os
import re
import subprocess
import tempfile
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any

import httpx

from rollout.core.errors import CheckoutError, CommandError, StageFailure
from rollout.core.logging import get_logger
from rollout.deploy.controller import DeploymentController
from rollout.orchestration.context import StageContext
from rollout.orchestration.stage_types import ActionResult
from rollout.release.packaging import package_directory
from rollout.release.store import ReleaseStore

logger = get_logger(__name__)

_UNSAFE_SEGMENT = re.compile(r"[^A-Za-z0-9._\-]+")


def stage_environment(ctx: StageContext, extra: Mapping[str, str] | None = None) -> dict[str, str]:
    """Environment handed to external commands: trigger parameters, variables, then ``extra``."""
    env = {
        "ROLLOUT_RUN_ID": ctx.run_id,
        "ROLLOUT_PIPELINE": ctx.pipeline,
        "ROLLOUT_STAGE": ctx.stage,
        "ROLLOUT_TARGET": ctx.target,
        "ROLLOUT_TAGS": ctx.tags,
        "ROLLOUT_REF": ctx.ref,
    }
    if ctx.build_number is not None:
        env["ROLLOUT_BUILD_NUMBER"] = str(ctx.build_number)
    if ctx.release_id:
        env["ROLLOUT_RELEASE_ID"] = ctx.release_id
    env.update(ctx.variables)
    env.update(extra or {})
    return env


def _workdir(ctx: StageContext, path: str | Path | None = None) -> Path | None:
    """Resolve ``path`` against the checkout (or run workspace)."""
    base = ctx.find_output("workdir") or ctx.workspace
    if path is None:
        return Path(base) if base else None
    path = Path(path)
    if path.is_absolute() or base is None:
        return path
    return Path(base) / path


def _commit(ctx: StageContext) -> str:
    """Commit from an upstream checkout, else the ref made path-safe."""
    commit = ctx.find_output("commit")
    if commit:
        return str(commit)
    return _UNSAFE_SEGMENT.sub("-", ctx.ref).strip("-.") or "unknown"


# =============================================================================
# Source control
# =============================================================================


class CheckoutAction:
    """
    Clone (or update) a repository and check out the trigger's ref.

    Output: ``workdir``, ``commit`` (full sha) and ``short_commit``.
    """

    def __init__(self, repo_url: str, workdir: str | Path | None = None, *, git: str = "git"):
        self.repo_url = repo_url
        self.workdir = Path(workdir) if workdir else None
        self.git = git

    def describe(self) -> str:
        return f"checkout {self.repo_url}"

    def run(self, ctx: StageContext) -> ActionResult:
        if self.workdir is not None:
            dest = self.workdir
        elif ctx.workspace is not None:
            dest = ctx.workspace / "src"
        else:
            dest = Path(ctx.enter(tempfile.TemporaryDirectory(prefix="rollout-src-"))) / "src"

        try:
            if (dest / ".git").is_dir():
                ctx.run_command([self.git, "-C", str(dest), "fetch", "--tags", "--prune", "origin"])
            else:
                dest.parent.mkdir(parents=True, exist_ok=True)
                ctx.run_command([self.git, "clone", self.repo_url, str(dest)])
            ctx.run_command([self.git, "-C", str(dest), "checkout", "--force", ctx.ref])
        except CommandError as e:
            raise CheckoutError(
                f"Checkout of {ctx.ref} from {self.repo_url} failed: {e.message}",
                ref=ctx.ref,
                stage=ctx.stage,
                cause=e,
            ) from e

        proc = subprocess.run(  # noqa: S603
            [self.git, "-C", str(dest), "rev-parse", "HEAD"],
            capture_output=True,
            text=True,
            timeout=30,
        )
        if proc.returncode != 0:
            raise CheckoutError(f"Cannot resolve HEAD in {dest}: {proc.stderr.strip()}", ref=ctx.ref,
                                stage=ctx.stage)
        commit = proc.stdout.strip()
        return ActionResult.ok({"workdir": str(dest), "commit": commit, "short_commit": commit[:12]})


# =============================================================================
# Commands
# =============================================================================


class ShellAction:
    """
    Run a build or test command.

    A string is run through ``/bin/sh -c`` (pipes and ``&&`` work); a list
    is executed directly. The working directory defaults to the checkout.
    """

    def __init__(
        self,
        command: str | Sequence[str],
        *,
        cwd: str | Path | None = None,
        env: Mapping[str, str] | None = None,
    ):
        self.command = command
        self.cwd = cwd
        self.env = dict(env or {})

    def describe(self) -> str:
        return self.command if isinstance(self.command, str) else " ".join(self.command)

    def run(self, ctx: StageContext) -> ActionResult:
        ctx.run_command(
            self.command,
            cwd=_workdir(ctx, self.cwd),
            env=stage_environment(ctx, self.env),
            shell=isinstance(self.command, str),
        )
        return ActionResult.ok(exit_status=0)


class ScanAction:
    """
    Static analysis with a quality gate.

    The scanner's exit status is the gate. A failed gate fails the stage
    when ``blocking``; otherwise the stage succeeds with
    ``gate_passed=False`` so downstream stages still run.
    """

    def __init__(
        self,
        project_key: str,
        source_root: str | Path | None = None,
        *,
        scanner: str = "sonar-scanner",
        blocking: bool = True,
        extra_args: Sequence[str] = (),
        report_url: str | None = None,
        env: Mapping[str, str] | None = None,
    ):
        self.project_key = project_key
        self.source_root = source_root
        self.scanner = scanner
        self.blocking = blocking
        self.extra_args = list(extra_args)
        self.report_url = report_url
        self.env = dict(env or {})

    def describe(self) -> str:
        return f"scan {self.project_key}"

    def argv(self, ctx: StageContext) -> list[str]:
        source = _workdir(ctx, self.source_root) or Path(".")
        argv = [
            self.scanner,
            f"-Dsonar.projectKey={self.project_key}",
            f"-Dsonar.sources={source}",
            "-Dsonar.qualitygate.wait=true",
        ]
        if ctx.build_number is not None:
            argv.append(f"-Dsonar.projectVersion={ctx.build_number}")
        return argv + self.extra_args

    def run(self, ctx: StageContext) -> ActionResult:
        report = (self.report_url or "{project_key}@{build_number}").format(
            project_key=self.project_key, build_number=ctx.build_number, target=ctx.target
        )
        try:
            ctx.run_command(self.argv(ctx), cwd=_workdir(ctx), env=stage_environment(ctx, self.env))
        except CommandError as e:
            if e.exit_status is None:
                raise
            output = {"gate_passed": False, "report": report}
            logger.warning("scan.gate_failed", project_key=self.project_key, blocking=self.blocking,
                           exit_status=e.exit_status)
            if self.blocking:
                return ActionResult.fail(
                    f"Quality gate failed for {self.project_key} (exit status {e.exit_status})",
                    exit_status=e.exit_status,
                    output=output,
                )
            ctx.log(f"quality gate failed (non-blocking), see {report}")
            return ActionResult.ok(output, exit_status=e.exit_status)
        return ActionResult.ok({"gate_passed": True, "report": report})


# =============================================================================
# Releases and deployment
# =============================================================================


class PublishAction:
    """
    Package a build workspace and publish it as a release.

    The release id is ``"<build_number>-<commit>"``; publishing the same
    bytes again (re-run of the same build) returns the existing release.
    """

    def __init__(
        self,
        store: ReleaseStore,
        app: str,
        source_dir: str | Path | None = None,
        *,
        exclude: Sequence[str] | None = None,
    ):
        self.store = store
        self.app = app
        self.source_dir = source_dir
        self.exclude = exclude

    def describe(self) -> str:
        return f"publish {self.app}"

    def run(self, ctx: StageContext) -> ActionResult:
        source = _workdir(ctx, self.source_dir)
        if source is None:
            raise StageFailure("No source directory to package (no checkout and no workspace)", stage=ctx.stage)
        if ctx.build_number is None:
            raise StageFailure("Cannot publish without a build number", stage=ctx.stage)

        scratch = Path(ctx.enter(tempfile.TemporaryDirectory(prefix="rollout-pkg-")))
        archive = scratch / f"{self.app}-{ctx.build_number}.tar.gz"
        options = {"exclude": self.exclude} if self.exclude is not None else {}
        package_directory(source, archive, **options)
        ctx.check_cancelled()

        release = self.store.publish(
            archive,
            app=self.app,
            commit=_commit(ctx),
            build_number=ctx.build_number,
            metadata={"run_id": ctx.run_id, "pipeline": ctx.pipeline, "ref": ctx.ref},
        )
        ctx.log(f"published {release.release_id} ({release.checksum[:12]}, {release.size} bytes)")
        return ActionResult.ok({"release_id": release.release_id, "checksum": release.checksum, "app": release.app})


class DeployAction:
    """
    Deploy the run's release to the trigger's target.

    The release is the explicit ``release_id`` trigger parameter, else the
    ``release_id`` output of an upstream stage (normally publish).
    """

    def __init__(
        self,
        controller: DeploymentController,
        store: ReleaseStore | None = None,
        *,
        target: str | None = None,
    ):
        self.controller = controller
        self.store = store or controller.store
        self.target = target

    def describe(self) -> str:
        return f"deploy to {self.target or '<target>'}"

    def run(self, ctx: StageContext) -> ActionResult:
        release_id = ctx.release_id
        if not release_id:
            raise StageFailure("No release to deploy: set release_id or publish upstream", stage=ctx.stage)
        target = self.target or ctx.target
        release = self.store.get(release_id)

        outcome = self.controller.deploy(release, target)
        ctx.log(f"{outcome.status.value}: {release_id} -> {target} ({', '.join(outcome.hosts)})")
        data = outcome.model_dump(mode="json")
        if not outcome.succeeded:
            return ActionResult.fail(outcome.rollback_error or outcome.error or "Deployment failed", output=data)
        return ActionResult.ok(data)


class HostAutomationAction:
    """
    Run the host-automation tool against an inventory.

    Extra vars ``build_number``, ``commit_hash``, ``release_id``,
    ``target_group`` and ``credentials`` are written to a private
    temporary file and passed as ``--extra-vars @file``; secrets never
    appear on the command line.
    """

    def __init__(
        self,
        inventory: str | Path,
        playbook: str | Path,
        *,
        tool: str = "ansible-playbook",
        extra_args: Sequence[str] = (),
        env: Mapping[str, str] | None = None,
    ):
        self.inventory = inventory
        self.playbook = playbook
        self.tool = tool
        self.extra_args = list(extra_args)
        self.env = dict(env or {})

    def describe(self) -> str:
        return f"{self.tool} {self.playbook}"

    def extra_vars(self, ctx: StageContext) -> dict[str, Any]:
        return {
            **ctx.variables,
            "build_number": ctx.build_number,
            "commit_hash": _commit(ctx),
            "release_id": ctx.release_id,
            "target_group": ctx.target,
            "credentials": ctx.credentials.as_variables(),
        }

    def run(self, ctx: StageContext) -> ActionResult:
        scratch = Path(ctx.enter(tempfile.TemporaryDirectory(prefix="rollout-vars-")))
        vars_file = scratch / "extra-vars.json"
        fd = os.open(vars_file, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(self.extra_vars(ctx), fh)

        argv = [
            self.tool,
            "-i", str(_workdir(ctx, self.inventory)),
            str(_workdir(ctx, self.playbook)),
            "--tags", ctx.tags,
            "--extra-vars", f"@{vars_file}",
            *self.extra_args,
        ]
        ctx.run_command(argv, cwd=_workdir(ctx), env=stage_environment(ctx, self.env))
        return ActionResult.ok({"target_group": ctx.target, "tags": ctx.tags}, exit_status=0)


class VerifyAction:
    """
    HTTP health check after a deployment.

    ``url`` may contain ``{target}`` and ``{release_id}`` placeholders.
    Retries up to ``attempts`` times, ``interval`` seconds apart.
    """

    def __init__(
        self,
        url: str,
        expected_status: int = 200,
        *,
        timeout: float = 10.0,
        attempts: int = 3,
        interval: float = 2.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.url = url
        self.expected_status = expected_status
        self.timeout = timeout
        self.attempts = max(1, attempts)
        self.interval = interval
        self._transport = transport

    def describe(self) -> str:
        return f"verify {self.url}"

    def run(self, ctx: StageContext) -> ActionResult:
        url = self.url.format(target=ctx.target, release_id=ctx.release_id or "")
        last_error = ""
        with httpx.Client(timeout=self.timeout, transport=self._transport, follow_redirects=True) as client:
            for attempt in range(1, self.attempts + 1):
                ctx.check_cancelled()
                try:
                    response = client.get(url)
                except httpx.RequestError as e:
                    last_error = f"{type(e).__name__}: {e}"
                else:
                    ctx.log(f"GET {url} -> {response.status_code}")
                    if response.status_code == self.expected_status:
                        return ActionResult.ok({"url": url, "status_code": response.status_code,
                                                "attempts": attempt})
                    last_error = f"expected HTTP {self.expected_status}, got {response.status_code}"
                if attempt < self.attempts and ctx.wait_cancelled(self.interval):
                    break
        return ActionResult.fail(f"Health check {url} failed: {last_error}", output={"url": url})
