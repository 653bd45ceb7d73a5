"""
Explicit execution context for stages.

Nothing a stage needs comes from ambient process state: the target
environment, tag filter, source ref, release identifier, upstream outputs
and credentials all arrive on the :class:`StageContext` handed to the
action. The context also carries the machinery the executor uses to
enforce timeouts and cancellation from the outside:

- a cancellation flag, set by the executor on timeout or by the engine on
  user abort;
- registered subprocesses, killed on cancel;
- scoped resources (``ctx.enter(cm)``), released exactly once on success,
  error, timeout or cancel;
- a bounded output sink that truncates with a marker instead of growing
  without limit.

Example::

    def build(ctx: StageContext) -> dict:
        workdir = ctx.enter(tempfile.TemporaryDirectory())
        ctx.run_command(["make", "build"], cwd=workdir)
        return {"workdir": workdir}
"""

from __future__ import annotations

import os
import re
import shlex
import signal
import subprocess
import threading
from collections.abc import Mapping, Sequence
from contextlib import AbstractContextManager, ExitStack
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, TypeVar

from rollout.core.credentials import NO_CREDENTIALS, Credentials
from rollout.core.errors import CommandError, StageFailure, ValidationError
from rollout.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.\-]*$")

TRUNCATION_MARKER = "\n[... output truncated: {dropped} bytes dropped ...]\n"


# =============================================================================
# Trigger parameters
# =============================================================================


@dataclass(frozen=True)
class TriggerParameters:
    """
    Input parameters of a pipeline invocation.

    Attributes:
        target: Environment / inventory name to deploy to (required)
        ref: Source reference, branch or commit (required)
        tags: Host-automation tag filter (default "all")
        build_number: Build number; assigned by the engine when omitted
        release_id: Pre-built release to deploy (deploy-only pipelines)
        variables: Extra key/value variables passed to stages
    """

    target: str
    ref: str
    tags: str = "all"
    build_number: int | None = None
    release_id: str | None = None
    variables: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self):
        if not isinstance(self.target, str) or not self.target.strip():
            raise ValidationError("target is required", field="target", value=self.target)
        if not _NAME_RE.match(self.target):
            raise ValidationError(f"Invalid target name: {self.target!r}", field="target", value=self.target)
        if not isinstance(self.ref, str) or not self.ref.strip():
            raise ValidationError("ref is required", field="ref", value=self.ref)
        if any(ch.isspace() for ch in self.ref):
            raise ValidationError(f"Invalid source ref: {self.ref!r}", field="ref", value=self.ref)
        if not isinstance(self.tags, str) or not self.tags.strip():
            raise ValidationError("tags must be a non-empty string", field="tags", value=self.tags)
        if self.build_number is not None and (
            isinstance(self.build_number, bool) or not isinstance(self.build_number, int) or self.build_number < 0
        ):
            raise ValidationError("build_number must be a non-negative integer", field="build_number",
                                  value=self.build_number)
        object.__setattr__(self, "variables", MappingProxyType(dict(self.variables)))

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> TriggerParameters:
        """Build from a CLI / webhook payload."""
        if not isinstance(data, Mapping):
            raise ValidationError("Trigger parameters must be a mapping", value=data)
        unknown = set(data) - {"target", "ref", "tags", "build_number", "release_id", "variables"}
        if unknown:
            raise ValidationError(f"Unknown trigger parameters: {sorted(unknown)}", field=sorted(unknown)[0])
        build_number = data.get("build_number")
        if isinstance(build_number, str):
            if not build_number.isdigit():
                raise ValidationError("build_number must be a non-negative integer", field="build_number",
                                      value=build_number)
            build_number = int(build_number)
        variables = data.get("variables") or {}
        if not isinstance(variables, Mapping):
            raise ValidationError("variables must be a mapping", field="variables", value=variables)
        return cls(
            target=data.get("target", ""),
            ref=data.get("ref", ""),
            tags=data.get("tags") or "all",
            build_number=build_number,
            release_id=data.get("release_id"),
            variables={str(k): str(v) for k, v in variables.items()},
        )

    def with_build_number(self, build_number: int) -> TriggerParameters:
        return TriggerParameters(
            target=self.target,
            ref=self.ref,
            tags=self.tags,
            build_number=build_number,
            release_id=self.release_id,
            variables=dict(self.variables),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "target": self.target,
            "ref": self.ref,
            "tags": self.tags,
            "build_number": self.build_number,
            "release_id": self.release_id,
            "variables": dict(self.variables),
        }


# =============================================================================
# Output capture
# =============================================================================


class OutputBuffer:
    """Thread-safe, size-bounded text sink.

    Keeps the first ``limit`` bytes (UTF-8) and counts the rest; the
    truncation marker is appended when the buffer is read.
    """

    def __init__(self, limit: int = 64 * 1024):
        self.limit = limit
        self._chunks: list[str] = []
        self._size = 0
        self._dropped = 0
        self._lock = threading.Lock()

    def write(self, text: str) -> None:
        if not text:
            return
        encoded = text.encode("utf-8", errors="replace")
        with self._lock:
            room = self.limit - self._size
            if room <= 0:
                self._dropped += len(encoded)
                return
            if len(encoded) > room:
                self._chunks.append(encoded[:room].decode("utf-8", errors="ignore"))
                self._dropped += len(encoded) - room
                self._size = self.limit
                return
            self._chunks.append(text)
            self._size += len(encoded)

    @property
    def truncated(self) -> bool:
        return self._dropped > 0

    def getvalue(self) -> str:
        with self._lock:
            text = "".join(self._chunks)
            if self._dropped:
                text += TRUNCATION_MARKER.format(dropped=self._dropped)
            return text


# =============================================================================
# Stage context
# =============================================================================


class StageContext:
    """
    Everything one stage attempt may use.

    Created by the engine per stage execution; the executor owns its
    cancellation and cleanup. Actions treat it as read-only apart from
    :meth:`write`, :meth:`enter` and :meth:`run_command`.
    """

    def __init__(
        self,
        *,
        run_id: str,
        pipeline: str,
        stage: str,
        parameters: TriggerParameters,
        outputs: Mapping[str, Mapping[str, Any]] | None = None,
        credentials: Credentials = NO_CREDENTIALS,
        workspace: Path | None = None,
        max_output_bytes: int = 64 * 1024,
    ):
        self.run_id = run_id
        self.pipeline = pipeline
        self.stage = stage
        self.parameters = parameters
        self.outputs: Mapping[str, Mapping[str, Any]] = MappingProxyType(
            {k: MappingProxyType(dict(v)) for k, v in (outputs or {}).items()}
        )
        self.credentials = credentials
        self.workspace = workspace
        self.buffer = OutputBuffer(max_output_bytes)

        self._cancelled = threading.Event()
        self._cancel_reason: str | None = None
        self._lock = threading.Lock()
        self._processes: set[subprocess.Popen] = set()
        self._resources = ExitStack()
        self._closed = False
        self._aborted = False

    # =========================================================================
    # Accessors
    # =========================================================================

    @property
    def target(self) -> str:
        return self.parameters.target

    @property
    def tags(self) -> str:
        return self.parameters.tags

    @property
    def ref(self) -> str:
        return self.parameters.ref

    @property
    def build_number(self) -> int | None:
        return self.parameters.build_number

    @property
    def variables(self) -> Mapping[str, str]:
        return self.parameters.variables

    @property
    def release_id(self) -> str | None:
        """Explicit release id, else the newest ``release_id`` an upstream stage produced."""
        if self.parameters.release_id:
            return self.parameters.release_id
        return self.find_output("release_id")

    def upstream(self, stage: str, key: str | None = None, default: Any = None) -> Any:
        """Output of an upstream stage (or one key of it)."""
        data = self.outputs.get(stage)
        if data is None:
            return default
        if key is None:
            return data
        return data.get(key, default)

    def find_output(self, key: str, default: Any = None) -> Any:
        """First value for ``key`` across upstream outputs (most recent stage wins)."""
        for data in reversed(list(self.outputs.values())):
            if key in data:
                return data[key]
        return default

    # =========================================================================
    # Output
    # =========================================================================

    def write(self, text: str) -> None:
        """Append text to the captured stage output."""
        self.buffer.write(text)

    def log(self, line: str) -> None:
        self.buffer.write(line if line.endswith("\n") else line + "\n")

    # =========================================================================
    # Cancellation and scoped resources
    # =========================================================================

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def cancel_reason(self) -> str | None:
        return self._cancel_reason

    def wait_cancelled(self, timeout: float | None = None) -> bool:
        """Block until cancelled or ``timeout`` elapses; True if cancelled."""
        return self._cancelled.wait(timeout)

    def check_cancelled(self) -> None:
        """Raise if the stage has been cancelled (for cooperative checkpoints)."""
        if self.cancelled:
            raise StageFailure(
                f"Stage '{self.stage}' cancelled ({self._cancel_reason})",
                stage=self.stage,
                reason=self._cancel_reason or "cancelled",
            )

    def enter(self, cm: AbstractContextManager[T]) -> T:
        """Acquire a resource whose release is guaranteed when the stage ends."""
        with self._lock:
            if self._closed:
                raise StageFailure(f"Stage '{self.stage}' already finished", stage=self.stage,
                                   reason="cancelled")
            return self._resources.enter_context(cm)

    def cancel(self, reason: str = "cancelled") -> None:
        """Cancel the stage: kill registered processes and release resources.

        Any reason other than ``"timeout"`` is an abort: it also prevents
        further retry attempts.
        """
        with self._lock:
            if reason != "timeout":
                self._aborted = True
            if self._cancelled.is_set():
                return
            self._cancel_reason = reason
            self._cancelled.set()
            processes = list(self._processes)
        for proc in processes:
            _kill(proc)
        logger.debug("stage.cancelled", stage=self.stage, reason=reason, killed=len(processes))
        self.close()

    @property
    def aborted(self) -> bool:
        return self._aborted

    def reset_attempt(self) -> bool:
        """Prepare the context for another attempt after a timeout or failure.

        Returns False if the stage was aborted; the context is left cancelled.
        """
        self.close()
        with self._lock:
            if self._aborted:
                return False
            self._cancelled.clear()
            self._cancel_reason = None
            self._resources = ExitStack()
            self._closed = False
            return True

    def close(self) -> None:
        """Release scoped resources (idempotent)."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            resources = self._resources
        try:
            resources.close()
        except Exception as e:  # noqa: BLE001
            logger.warning("stage.resource_release_failed", stage=self.stage, error=str(e))

    # =========================================================================
    # External commands
    # =========================================================================

    def run_command(
        self,
        command: str | Sequence[str],
        *,
        cwd: str | Path | None = None,
        env: Mapping[str, str] | None = None,
        shell: bool = False,
    ) -> int:
        """Run an external command, streaming its output into the stage buffer.

        The process is killed if the stage is cancelled or times out.

        Returns:
            The exit status (always 0; non-zero raises).

        Raises:
            CommandError: If the command exits non-zero or cannot be started.
            StageFailure: If the stage was cancelled while the command ran.
        """
        self.check_cancelled()
        if shell:
            argv = ["/bin/sh", "-c", command if isinstance(command, str) else shlex.join(command)]
        else:
            argv = shlex.split(command) if isinstance(command, str) else list(command)
        merged_env = {**os.environ, **(env or {})}

        self.log(f"$ {shlex.join(argv) if not shell else argv[-1]}")
        try:
            proc = subprocess.Popen(  # noqa: S603
                argv,
                cwd=str(cwd) if cwd else None,
                env=merged_env,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                start_new_session=os.name == "posix",
            )
        except OSError as e:
            raise CommandError(f"Cannot start {argv[0]}: {e}", command=argv, stage=self.stage, cause=e) from e

        with self._lock:
            self._processes.add(proc)
            cancelled = self._cancelled.is_set()
        # cancel() may have run between Popen and registration.
        if cancelled:
            _kill(proc)
        try:
            assert proc.stdout is not None
            for raw in iter(proc.stdout.readline, b""):
                self.buffer.write(raw.decode("utf-8", errors="replace"))
            proc.stdout.close()
            exit_status = proc.wait()
        finally:
            with self._lock:
                self._processes.discard(proc)

        self.check_cancelled()
        if exit_status != 0:
            raise CommandError(
                f"Command {argv[0]!r} exited with status {exit_status}",
                command=argv,
                exit_status=exit_status,
                stage=self.stage,
            )
        return exit_status

    def __repr__(self) -> str:
        return f"StageContext(run_id={self.run_id!r}, stage={self.stage!r}, target={self.target!r})"


def _kill(proc: subprocess.Popen) -> None:
    if proc.poll() is not None:
        return
    try:
        if os.name == "posix":
            os.killpg(proc.pid, signal.SIGKILL)
        else:
            proc.kill()
    except (ProcessLookupError, PermissionError):
        proc.kill()
