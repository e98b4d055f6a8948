"""Command execution seam between mcpctl and external processes.

Every interaction with Docker or a provisioning script goes through a
:class:`CommandRunner`. The production implementation, :class:`SubprocessRunner`,
spawns the process with an argv list (never a shell string), closes stdin so
nothing can prompt, and enforces a per-stream output cap. Tests substitute a
runner that returns canned :class:`CommandResult` objects.

A non-zero exit status is a normal result. Only a failure to start the process
(:class:`LaunchError`) or an overflowing output stream
(:class:`OutputLimitExceeded`) raises.
"""
from __future__ import annotations

import os
import subprocess
import threading
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Protocol

DEFAULT_MAX_OUTPUT_BYTES = 1024 * 1024
_CHUNK_SIZE = 65536


class LaunchError(RuntimeError):
    """Raised when a command cannot be started."""


class OutputLimitExceeded(LaunchError):
    """Raised when a command writes more output than its cap allows."""


class NonZeroExitError(RuntimeError):
    """Raised by :meth:`CommandResult.check` for failed commands."""

    def __init__(self, result: CommandResult, message: str | None = None) -> None:
        """Store the failing *result*."""
        self.result = result
        super().__init__(message or result.summary())


@dataclass(frozen=True, slots=True)
class CommandSpec:
    """Description of a command to execute."""

    argv: tuple[str, ...]
    cwd: Path | None = None
    env: Mapping[str, str] | None = None
    max_output_bytes: int | None = None

    def __post_init__(self) -> None:
        """Normalise argv to a tuple of strings."""
        argv = tuple(str(item) for item in self.argv)
        if not argv or not argv[0]:
            raise ValueError("Command argv must contain at least the executable.")
        object.__setattr__(self, "argv", argv)

    @property
    def display(self) -> str:
        """Return a human readable rendering of the command."""
        return " ".join(self.argv)


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Captured outcome of a command."""

    argv: tuple[str, ...]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        """Return ``True`` when the command exited with status 0."""
        return self.returncode == 0

    def summary(self) -> str:
        """Return a one-line description suitable for error messages."""
        message = self.stderr.strip() or self.stdout.strip() or "no output"
        return f"{' '.join(self.argv)} failed (exit {self.returncode}): {message}"

    def check(self) -> CommandResult:
        """Return self, raising :class:`NonZeroExitError` on failure."""
        if not self.ok:
            raise NonZeroExitError(self)
        return self


class CommandRunner(Protocol):
    """Anything that can execute a :class:`CommandSpec`."""

    def run(self, spec: CommandSpec) -> CommandResult:
        """Execute *spec* and return its result."""
        ...


class SubprocessRunner:
    """Run commands with :mod:`subprocess`, capping captured output."""

    def __init__(self, *, default_max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES) -> None:
        """Store the cap applied when a spec does not provide one."""
        if default_max_output_bytes <= 0:
            raise ValueError("default_max_output_bytes must be greater than zero.")
        self.default_max_output_bytes = default_max_output_bytes

    def run(self, spec: CommandSpec) -> CommandResult:
        """Execute *spec*, returning the captured result."""
        limit = spec.max_output_bytes or self.default_max_output_bytes
        env = None
        if spec.env is not None:
            env = os.environ.copy()
            env.update(spec.env)

        try:
            process = subprocess.Popen(  # noqa: S603
                list(spec.argv),
                cwd=str(spec.cwd) if spec.cwd is not None else None,
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise LaunchError(f"{spec.argv[0]} not found: {exc}") from exc
        except PermissionError as exc:
            raise LaunchError(f"Permission denied launching {spec.argv[0]}: {exc}") from exc
        except OSError as exc:
            raise LaunchError(f"Failed to launch {spec.argv[0]}: {exc}") from exc

        overflow = threading.Event()
        stdout_buffer = bytearray()
        stderr_buffer = bytearray()
        readers = [
            threading.Thread(
                target=_drain,
                args=(process.stdout, stdout_buffer, limit, overflow, process),
                daemon=True,
            ),
            threading.Thread(
                target=_drain,
                args=(process.stderr, stderr_buffer, limit, overflow, process),
                daemon=True,
            ),
        ]
        for reader in readers:
            reader.start()
        returncode = process.wait()
        for reader in readers:
            reader.join()

        if overflow.is_set():
            raise OutputLimitExceeded(
                f"{spec.display} exceeded the output limit of {limit} bytes."
            )

        return CommandResult(
            argv=spec.argv,
            returncode=returncode,
            stdout=_decode(stdout_buffer),
            stderr=_decode(stderr_buffer),
        )


def _drain(
    stream: IO[bytes] | None,
    sink: bytearray,
    limit: int,
    overflow: threading.Event,
    process: subprocess.Popen[bytes],
) -> None:
    if stream is None:
        return
    try:
        while True:
            chunk = stream.read1(_CHUNK_SIZE)  # type: ignore[attr-defined]
            if not chunk:
                break
            if overflow.is_set():
                continue
            if len(sink) + len(chunk) > limit:
                overflow.set()
                process.kill()
                continue
            sink.extend(chunk)
    finally:
        stream.close()


def _decode(data: bytes | bytearray) -> str:
    return bytes(data).decode("utf-8", errors="replace")


__all__ = [
    "CommandResult",
    "CommandRunner",
    "CommandSpec",
    "DEFAULT_MAX_OUTPUT_BYTES",
    "LaunchError",
    "NonZeroExitError",
    "OutputLimitExceeded",
    "SubprocessRunner",
]
