from __future__ import annotations

import os
import shutil
import socket
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence


class CommandError(RuntimeError):
    """Raised when an external command that must succeed exits non-zero."""

    def __init__(self, args: Sequence[str], returncode: int, stderr: str = "") -> None:
        self.cmd = list(args)
        self.returncode = returncode
        self.stderr = stderr
        detail = f": {stderr.strip()[:200]}" if stderr and stderr.strip() else ""
        super().__init__(f"{' '.join(self.cmd)} exited {returncode}{detail}")


class SetupError(RuntimeError):
    """Installing or removing a renewal scheduler failed."""


@dataclass(frozen=True)
class CommandResult:
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class CommandRunner:
    """
    Thin wrapper over `subprocess.run` used by every job for external tools
    (crontab, systemctl, certbot, keytool, docker-compose, mail).

    - Never raises for a non-zero exit; callers inspect `CommandResult.ok`.
    - A missing executable is reported as return code 127, like a shell.
    - `privileged=True` prefixes `sudo` when not running as root and sudo exists.
    """

    def __init__(self, *, timeout: Optional[float] = 300.0) -> None:
        self._timeout = timeout

    def _needs_sudo(self) -> bool:
        geteuid = getattr(os, "geteuid", None)
        if geteuid is None or geteuid() == 0:
            return False
        return shutil.which("sudo") is not None

    def run(
        self,
        args: Sequence[str],
        *,
        input: Optional[str] = None,
        cwd: Optional[os.PathLike[str] | str] = None,
        privileged: bool = False,
        interactive: bool = False,
    ) -> CommandResult:
        """Run a command; `interactive=True` leaves stdio attached to the terminal."""
        argv = list(args)
        if privileged and self._needs_sudo():
            argv = ["sudo", *argv]
        try:
            proc = subprocess.run(
                argv,
                input=input,
                cwd=cwd,
                capture_output=not interactive,
                text=True,
                timeout=None if interactive else self._timeout,
                check=False,
            )
        except FileNotFoundError as exc:
            return CommandResult(returncode=127, stderr=str(exc))
        except subprocess.TimeoutExpired as exc:
            return CommandResult(returncode=124, stderr=f"timed out after {exc.timeout}s")
        return CommandResult(returncode=proc.returncode, stdout=proc.stdout or "", stderr=proc.stderr or "")

    def check(self, args: Sequence[str], **kwargs) -> CommandResult:
        """Run and raise `CommandError` on a non-zero exit."""
        res = self.run(args, **kwargs)
        if not res.ok:
            raise CommandError(args, res.returncode, res.stderr)
        return res

    def which(self, name: str) -> Optional[str]:
        return shutil.which(name)


def resolve_program(runner: CommandRunner, name: str, bin_dir: Path) -> str:
    """Absolute path of an installed console script.

    cron runs with a minimal PATH, so jobs reference programs by absolute path.
    Falls back to `bin_dir/name` when the program is not on PATH yet.
    """
    found = runner.which(name)
    if found:
        return found
    return str(Path(bin_dir) / name)


def hostname() -> str:
    return socket.gethostname()


__all__ = [
    "CommandError",
    "CommandResult",
    "SetupError",
    "CommandRunner",
    "resolve_program",
    "hostname",
]
