import dataclasses
import logging
import shlex
import shutil
import subprocess
from typing import Optional, Sequence

from hulios.core.errors import CommandError, Outcome


@dataclasses.dataclass
class CommandResult:
    cmd: Sequence[str]
    returncode: Optional[int]
    stdout: str = ""
    stderr: str = ""
    outcome: Outcome = Outcome.SUCCESS

    @property
    def ok(self) -> bool:
        return self.outcome is Outcome.SUCCESS

    def raise_for_outcome(self) -> "CommandResult":
        if self.outcome is Outcome.FAILED_FATAL:
            detail = self.stderr.strip() or f"exit status {self.returncode}"
            raise CommandError(f"Command failed: {shlex.join(self.cmd)} ({detail})")
        return self


def run_cmd(cmd: Sequence[str], fatal: bool = False) -> CommandResult:
    """Run a command to completion and classify the result.

    A non-zero exit or a spawn error (missing binary, permission) is reported
    as FAILED_FATAL when ``fatal`` is set and FAILED_NONFATAL otherwise. This
    function never raises; fatal callers use ``raise_for_outcome``.
    """
    failed = Outcome.FAILED_FATAL if fatal else Outcome.FAILED_NONFATAL
    try:
        proc = subprocess.run(list(cmd), stdout=subprocess.PIPE, stderr=subprocess.PIPE,
                              text=True, errors="replace")
    except OSError as e:
        logging.debug(f"Could not run {shlex.join(cmd)}: {e}")
        return CommandResult(cmd=list(cmd), returncode=None, stderr=str(e), outcome=failed)

    outcome = Outcome.SUCCESS if proc.returncode == 0 else failed
    return CommandResult(
        cmd=list(cmd),
        returncode=proc.returncode,
        stdout=proc.stdout or "",
        stderr=proc.stderr or "",
        outcome=outcome,
    )


def is_command_available(command: str) -> bool:
    return shutil.which(command) is not None
