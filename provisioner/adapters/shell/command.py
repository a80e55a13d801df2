"""
Shell command runner — execute commands through bash and capture output.

This is the single place where ``subprocess.run`` is called. Elevated
commands are prefixed with ``sudo -n`` unless we already are root;
unattended runs cannot answer a password prompt, so sudo fails fast
instead of hanging.
"""

from __future__ import annotations

import logging
import os
import subprocess
import time
from collections.abc import Mapping

from provisioner.adapters.base import CommandRunner
from provisioner.core.models.command import CommandResult

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124


class ShellCommandRunner(CommandRunner):
    """Run commands with ``bash -c`` and capture combined output.

    Args:
        shell: Interpreter used for ``-c``.
        default_timeout: Seconds before a command is killed (None = no limit).
        base_env: Extra variables added to every command's environment.
    """

    def __init__(
        self,
        shell: str = "bash",
        default_timeout: float | None = None,
        base_env: Mapping[str, str] | None = None,
    ):
        self._shell = shell
        self._default_timeout = default_timeout
        self._base_env = dict(base_env or {})

    @property
    def name(self) -> str:
        return "shell"

    def run(
        self,
        command: str,
        *,
        env: Mapping[str, str] | None = None,
        elevated: bool = False,
        input: bytes | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        argv = [self._shell, "-c", command]

        # ── Sudo handling ──
        if elevated and os.geteuid() != 0:
            argv = ["sudo", "-n", "--preserve-env"] + argv

        # ── Environment ──
        full_env = os.environ.copy()
        full_env.update(self._base_env)
        if env:
            full_env.update(env)

        limit = timeout if timeout is not None else self._default_timeout
        logger.debug("Executing%s: %s", " (elevated)" if elevated else "", command)
        start = time.monotonic()

        try:
            proc = subprocess.run(
                argv,
                input=input,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                env=full_env,
                timeout=limit,
            )
        except subprocess.TimeoutExpired as e:
            elapsed_ms = int((time.monotonic() - start) * 1000)
            partial = (e.output or b"").decode("utf-8", errors="replace")
            return CommandResult.failure(
                command,
                exit_code=TIMEOUT_EXIT_CODE,
                output=f"{partial}\nCommand timed out after {limit}s".lstrip(),
                elevated=elevated,
                duration_ms=elapsed_ms,
                timed_out=True,
            )
        except OSError as e:
            return CommandResult.failure(
                command,
                exit_code=127,
                output=f"Cannot execute {argv[0]}: {e}",
                elevated=elevated,
            )

        elapsed_ms = int((time.monotonic() - start) * 1000)
        output = proc.stdout.decode("utf-8", errors="replace").strip()
        if proc.returncode != 0:
            logger.debug("Command exited %d: %s", proc.returncode, output[-2000:])
        return CommandResult(
            command=command,
            exit_code=proc.returncode,
            output=output,
            elevated=elevated,
            duration_ms=elapsed_ms,
        )
