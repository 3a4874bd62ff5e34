import asyncio
import logging
import os
import signal
from contextlib import suppress
from asyncio import create_subprocess_exec
from pathlib import Path
from subprocess import DEVNULL, PIPE

from conveyor.context import CancelToken
from conveyor.schemas import CommandResult
from conveyor.utils import BASH

logger = logging.getLogger(__name__)


class LocalCommandRunner:
    """Runs shell steps as ``bash -c`` on the host, inside the run's workspace."""

    inherit_env: bool

    def __init__(self, inherit_env: bool = True):
        self.inherit_env = inherit_env

    async def run_command(
        self,
        command: str,
        cwd: Path,
        *,
        env: dict[str, str] | None = None,
        timeout: float | None = None,
        cancel: CancelToken | None = None,
    ) -> CommandResult:
        full_env = dict(os.environ) if self.inherit_env else {}
        full_env |= env or {}
        try:
            p = await create_subprocess_exec(
                BASH,
                '-c',
                'set -e\n' + command,
                cwd=cwd,
                stdin=DEVNULL,
                stdout=PIPE,
                stderr=PIPE,
                env=full_env,
                start_new_session=True,
            )
        except OSError as e:
            # Same exit code a shell reports for a command it cannot run
            logger.error(f'Cannot start command in {cwd}: {e}')
            return CommandResult(exit_code=127, stdout='', stderr=str(e))
        communicate = asyncio.ensure_future(p.communicate())
        waiters = {communicate}
        cancel_waiter = None
        if cancel is not None:
            cancel_waiter = asyncio.ensure_future(cancel.wait())
            waiters.add(cancel_waiter)
        try:
            done, _ = await asyncio.wait(
                waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            if cancel_waiter is not None:
                cancel_waiter.cancel()

        timed_out = cancelled = False
        if communicate not in done:
            if cancel is not None and cancel.cancelled:
                cancelled = True
            else:
                timed_out = True
            logger.debug(f'Killing process {p.pid}')
            # The whole group, so children of the shell do not keep the pipes open
            with suppress(ProcessLookupError):
                os.killpg(p.pid, signal.SIGKILL)
        stdout, stderr = await communicate
        return CommandResult(
            exit_code=p.returncode,
            stdout=stdout.decode(errors='replace'),
            stderr=stderr.decode(errors='replace'),
            timed_out=timed_out,
            cancelled=cancelled,
        )
