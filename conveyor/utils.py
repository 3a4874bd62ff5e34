from asyncio import create_subprocess_exec

import logging
import shutil
from pathlib import Path
from string import Template
from subprocess import DEVNULL, PIPE

from conveyor.exceptions import CommandError

logger = logging.getLogger(__name__)


def get_bin(name: str) -> str:
    return shutil.which(name) or name


BASH = get_bin('bash')
GIT = get_bin('git')


async def async_check_output(*args: str | Path, cwd: Path | str) -> str:
    logger.debug(f'Running {args}')
    p = await create_subprocess_exec(
        *args, cwd=cwd, stdin=DEVNULL, stdout=PIPE, stderr=PIPE
    )
    stdout, stderr = await p.communicate()
    if p.returncode:
        logger.error(f'Process exited with code {p.returncode}')
        raise CommandError(
            f'{Path(str(args[0])).name} exited with code {p.returncode}: '
            f'{stderr.decode().strip()}'
        )
    return stdout.decode()


def template_identifiers(text: str) -> set[str]:
    """Names referenced as ``$NAME`` or ``${NAME}`` in ``text``."""
    res = set()
    for match in Template.pattern.finditer(text):
        name = match.group('named') or match.group('braced')
        if name:
            res.add(name)
    return res
