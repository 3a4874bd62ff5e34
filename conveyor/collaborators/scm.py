import logging
from pathlib import Path

from conveyor.config import config
from conveyor.const import SHORT_REVISION_LENGTH
from conveyor.utils import async_check_output, GIT

logger = logging.getLogger(__name__)


async def update_mirror(clone_url: str, repo_name: str) -> Path:
    repo_path = config.repos_dir / repo_name
    if repo_path.is_dir():
        await async_check_output(
            GIT, 'remote', 'set-url', 'origin', clone_url, cwd=repo_path
        )
        await async_check_output(GIT, 'fetch', '--prune', cwd=repo_path)
    else:
        repo_path.mkdir(parents=True)
        await async_check_output(
            GIT,
            'clone',
            '--mirror',
            clone_url,
            '.',
            cwd=repo_path,
        )
    return repo_path


async def checkout_repo(clone_url: str, repo_name: str, ref: str, at: str | Path):
    repo_path = await update_mirror(clone_url, repo_name)
    if not (Path(at) / '.git').exists():
        await async_check_output(GIT, 'init', '--quiet', cwd=at)
    await async_check_output(GIT, 'fetch', '--quiet', str(repo_path), ref, cwd=at)
    await async_check_output(GIT, 'switch', '--quiet', '-d', 'FETCH_HEAD', cwd=at)


class GitSourceControl:
    workdir: Path
    clone_url: str | None
    repo_name: str | None

    def __init__(
        self, workdir: Path, clone_url: str | None = None, repo_name: str | None = None
    ):
        self.workdir = workdir
        self.clone_url = clone_url
        self.repo_name = repo_name

    async def fetch(self, ref: str) -> str:
        # Without a clone url (local mode) the existing tree is used as-is
        if self.clone_url:
            logger.info(f'Checking out {ref} of {self.clone_url}')
            await checkout_repo(
                self.clone_url,
                self.repo_name or _repo_name_from_url(self.clone_url),
                ref,
                self.workdir,
            )
        out = await async_check_output(
            GIT,
            'rev-parse',
            f'--short={SHORT_REVISION_LENGTH}',
            'HEAD',
            cwd=self.workdir,
        )
        return out.strip()


def _repo_name_from_url(clone_url: str) -> str:
    name = clone_url.rstrip('/').split(':')[-1]
    return name.removesuffix('.git').strip('/')
