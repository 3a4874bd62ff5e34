import logging
import shutil
from pathlib import Path

from conveyor.const import ARTIFACTS_DIR, RESULT_FILE, WORKSPACE_DIR
from conveyor.schemas import RunResult

logger = logging.getLogger(__name__)


class RunStore:
    """Run records on disk, ``<runs_dir>/<pipeline>/<build number>/``."""

    runs_dir: Path

    def __init__(self, runs_dir: Path):
        self.runs_dir = runs_dir

    def run_dir(self, pipeline: str, build_number: int) -> Path:
        return self.runs_dir / pipeline / str(build_number)

    def workspace(self, pipeline: str, build_number: int) -> Path:
        res = self.run_dir(pipeline, build_number) / WORKSPACE_DIR
        res.mkdir(parents=True, exist_ok=True)
        return res

    def artifacts(self, pipeline: str, build_number: int) -> Path:
        return self.run_dir(pipeline, build_number) / ARTIFACTS_DIR

    def build_numbers(self, pipeline: str) -> list[int]:
        pipeline_dir = self.runs_dir / pipeline
        if not pipeline_dir.is_dir():
            return []
        return sorted(int(p.name) for p in pipeline_dir.iterdir() if p.name.isdigit())

    def next_build_number(self, pipeline: str) -> int:
        numbers = self.build_numbers(pipeline)
        res = numbers[-1] + 1 if numbers else 1
        # Reserve it right away so concurrent triggers get distinct numbers
        self.run_dir(pipeline, res).mkdir(parents=True)
        return res

    def release(self, pipeline: str, build_number: int):
        """Drops a reserved run that never produced a result."""
        run_dir = self.run_dir(pipeline, build_number)
        if run_dir.is_dir() and not (run_dir / RESULT_FILE).is_file():
            logger.warning(f'Releasing run {pipeline} #{build_number} without a result')
            shutil.rmtree(run_dir)

    def save(self, result: RunResult, keep: int | None = None):
        run_dir = self.run_dir(result.pipeline, result.build_number)
        run_dir.mkdir(parents=True, exist_ok=True)
        (run_dir / RESULT_FILE).write_text(result.model_dump_json(indent=2))
        if keep is not None:
            self.prune(result.pipeline, keep)

    def load(self, pipeline: str, build_number: int) -> RunResult | None:
        file = self.run_dir(pipeline, build_number) / RESULT_FILE
        if not file.is_file():
            return None
        return RunResult.model_validate_json(file.read_text())

    def prune(self, pipeline: str, keep: int):
        finished = [
            n
            for n in self.build_numbers(pipeline)
            if (self.run_dir(pipeline, n) / RESULT_FILE).is_file()
        ]
        for n in finished[:-keep]:
            logger.info(f'Discarding run {pipeline} #{n}')
            shutil.rmtree(self.run_dir(pipeline, n))
