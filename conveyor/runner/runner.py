import yaml
from pathlib import Path
from pydantic import ValidationError
from yaml import YAMLError

from conveyor.collaborators import Collaborators
from conveyor.context import CancelToken, RunContext
from conveyor.exceptions import ConfigurationError
from conveyor.runner.pipeline import PipelineRunner
from conveyor.runner.validation import validate_pipeline
from conveyor.schemas import RunResult
from conveyor.schemas.pipeline import PipelineDef


def load_pipeline(file: Path) -> PipelineDef:
    if not file.is_file():
        raise ConfigurationError(f'Pipeline file {file.name} not found')
    try:
        return PipelineDef.model_validate(yaml.safe_load(file.read_text()))
    except (YAMLError, ValidationError) as e:
        raise ConfigurationError(str(e))


class Runner:
    """Executes pipeline definitions against one set of collaborators."""

    collaborators: Collaborators
    workdir: Path
    run_id: str
    cancel: CancelToken

    def __init__(
        self,
        collaborators: Collaborators,
        workdir: Path,
        *,
        run_id: str = 'local',
        cancel: CancelToken | None = None,
    ):
        self.collaborators = collaborators
        self.workdir = workdir
        self.run_id = run_id
        self.cancel = cancel or CancelToken()

    async def execute(self, definition: PipelineDef, context: RunContext) -> RunResult:
        validate_pipeline(definition, context)
        context.main_branch = definition.options.main_branch
        return await PipelineRunner(self, definition, context).run()
