from conveyor.runner.registry import RunRegistry
from conveyor.runner.runner import Runner, load_pipeline
from conveyor.runner.service import run_pipeline
from conveyor.runner.validation import validate_pipeline

__all__ = ['RunRegistry', 'Runner', 'load_pipeline', 'run_pipeline', 'validate_pipeline']
