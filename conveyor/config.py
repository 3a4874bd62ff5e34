import sys

import enum
import os
import yaml
from enum import Enum
from pathlib import Path
from pydantic import AfterValidator, PositiveFloat, SecretStr, field_validator
from pydantic_core.core_schema import ValidationInfo
from pydantic_settings import BaseSettings
from typing import Annotated


class OperationMode(Enum):
    local = enum.auto()
    standalone = enum.auto()


class ConcurrencyPolicy(str, Enum):
    queue = 'queue'
    reject = 'reject'


class Config(BaseSettings):
    host: str = '127.0.0.1'
    port: int = 8080
    debug: bool = False

    data_dir: Annotated[Path, AfterValidator(lambda path: path.absolute())] = Path(
        os.getenv('XDG_DATA_HOME') or os.path.expanduser('~/.local/share')
    ) / 'conveyor'
    runs_dir: Path = None
    repos_dir: Path = None

    mode: OperationMode = None
    concurrency_policy: ConcurrencyPolicy = ConcurrencyPolicy.queue
    gate_timeout: PositiveFloat = 60 * 60

    pipeline_file: str = 'pipeline.yml'
    credentials_file: Path | None = None

    slack_webhook_url: SecretStr | None = None
    smtp_host: str | None = None
    smtp_port: int = 25
    smtp_sender: str = 'conveyor@localhost'

    webhook_secret: SecretStr | None = None
    public_url: str | None = None

    # noinspection PyNestedDecorators
    @field_validator('mode', mode='before')
    @classmethod
    def default_mode(cls, v: OperationMode | None):
        if v is not None:
            return v
        if len(sys.argv) > 1 and sys.argv[1] == 'server':
            return OperationMode.standalone
        else:
            return OperationMode.local

    # noinspection PyNestedDecorators
    @field_validator('runs_dir', 'repos_dir', mode='before')
    @classmethod
    def default_dirs(cls, v: Path | None, info: ValidationInfo):
        if 'data_dir' not in info.data:
            # pydantic won't show errors until everything is validated
            # we don't want to show all _dir fields as errored if data_dir is not set
            return ''
        if v is None:
            dirname = info.field_name.removesuffix('_dir').replace('_', '-')
            res = info.data['data_dir'] / dirname
        else:
            res = Path(v)
        res.mkdir(parents=True, exist_ok=True)
        return res

    def build_url(self, pipeline: str, build_number: int) -> str:
        if not self.public_url:
            return ''
        return f'{self.public_url.rstrip("/")}/runs/{pipeline}/{build_number}'


config_home = Path(os.getenv('XDG_CONFIG_HOME') or os.path.expanduser('~/.config'))
config_file = config_home / 'conveyor' / 'config.yml'
if config_file.is_file():
    config_values = yaml.safe_load(config_file.read_text())
else:
    config_values = {}
config = Config(**config_values, _env_file='.env', _env_prefix='CONVEYOR_')

__all__ = ['ConcurrencyPolicy', 'OperationMode', 'config']
