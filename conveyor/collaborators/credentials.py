import logging
import yaml
from pathlib import Path
from pydantic import BaseModel, SecretStr, ValidationError
from yaml import YAMLError

from conveyor.exceptions import CredentialError

logger = logging.getLogger(__name__)


class Credential(BaseModel):
    username: str | None = None
    password: SecretStr | None = None
    secret: SecretStr | None = None
    file: SecretStr | None = None


class FileCredentialProvider:
    """Reads credentials from a YAML mapping of ``id: {username, password, secret, file}``.

    The file is re-read on every lookup so rotated secrets are picked up
    without restarting the server.
    """

    path: Path | None

    def __init__(self, path: Path | None):
        self.path = path

    def _load(self) -> dict:
        if self.path is None or not self.path.is_file():
            return {}
        try:
            return yaml.safe_load(self.path.read_text()) or {}
        except YAMLError as e:
            raise CredentialError(f'Credentials file is malformed: {e}')
        except (OSError, UnicodeDecodeError) as e:
            raise CredentialError(f'Cannot read the credentials file: {e}')

    def resolve(self, credentials_id: str) -> Credential:
        entry = self._load().get(credentials_id)
        if entry is None:
            raise CredentialError(f'Credentials {credentials_id!r} not found')
        try:
            return Credential.model_validate(entry)
        except ValidationError as e:
            raise CredentialError(f'Credentials {credentials_id!r} are invalid: {e}')


class StaticCredentialProvider:
    credentials: dict[str, Credential]

    def __init__(self, credentials: dict[str, Credential]):
        self.credentials = credentials

    def resolve(self, credentials_id: str) -> Credential:
        try:
            return self.credentials[credentials_id]
        except KeyError:
            raise CredentialError(f'Credentials {credentials_id!r} not found')
