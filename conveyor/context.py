import asyncio
from contextlib import contextmanager
from string import Template
from typing import Iterator, Mapping

from conveyor.const import REDACTED
from conveyor.schemas import TriggerEvent, TriggerInfo


class CancelToken:
    """Cancellation signal shared between a run and whoever may abort it."""

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: str | None = None

    def cancel(self, reason: str | None = None):
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self):
        await self._event.wait()


class RunContext:
    """Key/value environment of a single run.

    Steps read it through condition evaluation, interpolation and the process
    environment, and write derived values back into it. Values bound through
    :meth:`scoped` are secrets: they disappear once the scope ends and are
    redacted from any text passed through :meth:`redact` for the rest of the run.
    """

    _values: dict[str, str]
    _secrets: set[str]
    main_branch: str

    def __init__(self, values: Mapping[str, str] | None = None, *, main_branch='main'):
        self._values = {k: str(v) for k, v in (values or {}).items()}
        self._secrets = set()
        self.main_branch = main_branch

    @classmethod
    def from_trigger(
        cls,
        trigger: TriggerInfo,
        environment: Mapping[str, str] | None = None,
        *,
        pipeline: str = 'pipeline',
        main_branch: str = 'main',
    ) -> 'RunContext':
        change_id = trigger.change_id or ''
        if trigger.event == TriggerEvent.main_line_update:
            change_id = ''
        values = {
            'BRANCH_NAME': trigger.branch,
            'CHANGE_ID': change_id,
            'BUILD_NUMBER': str(trigger.build_number),
            'BUILD_URL': trigger.build_url or '',
            'RUN_ID': f'{pipeline}-{trigger.build_number}',
        }
        for name, value in (environment or {}).items():
            values[name] = Template(value).safe_substitute(values)
        return cls(values, main_branch=main_branch)

    def get(self, name: str, default: str | None = None) -> str | None:
        return self._values.get(name, default)

    def __getitem__(self, name: str) -> str:
        return self._values[name]

    def __contains__(self, name: str) -> bool:
        return name in self._values

    def keys(self):
        return self._values.keys()

    def set(self, name: str, value: str):
        self._values[name] = str(value)

    @property
    def branch(self) -> str:
        return self._values.get('BRANCH_NAME', '')

    @property
    def change_id(self) -> str:
        return self._values.get('CHANGE_ID', '')

    @property
    def is_change_request(self) -> bool:
        return bool(self.change_id)

    @property
    def is_main_line(self) -> bool:
        return self.branch == self.main_branch and not self.is_change_request

    @contextmanager
    def scoped(self, values: Mapping[str, str], *, secret: bool = True) -> Iterator[None]:
        previous = {name: self._values.get(name) for name in values}
        if secret:
            self._secrets.update(v for v in values.values() if v)
        self._values.update(values)
        try:
            yield
        finally:
            for name, value in previous.items():
                if value is None:
                    self._values.pop(name, None)
                else:
                    self._values[name] = value

    def add_secret(self, value: str):
        if value:
            self._secrets.add(value)

    def redact(self, text: str) -> str:
        # Longest first so a secret containing another one is masked whole
        for secret in sorted(self._secrets, key=len, reverse=True):
            text = text.replace(secret, REDACTED)
        return text

    def interpolate(self, template: str) -> str:
        """Substitute ``${NAME}`` references, raising KeyError on unknown names."""
        return Template(template).substitute(self._values)

    def as_env(self) -> dict[str, str]:
        return dict(self._values)

    def snapshot(self) -> dict[str, str]:
        return {k: self.redact(v) for k, v in self._values.items()}
