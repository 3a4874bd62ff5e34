from typing import Iterable

from conveyor.const import RUN_STATUS_VARIABLE, TRIGGER_VARIABLES
from conveyor.context import RunContext
from conveyor.exceptions import ConfigurationError
from conveyor.schemas.pipeline import (
    CheckoutStep,
    CredentialBinding,
    CredentialKind,
    CredentialsStep,
    GateStep,
    NotifyStep,
    PipelineDef,
    PostHookSet,
    PublishStep,
    ShellStep,
    Step,
)
from conveyor.utils import template_identifiers


def interpolated_fields(step: Step) -> list[str]:
    if isinstance(step, CheckoutStep):
        return [step.ref]
    elif isinstance(step, PublishStep):
        return [step.path]
    elif isinstance(step, NotifyStep):
        return [step.channel, step.message, step.subject or '']
    elif isinstance(step, GateStep):
        return [step.message]
    return []


class _Validator:
    definition: PipelineDef
    errors: list[str]

    def __init__(self, definition: PipelineDef):
        self.definition = definition
        self.errors = []

    def check_bindings(self, where: str, bindings: Iterable[CredentialBinding]) -> set[str]:
        bound = set()
        for binding in bindings:
            kind = self.definition.credentials.get(binding.credentials_id)
            if kind is None:
                self.errors.append(
                    f'{where}: credentials {binding.credentials_id!r} are not declared'
                )
                continue
            if kind == CredentialKind.username_password:
                ok = (
                    binding.username_variable
                    and binding.password_variable
                    and binding.variable is None
                )
            else:
                ok = (
                    binding.variable
                    and binding.username_variable is None
                    and binding.password_variable is None
                )
            if not ok:
                self.errors.append(
                    f'{where}: binding of {binding.credentials_id!r} does not match'
                    f' its kind {kind.value!r}'
                )
            bound.update(binding.variables)
        return bound

    def check_steps(self, where: str, steps: list[Step], known: set[str]):
        """Walks ``steps`` in order, adding the variables they produce to ``known``."""
        for i, step in enumerate(steps):
            step_where = f'{where}, step {i + 1} ({step.kind})'
            for text in interpolated_fields(step):
                for name in sorted(template_identifiers(text) - known):
                    self.errors.append(f'{step_where}: variable {name!r} is never set')
            if isinstance(step, ShellStep) and step.output_var:
                known.add(step.output_var)
            elif isinstance(step, CheckoutStep):
                known.add(step.revision_var)
                if step.tag_var:
                    for name in sorted(template_identifiers(step.tag_template) - known):
                        self.errors.append(f'{step_where}: variable {name!r} is never set')
                    known.add(step.tag_var)
            elif isinstance(step, CredentialsStep):
                bound = self.check_bindings(step_where, step.bindings)
                # Bound values go away with the scope, what the nested steps
                # produce does not
                inner = known | bound
                self.check_steps(step_where, step.steps, inner)
                known.update(inner - bound)

    def check_hooks(self, where: str, hooks: PostHookSet, known: set[str]):
        for name in ('always', 'success', 'failure'):
            self.check_steps(f'{where} post.{name}', getattr(hooks, name), set(known))

    def validate(self, context: RunContext | None):
        if not self.definition.stages:
            self.errors.append('Pipeline has no stages')

        seen = set()
        for stage in self.definition.stages:
            if stage.name in seen:
                self.errors.append(f'Duplicate stage name {stage.name!r}')
            seen.add(stage.name)

        known = set(TRIGGER_VARIABLES) | set(self.definition.environment)
        if context is not None:
            known |= set(context.keys())
        for stage in self.definition.stages:
            where = f'Stage {stage.name!r}'
            bound = self.check_bindings(where, stage.credentials)
            stage_known = known | bound
            self.check_steps(where, stage.steps, stage_known)
            # Hooks run after the stage credential scope has closed
            unscoped = stage_known - (bound - known)
            self.check_hooks(where, stage.post, unscoped)
            # Skipped stages may not produce anything, so this is best-effort
            known |= unscoped

        self.check_hooks('Pipeline', self.definition.post, known | {RUN_STATUS_VARIABLE})

        if self.errors:
            raise ConfigurationError('\n'.join(self.errors))


def validate_pipeline(definition: PipelineDef, context: RunContext | None = None):
    _Validator(definition).validate(context)
