from enum import Enum
from fnmatch import fnmatchcase
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    PositiveFloat,
    PositiveInt,
    StringConstraints,
    model_validator,
)
from typing import Annotated, Literal, TYPE_CHECKING, Union

if TYPE_CHECKING:
    from conveyor.context import RunContext

VarName = Annotated[str, StringConstraints(pattern=r'^[A-Za-z_][A-Za-z0-9_]*$')]


class _Def(BaseModel):
    model_config = ConfigDict(extra='forbid', frozen=True)


# Conditions


class Equals(_Def):
    kind: Literal['equals'] = 'equals'
    variable: VarName
    value: str

    def evaluate(self, ctx: 'RunContext') -> bool:
        return ctx.get(self.variable) == self.value


class Branch(_Def):
    kind: Literal['branch'] = 'branch'
    pattern: str

    def evaluate(self, ctx: 'RunContext') -> bool:
        return fnmatchcase(ctx.branch, self.pattern)


class And(_Def):
    kind: Literal['and'] = 'and'
    conditions: list['Condition']

    def evaluate(self, ctx: 'RunContext') -> bool:
        return all(c.evaluate(ctx) for c in self.conditions)


class Or(_Def):
    kind: Literal['or'] = 'or'
    conditions: list['Condition']

    def evaluate(self, ctx: 'RunContext') -> bool:
        return any(c.evaluate(ctx) for c in self.conditions)


class Not(_Def):
    kind: Literal['not'] = 'not'
    condition: 'Condition'

    def evaluate(self, ctx: 'RunContext') -> bool:
        return not self.condition.evaluate(ctx)


class IsMainLine(_Def):
    kind: Literal['main_line'] = 'main_line'

    def evaluate(self, ctx: 'RunContext') -> bool:
        return ctx.is_main_line


class IsChangeRequest(_Def):
    kind: Literal['change_request'] = 'change_request'

    def evaluate(self, ctx: 'RunContext') -> bool:
        return ctx.is_change_request


Condition = Annotated[
    Union[Equals, Branch, And, Or, Not, IsMainLine, IsChangeRequest],
    Field(discriminator='kind'),
]


# Credentials


class CredentialKind(str, Enum):
    string = 'string'
    username_password = 'username_password'
    file = 'file'


class CredentialBinding(_Def):
    credentials_id: str
    variable: VarName | None = None
    username_variable: VarName | None = None
    password_variable: VarName | None = None

    @property
    def variables(self) -> list[str]:
        return [
            v
            for v in (self.variable, self.username_variable, self.password_variable)
            if v is not None
        ]


# Steps


class ReportKind(str, Enum):
    junit = 'junit'
    dependency_check = 'dependency_check'
    artifact = 'artifact'


class Severity(str, Enum):
    info = 'info'
    good = 'good'
    warning = 'warning'
    danger = 'danger'


class ShellStep(_Def):
    kind: Literal['sh'] = 'sh'
    script: str
    cwd: str | None = None
    output_var: VarName | None = None
    timeout: PositiveFloat | None = None


class CheckoutStep(_Def):
    kind: Literal['checkout'] = 'checkout'
    ref: str = '${BRANCH_NAME}'
    revision_var: VarName = 'GIT_COMMIT'
    tag_var: VarName | None = None
    tag_template: str = '${BUILD_NUMBER}-${GIT_COMMIT}'


class PublishStep(_Def):
    kind: Literal['publish'] = 'publish'
    path: str
    report_kind: ReportKind
    allow_empty: bool = False


class NotifyStep(_Def):
    kind: Literal['notify'] = 'notify'
    channel: str
    message: str
    severity: Severity = Severity.info
    subject: str | None = None


class GateStep(_Def):
    kind: Literal['gate'] = 'gate'
    message: str
    ok: str = 'Proceed'
    timeout: PositiveFloat | None = None


class CredentialsStep(_Def):
    kind: Literal['with_credentials'] = 'with_credentials'
    bindings: list[CredentialBinding]
    steps: list['Step']


Step = Annotated[
    Union[ShellStep, CheckoutStep, PublishStep, NotifyStep, GateStep, CredentialsStep],
    Field(discriminator='kind'),
]


class PostHookSet(_Def):
    always: list[Step] = []
    success: list[Step] = []
    failure: list[Step] = []


class StageDef(_Def):
    name: str
    when: Condition | None = None
    steps: list[Step]
    post: PostHookSet = PostHookSet()
    credentials: list[CredentialBinding] = []


class PipelineOptions(_Def):
    main_branch: str = 'main'
    disable_concurrent_builds: bool = True
    keep_runs: PositiveInt | None = 30


class PipelineDef(_Def):
    name: Annotated[str, StringConstraints(pattern=r'^[\w.\-]+$')] = 'pipeline'
    environment: dict[VarName, str] = {}
    options: PipelineOptions = PipelineOptions()
    credentials: dict[str, CredentialKind] = {}
    stages: list[StageDef]
    post: PostHookSet = PostHookSet()

    @model_validator(mode='before')
    @classmethod
    def stages_from_mapping(cls, data):
        # Also accept `stages: {Build: {...}, Test: {...}}`, keeping declaration order
        if isinstance(data, dict) and isinstance(data.get('stages'), dict):
            data = dict(data)
            data['stages'] = [
                {'name': name, **(stage or {})} for name, stage in data['stages'].items()
            ]
        return data


for _model in (And, Or, Not, CredentialsStep, PostHookSet, StageDef, PipelineDef):
    _model.model_rebuild()
