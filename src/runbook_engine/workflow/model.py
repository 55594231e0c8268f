"""Immutable representation of a parsed workflow.

A workflow is a tree: each node holds either a step or an iterate block, and
step nodes may carry conditional branches with nested nodes of their own.
Models are frozen and reject unknown fields so a typo in a workflow file fails
validation instead of being silently ignored.
"""

from __future__ import annotations

from typing import Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator

StepType = Literal["cli", "manual", "invoke", "tool"]
OutcomeState = Literal["resolved", "escalated", "no_action", "needs_rca"]
WorkflowKind = Literal["mitigation", "reference", "composable", "rca"]

OUTCOME_STATES: tuple[str, ...] = ("resolved", "escalated", "no_action", "needs_rca")

_DURATION_PATTERN = r"^[0-9]+(ms|s|m|h)$"


class _Model(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)


class InputDef(_Model):
    source: str = Field(default="prompt", alias="from")
    default: str = ""
    description: str = ""
    pattern: str = ""
    example: str = ""


class Defaults(_Model):
    timeout: str = Field(default="", pattern=r"^$|" + _DURATION_PATTERN)


class Meta(_Model):
    name: str
    kind: WorkflowKind | None = None
    description: str = ""
    vars: dict[str, str] = Field(default_factory=dict)
    inputs: dict[str, InputDef] = Field(default_factory=dict)
    defaults: Defaults | None = None


class CommandConfig(_Model):
    argv: tuple[str, ...] = Field(min_length=1)


class ToolConfig(_Model):
    name: str
    action: str
    args: dict[str, str] = Field(default_factory=dict)


class Precondition(_Model):
    check: tuple[str, ...] = Field(min_length=1)
    skip_if_succeeds: bool = False
    message: str = ""


class EvidenceRequirement(_Model):
    kind: Literal["text", "checklist", "attachment"]
    name: str
    items: tuple[str, ...] = ()


class ApprovalRequirement(_Model):
    min: int = Field(default=0, ge=0)
    roles: tuple[str, ...] = ()


class ChoiceOption(_Model):
    value: str
    label: str = ""
    description: str = ""


class ChoiceConfig(_Model):
    variable: str
    prompt: str = ""
    options: tuple[ChoiceOption, ...] = Field(min_length=2)


class Assertion(_Model):
    """A single check against a step's output; exactly one field is set."""

    contains: str | None = None
    not_contains: str | None = None
    matches: str | None = None
    exit_code: int | None = None
    equals: str | None = None
    not_equals: str | None = None

    @model_validator(mode="after")
    def _exactly_one(self) -> Assertion:
        set_fields = [name for name, value in self if value is not None]
        if len(set_fields) != 1:
            raise ValueError(f"assertion must set exactly one check, got {set_fields or 'none'}")
        return self

    @property
    def kind(self) -> str:
        return next(name for name, value in self if value is not None)


class NextWorkflow(_Model):
    file: str
    inputs: dict[str, str] = Field(default_factory=dict)


class Outcome(_Model):
    when: str = ""
    state: OutcomeState
    recommendation: str = ""
    next_workflow: NextWorkflow | None = Field(
        default=None, validation_alias=AliasChoices("next_workflow", "next_runbook")
    )


class InvokeConfig(_Model):
    workflow: str = Field(validation_alias=AliasChoices("workflow", "runbook"))
    inputs: dict[str, str] = Field(default_factory=dict)


class Gate(_Model):
    stop_if: tuple[OutcomeState, ...] = ()
    on_error: Literal["skip"] | None = None


class Step(_Model):
    id: str = Field(min_length=1)
    type: StepType
    title: str = ""
    instructions: str = ""
    precondition: Precondition | None = None
    outcomes: tuple[Outcome, ...] = ()
    with_: CommandConfig | None = Field(default=None, alias="with")
    tool: ToolConfig | None = None
    required_evidence: tuple[EvidenceRequirement, ...] = ()
    approvals: ApprovalRequirement | None = None
    choices: ChoiceConfig | None = None
    capture: dict[str, str] = Field(default_factory=dict)
    assertions: tuple[Assertion, ...] = ()
    timeout: str = Field(default="", pattern=r"^$|" + _DURATION_PATTERN)
    delay: str = Field(default="", pattern=r"^$|" + _DURATION_PATTERN)
    invoke: InvokeConfig | None = None
    gate: Gate | None = None

    @property
    def label(self) -> str:
        return self.title or self.id

    @property
    def needs_input(self) -> bool:
        """True when the operator must supply something before the step can finish."""

        return bool(
            self.choices
            or self.required_evidence
            or (self.approvals is not None and self.approvals.min > 0)
        )


class Branch(_Model):
    condition: str
    label: str = ""
    steps: tuple[TreeNode, ...] = ()


class IterateBlock(_Model):
    """A bounded loop over nested nodes.

    Convergence mode repeats until ``until`` holds, at most ``max`` passes.
    List mode runs once per item of the comma-separated ``over`` value, binding
    each item to ``as``.
    """

    id: str = ""
    max: int | None = Field(default=None, ge=1)
    until: str = ""
    over: str = ""
    as_: str = Field(default="", alias="as")
    steps: tuple[TreeNode, ...] = Field(min_length=1)

    @model_validator(mode="after")
    def _one_mode(self) -> IterateBlock:
        convergence = self.max is not None or bool(self.until)
        listing = bool(self.over)
        if convergence and listing:
            raise ValueError("iterate: 'over' cannot be combined with 'max'/'until'")
        if listing:
            return self
        if self.max is None or not self.until:
            raise ValueError("iterate: convergence mode requires both 'max' and 'until'")
        return self

    @property
    def is_list(self) -> bool:
        return bool(self.over)

    @property
    def loop_var(self) -> str:
        return self.as_ or "item"


class TreeNode(_Model):
    step: Step | None = None
    iterate: IterateBlock | None = None
    branches: tuple[Branch, ...] = ()

    @model_validator(mode="after")
    def _step_xor_iterate(self) -> TreeNode:
        if (self.step is None) == (self.iterate is None):
            raise ValueError("tree node must have exactly one of 'step' or 'iterate'")
        if self.iterate is not None and self.branches:
            raise ValueError("branches are only allowed on step nodes")
        return self


class Workflow(_Model):
    api_version: Literal["runbook/v0", "runbook/v1"] = Field(alias="apiVersion")
    imports: dict[str, str] = Field(default_factory=dict)
    meta: Meta
    tree: tuple[TreeNode, ...] = ()

    def initial_vars(self) -> dict[str, str]:
        """Declared variables overlaid with input defaults."""

        values = dict(self.meta.vars)
        for name, definition in self.meta.inputs.items():
            if definition.default and name not in values:
                values[name] = definition.default
        return values


Branch.model_rebuild()
IterateBlock.model_rebuild()
TreeNode.model_rebuild()
