"""Tagged action variants, one per step kind.

Every variant carries the step's targets and description plus the parameters
its kind needs, and exposes the same ``execute`` capability: hand the action to
an :class:`~planexec.planning.interfaces.ActionExecutor`. The union is closed
and discriminated on ``kind`` so oracle payloads validate into exactly one
variant or fail loudly.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Annotated, Any, List, Literal, Optional, Union

from pydantic import Field
from pydantic.type_adapter import TypeAdapter

from ..memory.schema import ActionKind, Outcome, RecordModel, Step

if TYPE_CHECKING:
    from .cancellation import CancellationToken
    from .interfaces import ActionExecutor


class BaseAction(RecordModel):
    """Fields shared by every action variant."""

    targets: List[str] = Field(default_factory=list)
    description: str = ""
    rationale: str = ""

    def execute(
        self,
        executor: "ActionExecutor",
        step: Step,
        cancel: "CancellationToken",
    ) -> Outcome:
        """Apply this action through ``executor`` on behalf of ``step``."""
        return executor.apply_fix(step, self, cancel)

    def summary(self) -> str:
        kind = getattr(self, "kind", "action")
        targets = ", ".join(self.targets) if self.targets else "(no targets)"
        return f"{kind} {targets}: {self.description}".strip()


class EditAction(BaseAction):
    kind: Literal["edit"] = "edit"
    content: Optional[str] = None


class CreateAction(BaseAction):
    kind: Literal["create"] = "create"
    content: str = ""
    executable: bool = False


class DeleteAction(BaseAction):
    kind: Literal["delete"] = "delete"


class RunAction(BaseAction):
    kind: Literal["run"] = "run"
    command: List[str] = Field(default_factory=list)


class TestAction(BaseAction):
    __test__ = False  # keep pytest from collecting the model

    kind: Literal["test"] = "test"
    command: List[str] = Field(default_factory=list)
    selectors: List[str] = Field(default_factory=list)


Action = Annotated[
    Union[EditAction, CreateAction, DeleteAction, RunAction, TestAction],
    Field(discriminator="kind"),
]

_ACTION_TYPES: dict[ActionKind, type[BaseAction]] = {
    ActionKind.EDIT: EditAction,
    ActionKind.CREATE: CreateAction,
    ActionKind.DELETE: DeleteAction,
    ActionKind.RUN: RunAction,
    ActionKind.TEST: TestAction,
}

ACTION_ADAPTER: TypeAdapter[Any] = TypeAdapter(Action)


def _command_from(value: Any) -> list[str]:
    if isinstance(value, str):
        return value.split()
    if isinstance(value, (list, tuple)):
        return [str(item) for item in value]
    return []


def action_for_step(step: Step) -> BaseAction:
    """Build the action variant matching ``step.action_kind``."""
    metadata = step.metadata or {}
    payload: dict[str, Any] = {
        "targets": list(step.targets),
        "description": step.description,
    }
    kind = step.action_kind
    if kind in {ActionKind.EDIT, ActionKind.CREATE}:
        content = metadata.get("content")
        if isinstance(content, str):
            payload["content"] = content
        if kind == ActionKind.CREATE and isinstance(metadata.get("executable"), bool):
            payload["executable"] = metadata["executable"]
    elif kind in {ActionKind.RUN, ActionKind.TEST}:
        payload["command"] = _command_from(metadata.get("command"))
        if kind == ActionKind.TEST:
            payload["selectors"] = [str(item) for item in metadata.get("selectors") or []]
    return _ACTION_TYPES[kind](**payload)


__all__ = [
    "ACTION_ADAPTER",
    "Action",
    "BaseAction",
    "CreateAction",
    "DeleteAction",
    "EditAction",
    "RunAction",
    "TestAction",
    "action_for_step",
]
