"""
Transition commands accepted by ``WorkItemLifecycle``.

One frozen dataclass per transition, so each operation only carries the
fields it is allowed to change.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union


@dataclass(frozen=True)
class AssignCommand:
    worker_id: int
    task: str
    instructions: str
    deadline: Optional[datetime]
    description: str = ""


@dataclass(frozen=True)
class CompleteCommand:
    item_id: int
    explanation: str
    work_link: Optional[str] = None


@dataclass(frozen=True)
class ApproveCommand:
    item_id: int
    review_notes: Optional[str] = None


@dataclass(frozen=True)
class RejectCommand:
    item_id: int
    review_notes: str


@dataclass(frozen=True)
class GenericEditCommand:
    """Admin edit of the descriptive fields. ``None`` leaves a field untouched."""

    item_id: int
    task: Optional[str] = None
    description: Optional[str] = None
    instructions: Optional[str] = None
    deadline: Optional[datetime] = None
    status: Optional[str] = None

    def changes(self) -> dict:
        fields = {
            "task": self.task,
            "description": self.description,
            "instructions": self.instructions,
            "deadline": self.deadline,
            "status": self.status,
        }
        return {k: v for k, v in fields.items() if v is not None}


@dataclass(frozen=True)
class DeleteCommand:
    item_id: int


TransitionCommand = Union[
    AssignCommand,
    CompleteCommand,
    ApproveCommand,
    RejectCommand,
    GenericEditCommand,
    DeleteCommand,
]
