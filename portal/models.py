# portal/models.py

from __future__ import annotations
import uuid
from dataclasses import dataclass
from typing import Optional, Literal, Dict, Any, List
from pydantic import BaseModel, ConfigDict, Field


SubtaskStatus = Literal["yet_to_start", "in_progress", "done", "blocked", "not_applicable"]
NoteType = Literal["text", "file", "image", "transcript"]
Priority = Literal["High", "Medium", "Low"]


class Counsellor(BaseModel):
    id: str
    name: str
    email: str
    phone: Optional[str] = None
    created_at: Optional[str] = None


class Student(BaseModel):
    id: str
    name: str
    email: str
    phone: Optional[str] = None
    target_year: int
    grade: str
    curriculum: str
    other_curriculum: Optional[str] = None
    student_context: Optional[str] = None
    counsellor_id: Optional[str] = None
    created_at: Optional[str] = None


class Phase(BaseModel):
    id: str
    name: str
    sequence: int


class Task(BaseModel):
    id: str
    phase_id: Optional[str] = None
    name: str
    sequence: int
    subtask_suggestion: Optional[str] = None


class Subtask(BaseModel):
    id: str
    student_id: Optional[str] = None
    task_id: Optional[str] = None
    name: str
    status: SubtaskStatus = "yet_to_start"
    remark: Optional[str] = None
    eta: Optional[str] = Field(default=None, description="ISO timestamp of the expected completion")
    owner: Optional[str] = None
    source_key: Optional[str] = Field(default=None, description="Idempotency key for transcript commits")
    created_at: Optional[str] = None


class Note(BaseModel):
    id: str
    student_id: Optional[str] = None
    phase_id: Optional[str] = None
    task_id: Optional[str] = None
    title: Optional[str] = None
    content: Optional[str] = None
    type: NoteType = "text"
    file_url: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    updated_by: Optional[str] = None


class FileItem(BaseModel):
    id: str
    student_id: Optional[str] = None
    phase_id: Optional[str] = None
    task_id: Optional[str] = None
    file_name: str
    file_url: str
    file_type: Optional[str] = None
    file_size: Optional[int] = None
    description: Optional[str] = None
    counsellor_id: Optional[str] = None
    created_at: Optional[str] = None


def new_client_id() -> str:
    return str(uuid.uuid4())


class ExtractedTaskProposal(BaseModel):
    """
    A candidate subtask awaiting review.

    Lives only in the review working set (and its on-disk cache) until it is
    committed; `id` is generated here and never used as a database key.
    Serialized with camelCase aliases to match the extraction wire format.
    """
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default_factory=new_client_id)
    description: str = ""
    suggested_phase_id: Optional[str] = Field(default=None, alias="suggestedPhaseId")
    suggested_phase_name: Optional[str] = Field(default=None, alias="suggestedPhaseName")
    suggested_task_id: Optional[str] = Field(default=None, alias="suggestedTaskId")
    suggested_task_name: Optional[str] = Field(default=None, alias="suggestedTaskName")
    owner: Optional[str] = None
    due_date: Optional[str] = Field(default=None, alias="dueDate")
    priority: Priority = "Medium"
    notes: Optional[str] = None
    is_new: bool = Field(default=False, alias="isNew")
    is_deleted: bool = Field(default=False, alias="isDeleted")

    def to_json_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)

    def is_committable(self) -> bool:
        return bool(self.description.strip()) and self.suggested_task_id is not None


# Proposal ids and database ids never mix: commit results pair them explicitly.

@dataclass(frozen=True)
class Proposed:
    client_id: str


@dataclass(frozen=True)
class Committed:
    remote_id: str


@dataclass
class CommitResult:
    created: List[tuple]  # (Proposed, Committed)
    skipped: List[Proposed]
    note_title: Optional[str] = None

    @property
    def created_count(self) -> int:
        return len(self.created)
