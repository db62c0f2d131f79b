"""Pydantic schemas for quiz configuration, progress records and status views."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

__all__ = [
    "ASSISTANCE_LEVELS",
    "AssistanceRequirement",
    "AttemptStatus",
    "FinalStatus",
    "NextStep",
    "QuizConfig",
    "ProgressRecord",
    "ProgressSnapshot",
    "AttemptRecord",
    "LevelStatus",
    "StatusView",
]

ASSISTANCE_LEVELS = (1, 2, 3)


class AssistanceRequirement(str, Enum):
    NONE = "NONE"
    ASSISTANCE_LEVEL1 = "ASSISTANCE_LEVEL1"
    ASSISTANCE_LEVEL2 = "ASSISTANCE_LEVEL2"
    ASSISTANCE_LEVEL3 = "ASSISTANCE_LEVEL3"

    @classmethod
    def for_level(cls, level: int) -> "AssistanceRequirement":
        if level not in ASSISTANCE_LEVELS:
            raise ValueError(f"assistance level must be one of {ASSISTANCE_LEVELS}, got {level!r}")
        return cls(f"ASSISTANCE_LEVEL{level}")

    @property
    def level(self) -> Optional[int]:
        """Numeric level, or ``None`` for ``NONE``."""
        if self is AssistanceRequirement.NONE:
            return None
        return int(self.value[-1])


class AttemptStatus(str, Enum):
    PENDING = "PENDING"
    PASSED = "PASSED"
    FAILED = "FAILED"


class FinalStatus(str, Enum):
    PASSED = "PASSED"
    FAILED = "FAILED"


class NextStep(str, Enum):
    """Machine-readable hint for the consuming UI."""

    TAKE_MAIN_QUIZ_NOW = "TAKE_MAIN_QUIZ_NOW"
    TRY_MAIN_QUIZ_AGAIN = "TRY_MAIN_QUIZ_AGAIN"
    COMPLETE_ASSISTANCE_LEVEL1 = "COMPLETE_ASSISTANCE_LEVEL1"
    COMPLETE_ASSISTANCE_LEVEL2 = "COMPLETE_ASSISTANCE_LEVEL2"
    VIEW_ASSISTANCE_LEVEL3 = "VIEW_ASSISTANCE_LEVEL3"
    AWAIT_GRADING = "AWAIT_GRADING"
    QUIZ_PASSED = "QUIZ_PASSED"
    QUIZ_FAILED = "QUIZ_FAILED"
    QUIZ_FAILED_MAX_ATTEMPTS = "QUIZ_FAILED_MAX_ATTEMPTS"

    @classmethod
    def for_level(cls, level: int) -> "NextStep":
        return {
            1: cls.COMPLETE_ASSISTANCE_LEVEL1,
            2: cls.COMPLETE_ASSISTANCE_LEVEL2,
            3: cls.VIEW_ASSISTANCE_LEVEL3,
        }[level]


class QuizConfig(BaseModel):
    """Quiz settings the progress engine depends on."""

    quiz_id: str
    title: str | None = None
    max_attempts: int = Field(default=4, ge=1, description="Failed main-quiz attempts before the student is failed.")
    passing_score: float = Field(default=70.0, ge=0.0, le=100.0, description="Percentage needed to pass a graded attempt.")
    assistance_level1_id: str | None = Field(default=None, description="Yes/no remediation quiz, auto-graded.")
    assistance_level2_id: str | None = Field(default=None, description="Essay remediation, teacher-graded.")
    assistance_level3_id: str | None = Field(default=None, description="Reference material to acknowledge.")
    level1_answer_key: Dict[str, bool] | None = Field(
        default=None,
        description="Expected yes/no answer per question of the level 1 quiz. Never sent by students.",
    )

    def assistance_id(self, level: int) -> str | None:
        if level not in ASSISTANCE_LEVELS:
            raise ValueError(f"assistance level must be one of {ASSISTANCE_LEVELS}, got {level!r}")
        return getattr(self, f"assistance_level{level}_id")


class ProgressRecord(BaseModel):
    """Per (student, quiz) progress through the remediation flow."""

    quiz_id: str
    student_id: str
    current_attempt: int = Field(default=0, ge=0)
    failed_attempts: int = Field(default=0, ge=0)
    last_attempt_passed: bool | None = None
    final_status: FinalStatus | None = None
    level1_completed: bool = False
    level2_completed: bool = False
    level3_completed: bool = False
    assistance_required: AssistanceRequirement = AssistanceRequirement.NONE
    next_step: NextStep = NextStep.TAKE_MAIN_QUIZ_NOW
    override_system_flow: bool = False
    manually_assigned_level: AssistanceRequirement | None = None
    level3_access_granted: bool = False
    version: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.final_status is not None

    def level_completed(self, level: int) -> bool:
        if level not in ASSISTANCE_LEVELS:
            raise ValueError(f"assistance level must be one of {ASSISTANCE_LEVELS}, got {level!r}")
        return bool(getattr(self, f"level{level}_completed"))

    def mark_level_completed(self, level: int) -> None:
        if level not in ASSISTANCE_LEVELS:
            raise ValueError(f"assistance level must be one of {ASSISTANCE_LEVELS}, got {level!r}")
        setattr(self, f"level{level}_completed", True)

    def clear_override(self) -> None:
        self.override_system_flow = False
        self.manually_assigned_level = None


class ProgressSnapshot(ProgressRecord):
    """Frozen copy of a progress record embedded in status views."""

    model_config = ConfigDict(frozen=True)

    @classmethod
    def of(cls, record: ProgressRecord) -> "ProgressSnapshot":
        return cls.model_validate(record.model_dump())


class AttemptRecord(BaseModel):
    """Immutable history entry for a main-quiz attempt or assistance submission."""

    model_config = ConfigDict(frozen=True)

    id: int | None = None
    quiz_id: str
    student_id: str
    assistance_level: int | None = Field(default=None, ge=1, le=3, description="None for the main quiz.")
    status: AttemptStatus
    score: float | None = None
    correct_answers: int | None = Field(default=None, ge=0)
    total_questions: int | None = Field(default=None, ge=0)
    raw_answers: Any = None
    attempt_index: int = Field(default=1, ge=1, description="Monotonic per (student, quiz, kind).")
    attempt_number: int | None = Field(
        default=None,
        description="Main-quiz attempt counter at recording time; None for assistance entries.",
    )
    feedback: str | None = Field(default=None, description="Teacher comment on a graded submission.")
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_main_quiz(self) -> bool:
        return self.assistance_level is None


class LevelStatus(BaseModel):
    model_config = ConfigDict(frozen=True)

    level: int
    available: bool
    completed: bool
    unlocked: bool
    required: bool
    assistance_id: str | None = None


class StatusView(BaseModel):
    """Read-only projection of what the student can and must do next."""

    model_config = ConfigDict(frozen=True)

    quiz_id: str
    student_id: str
    progress: ProgressSnapshot
    max_attempts: int
    attempts_remaining: int
    assistance_required: AssistanceRequirement
    next_step: NextStep
    override_active: bool
    pending_grading: bool
    can_take_quiz: bool
    levels: List[LevelStatus] = Field(default_factory=list)
    history: List[AttemptRecord] = Field(default_factory=list)

    def level(self, level: int) -> LevelStatus:
        for entry in self.levels:
            if entry.level == level:
                return entry
        raise KeyError(level)
