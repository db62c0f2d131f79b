"""Assistance availability lookup for a quiz."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from engines.base import ProgressStore
from engines.errors import NotFound
from schemas import ASSISTANCE_LEVELS, AssistanceRequirement, NextStep, ProgressRecord, QuizConfig


@dataclass(frozen=True)
class AssistanceStage:
    """One remediation stage of a quiz, evaluated against a progress record."""

    level: int
    is_configured: bool
    is_completed: bool
    requirement: AssistanceRequirement
    next_step: NextStep
    assistance_id: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.is_configured and not self.is_completed


@dataclass(frozen=True)
class AssistanceAvailability:
    quiz: QuizConfig
    configured: Dict[int, bool]

    def is_configured(self, level: int) -> bool:
        return self.configured.get(level, False)

    def stages(self, record: Optional[ProgressRecord] = None) -> Tuple[AssistanceStage, ...]:
        """Ordered stage descriptors, level 1 first."""
        result: List[AssistanceStage] = []
        for level in ASSISTANCE_LEVELS:
            result.append(
                AssistanceStage(
                    level=level,
                    is_configured=self.is_configured(level),
                    is_completed=record.level_completed(level) if record is not None else False,
                    requirement=AssistanceRequirement.for_level(level),
                    next_step=NextStep.for_level(level),
                    assistance_id=self.quiz.assistance_id(level),
                )
            )
        return tuple(result)

    def first_open_stage(self, record: ProgressRecord, unlocked: int) -> Optional[AssistanceStage]:
        """First configured, incomplete stage among levels ``1..unlocked``."""
        for stage in self.stages(record):
            if stage.level > unlocked:
                break
            if stage.is_open:
                return stage
        return None


class AssistanceAvailabilityResolver:
    """Reports which assistance levels a quiz has configured."""

    def __init__(self, store: ProgressStore) -> None:
        self.store = store

    def quiz(self, quiz_id: str) -> QuizConfig:
        config = self.store.get_quiz(quiz_id)
        if config is None:
            raise NotFound(f"quiz {quiz_id} not found", quiz_id=quiz_id)
        return config

    def resolve(self, quiz_id: str) -> AssistanceAvailability:
        config = self.quiz(quiz_id)
        configured = {level: bool(config.assistance_id(level)) for level in ASSISTANCE_LEVELS}
        return AssistanceAvailability(quiz=config, configured=configured)
