from typing import Any, Callable, List, Mapping, Optional, Tuple

from schemas import AttemptRecord, ProgressRecord, QuizConfig

ProgressMutation = Callable[[ProgressRecord], ProgressRecord]


class ProgressStore:
    """Persistence boundary for quiz configuration, progress records and attempt history.

    ``update_progress`` must apply ``mutate`` as one atomic read-modify-write
    per (quiz, student): concurrent callers for the same key are serialised,
    and an exception raised by ``mutate`` leaves the stored record unchanged.
    ``update_progress_with_attempt`` extends that guarantee to the history
    entry written alongside the mutation.
    """

    def get_quiz(self, quiz_id: str) -> Optional[QuizConfig]:
        raise NotImplementedError

    def save_quiz(self, config: QuizConfig) -> QuizConfig:
        raise NotImplementedError

    def list_quizzes(self) -> List[QuizConfig]:
        raise NotImplementedError

    def get_or_create_progress(self, quiz_id: str, student_id: str) -> ProgressRecord:
        raise NotImplementedError

    def update_progress(self, quiz_id: str, student_id: str, mutate: ProgressMutation) -> ProgressRecord:
        raise NotImplementedError

    def update_progress_with_attempt(
        self,
        quiz_id: str,
        student_id: str,
        mutate: ProgressMutation,
        attempt: Mapping[str, Any],
    ) -> Tuple[ProgressRecord, AttemptRecord]:
        """Apply ``mutate`` and append one history entry, both or neither.

        ``attempt`` carries the keyword arguments of :meth:`append_attempt` plus
        ``status``; it is read after ``mutate`` returns. An optional
        ``expected_latest_id`` rejects the write when another entry of the same
        kind was appended in the meantime.
        """
        raise NotImplementedError

    def append_attempt(
        self,
        quiz_id: str,
        student_id: str,
        status: str,
        *,
        assistance_level: Optional[int] = None,
        score: Optional[float] = None,
        correct_answers: Optional[int] = None,
        total_questions: Optional[int] = None,
        raw_answers: Any = None,
        attempt_number: Optional[int] = None,
        feedback: Optional[str] = None,
    ) -> AttemptRecord:
        raise NotImplementedError

    def latest_attempt(self, quiz_id: str, student_id: str, assistance_level: Optional[int] = None) -> Optional[AttemptRecord]:
        """Most recent entry of one kind; ``assistance_level=None`` is the main quiz."""
        raise NotImplementedError

    def list_attempts(self, quiz_id: str, student_id: str) -> List[AttemptRecord]:
        raise NotImplementedError
