import unittest

from pydantic import ValidationError

from engines.errors import NotFound
from engines.progression import ProgressionEngine
from engines.status import StatusProjector, effective_assistance
from engines.store import InMemoryProgressStore
from schemas import AssistanceRequirement, FinalStatus, NextStep, ProgressRecord, QuizConfig


class StatusProjectorTests(unittest.TestCase):
    def setUp(self):
        self.store = InMemoryProgressStore()
        self.store.save_quiz(
            QuizConfig(
                quiz_id="q",
                max_attempts=4,
                assistance_level1_id="a1",
                assistance_level3_id="a3",
            )
        )
        self.engine = ProgressionEngine(self.store, emit_statements=False)
        self.projector = StatusProjector(self.store)

    def test_first_query_creates_record(self):
        status = self.projector.get_status("q", "s")
        self.assertEqual(status.progress.current_attempt, 0)
        self.assertTrue(status.can_take_quiz)
        self.assertEqual(status.attempts_remaining, 4)
        self.assertEqual(status.next_step, NextStep.TAKE_MAIN_QUIZ_NOW)
        self.assertEqual(status.history, [])

    def test_view_progress_cannot_be_modified(self):
        self.engine.increment_attempt("q", "s")
        status = self.projector.get_status("q", "s")
        with self.assertRaises(ValidationError):
            status.progress.current_attempt = 0
        with self.assertRaises(ValidationError):
            status.progress.mark_level_completed(1)
        self.assertEqual(self.store.get_or_create_progress("q", "s").current_attempt, 1)
        self.assertEqual(self.projector.get_status("q", "s"), status)

    def test_unknown_quiz(self):
        with self.assertRaises(NotFound):
            self.projector.get_status("nope", "s")

    def test_repeated_queries_are_identical(self):
        self.engine.increment_attempt("q", "s")
        self.engine.apply_main_quiz_grading("q", "s", passed=False)
        first = self.projector.get_status("q", "s")
        second = self.projector.get_status("q", "s")
        self.assertEqual(first, second)

    def test_level_availability_and_unlocking(self):
        self.engine.increment_attempt("q", "s")
        self.engine.apply_main_quiz_grading("q", "s", passed=False)
        status = self.projector.get_status("q", "s")

        level1, level2, level3 = status.levels
        self.assertTrue(level1.available)
        self.assertTrue(level1.unlocked)
        self.assertTrue(level1.required)
        self.assertEqual(level1.assistance_id, "a1")
        self.assertFalse(level2.available)
        self.assertFalse(level2.unlocked)
        self.assertTrue(level3.available)
        self.assertFalse(level3.unlocked)
        self.assertFalse(status.can_take_quiz)

    def test_terminal_record_cannot_take_quiz(self):
        self.engine.toggle_final_status("q", "s", True)
        status = self.projector.get_status("q", "s")
        self.assertFalse(status.can_take_quiz)
        self.assertEqual(status.next_step, NextStep.QUIZ_PASSED)
        self.assertEqual(status.assistance_required, AssistanceRequirement.NONE)

    def test_reopened_record_at_failure_limit_stays_locked(self):
        self.store.save_quiz(QuizConfig(quiz_id="short", max_attempts=1))
        self.engine.increment_attempt("short", "s")
        self.engine.apply_main_quiz_grading("short", "s", passed=False)
        self.engine.toggle_final_status("short", "s", None)
        status = self.projector.get_status("short", "s")
        self.assertIsNone(status.progress.final_status)
        self.assertFalse(status.can_take_quiz)
        self.assertEqual(status.attempts_remaining, 0)


class EffectiveAssistanceTests(unittest.TestCase):
    def test_override_takes_precedence_over_automatic_requirement(self):
        record = ProgressRecord(
            quiz_id="q",
            student_id="s",
            current_attempt=1,
            failed_attempts=1,
            assistance_required=AssistanceRequirement.ASSISTANCE_LEVEL1,
            override_system_flow=True,
            manually_assigned_level=AssistanceRequirement.ASSISTANCE_LEVEL3,
        )
        self.assertEqual(
            effective_assistance(record),
            (AssistanceRequirement.ASSISTANCE_LEVEL3, NextStep.VIEW_ASSISTANCE_LEVEL3),
        )

    def test_override_to_completed_level_allows_retry(self):
        record = ProgressRecord(
            quiz_id="q",
            student_id="s",
            level2_completed=True,
            override_system_flow=True,
            manually_assigned_level=AssistanceRequirement.ASSISTANCE_LEVEL2,
        )
        self.assertEqual(
            effective_assistance(record),
            (AssistanceRequirement.NONE, NextStep.TRY_MAIN_QUIZ_AGAIN),
        )

    def test_completed_automatic_requirement_no_longer_blocks(self):
        record = ProgressRecord(
            quiz_id="q",
            student_id="s",
            level1_completed=True,
            assistance_required=AssistanceRequirement.ASSISTANCE_LEVEL1,
            next_step=NextStep.COMPLETE_ASSISTANCE_LEVEL1,
        )
        self.assertEqual(
            effective_assistance(record),
            (AssistanceRequirement.NONE, NextStep.TAKE_MAIN_QUIZ_NOW),
        )

    def test_terminal_record_keeps_stored_step(self):
        record = ProgressRecord(
            quiz_id="q",
            student_id="s",
            final_status=FinalStatus.FAILED,
            next_step=NextStep.QUIZ_FAILED_MAX_ATTEMPTS,
        )
        self.assertEqual(
            effective_assistance(record),
            (AssistanceRequirement.NONE, NextStep.QUIZ_FAILED_MAX_ATTEMPTS),
        )


if __name__ == "__main__":
    unittest.main()
