"""
Question flow - one allocation control reused across a sequence of questions.

Every weight change recomputes the current question's composite and the
live entry average; a commit (drag release or advancing) snapshots the
average for placement against the pool. Advancing resets the control to
equal weights for the next question.
"""

import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from allocation_manager import AllocationManager
from score_aggregator import Question, composite, display_average, entry_average
from survey_config import RankingSettings

logger = logging.getLogger(__name__)


class QuestionFlow:
    def __init__(
        self,
        questions: Sequence[Union[Question, Mapping[str, Any]]],
        manager: Optional[AllocationManager] = None,
        settings: Optional[RankingSettings] = None,
    ):
        if not questions:
            raise ValueError("QuestionFlow needs at least one question.")
        self.questions: List[Question] = [
            q if isinstance(q, Question) else Question.from_dict(q) for q in questions
        ]
        self.settings = settings or RankingSettings()
        self.manager = manager or AllocationManager()
        self.current = 0
        self.finished = False
        self.answers: Dict[str, Optional[float]] = {}
        self.factors: Dict[str, float] = self.manager.rounded_weights()
        self.live_average = self.settings.default_average
        self.committed_average = self.settings.default_average
        self.history: List[Dict[str, Any]] = []

        self._unsubscribers = [
            self.manager.subscribe(self._on_weights),
            self.manager.subscribe_commit(self._on_commit),
        ]
        self.manager.reset()

    @property
    def current_question(self) -> Question:
        return self.questions[self.current]

    def _on_weights(self, vector: Dict[str, float]) -> None:
        self.factors = vector
        question = self.current_question
        self.answers[question.id] = composite(question, vector)
        self.live_average = display_average(self.answers, self.settings.default_average)

    def _on_commit(self, _vector: Dict[str, float]) -> None:
        self.committed_average = display_average(self.answers, self.settings.default_average)

    def next_question(self) -> bool:
        """
        Commit the current question and move on.
        Returns False once the last question has been answered.
        """
        if self.finished:
            return False
        self.manager.commit()
        question = self.current_question
        self.history.append({
            "question": question.id,
            "weights": dict(self.factors),
            "composite": self.answers.get(question.id),
        })

        if self.current >= len(self.questions) - 1:
            logger.debug("Question flow finished after %d questions.", len(self.questions))
            self.finished = True
            self.close()
            return False

        self.current += 1
        logger.debug("Advancing to question %s.", self.current_question.id)
        self.manager.reset()
        return True

    def close(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

    def result(self) -> Dict[str, Any]:
        return {
            "answers": dict(self.answers),
            "average": entry_average(self.answers),
            "committed_average": self.committed_average,
            "history": list(self.history),
        }
