import logging
from typing import List, Optional

from app.core.errors import NotFoundError
from app.core.models import ScoreBreakdown, TenantScope, Answer, Question, round2
from app.services.providers import AttemptProvider, AnswerProvider, QuestionProvider

logger = logging.getLogger(__name__)


def question_points(question: Question) -> float:
    # a question never takes points away, negative weights count as 0
    return max(float(question.points or 0), 0.0)


def earned_points(question: Question, answer: Optional[Answer]) -> float:
    '''
    marker override wins, then auto marking on the selected option, unanswered is 0.
    clamped to the question's points so score never exceeds max score
    '''
    points = question_points(question)
    if answer is None:
        return 0.0

    if answer.points_awarded is not None:
        earned = float(answer.points_awarded)
    elif answer.selected_option is not None and answer.selected_option.is_correct:
        earned = points
    else:
        earned = 0.0

    return min(max(earned, 0.0), points)


def score_answers(questions: List[Question], answers: List[Answer]) -> ScoreBreakdown:
    by_question = {a.question_id: a for a in answers}

    score = 0.0
    max_score = 0.0
    for question in questions:
        max_score += question_points(question)
        score += earned_points(question, by_question.get(question.question_id))

    # divide by zero guard, a test without points scores 0%
    percentage = round2(score / max_score * 100) if max_score > 0 else 0.0

    return ScoreBreakdown(score=round2(score), max_score=round2(max_score), percentage=percentage)


class ScoreCalculator:
    def __init__(self, attempts: AttemptProvider, answers: AnswerProvider, questions: QuestionProvider):
        self.attempts = attempts
        self.answers = answers
        self.questions = questions

    async def calculate(self, attempt_id: str, scope: TenantScope) -> ScoreBreakdown:
        attempt = await self.attempts.get(attempt_id)
        if not attempt:
            raise NotFoundError(f"Attempt {attempt_id} not found")

        answers = await self.answers.list(attempt_id, scope)
        questions = await self.questions.list(attempt.test_id, scope)

        breakdown = score_answers(questions, answers)
        logger.debug(
            f"Scored attempt {attempt_id}: {breakdown.score}/{breakdown.max_score} "
            f"({breakdown.percentage}%), {len(questions)} questions, {len(answers)} answers"
        )
        return breakdown
