'''
collaborators the engine reads from, attempts / tests / answers / questions are written by other services,
the engine only reads them. Default implementations read the shared mongo database.
'''

import logging
from functools import wraps
from typing import List, Optional

from pymongo.errors import DuplicateKeyError, PyMongoError

from app.core.errors import TransientComputeError
from app.core.models import Attempt, ExamTest, Answer, Question, TenantScope

logger = logging.getLogger(__name__)


def collaborator_query(func):
    # a failing query is surfaced to the caller as transient, never retried here
    @wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except DuplicateKeyError:
            # uniqueness is a domain signal, callers turn it into a conflict
            raise
        except PyMongoError as e:
            logger.error(f"{func.__qualname__} failed: {e}")
            raise TransientComputeError(f"Collaborator query failed: {func.__qualname__}") from e

    return wrapper


def clean_doc(doc: dict) -> dict:
    doc.pop("_id", None)
    return doc


class AttemptProvider:
    def __init__(self, db):
        self.db = db

    @collaborator_query
    async def get(self, attempt_id: str) -> Optional[Attempt]:
        doc = await self.db.attempts.find_one({"attempt_id": attempt_id})
        return Attempt(**clean_doc(doc)) if doc else None


class TestProvider:
    __test__ = False  # keep pytest from collecting it

    def __init__(self, db):
        self.db = db

    @collaborator_query
    async def get(self, test_id: str) -> Optional[ExamTest]:
        doc = await self.db.tests.find_one({"test_id": test_id})
        return ExamTest(**clean_doc(doc)) if doc else None


class AnswerProvider:
    def __init__(self, db):
        self.db = db

    @collaborator_query
    async def list(self, attempt_id: str, scope: TenantScope) -> List[Answer]:
        docs = await self.db.answers.find({"attempt_id": attempt_id, **scope.query()}).to_list(None)
        return [Answer(**clean_doc(d)) for d in docs]


class QuestionProvider:
    def __init__(self, db):
        self.db = db

    @collaborator_query
    async def list(self, test_id: str, scope: TenantScope) -> List[Question]:
        docs = await self.db.questions.find({"test_id": test_id, **scope.query()}).to_list(None)
        return [Question(**clean_doc(d)) for d in docs]


class NotificationSink:
    '''
    outbox for the communications service, which renders and mails the results summary.
    callers treat notify as fire and forget
    '''

    def __init__(self, db):
        self.db = db

    async def notify(self, user_id: str, summary: dict) -> None:
        await self.db.notifications.insert_one({
            "user_id": user_id,
            "kind": "results_summary",
            "summary": summary,
            "sent": False,
        })
