'''
error taxonomy of the scoring engine, routes map these onto http statuses in app/api/main.py
'''


class EngineError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(EngineError):
    status_code = 404


class InvalidStateError(EngineError):
    status_code = 400


class ConflictError(EngineError):
    status_code = 409


class ScopeIntegrityError(EngineError):
    # never defaulted away, aggregating without a tenant would mix organisations
    status_code = 422


class TransientComputeError(EngineError):
    status_code = 503


class LeaderboardConflictError(TransientComputeError):
    def __init__(self, course_id: str, attempts: int):
        super().__init__(
            f"Leaderboard for course {course_id} kept changing, gave up after {attempts} attempts"
        )
        self.course_id = course_id
        self.attempts = attempts
