"""
Error taxonomy for ballot casting and the stores behind it.

Every error carries a stable ``code`` surfaced to clients, the HTTP status the
API answers with, and whether the caller may retry the same request.
Only StorageUnavailable is retryable; validation failures are terminal for
the submission that caused them.
"""


class VotingError(Exception):
    """Base class for all user-legible voting outcomes."""

    code = "voting_error"
    status_code = 400
    retryable = False
    default_message = "Vote could not be processed"

    def __init__(self, message: str = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {
            "error": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }


class AlreadyVoted(VotingError):
    code = "already_voted"
    status_code = 403
    default_message = "You have already voted. Each user can only vote once."


class DuplicateBallot(VotingError):
    code = "duplicate_ballot"
    status_code = 409
    default_message = "Vote record already exists"


class InvalidCandidate(VotingError):
    code = "invalid_candidate"
    default_message = "One or more candidates are invalid or inactive"


class DuplicatePosition(VotingError):
    code = "duplicate_position"
    default_message = "Cannot vote for multiple candidates for the same position"


class PositionMismatch(VotingError):
    code = "position_mismatch"
    default_message = "Candidate position mismatch"


class NotFound(VotingError):
    code = "not_found"
    status_code = 404
    default_message = "Record not found"


class StorageUnavailable(VotingError):
    code = "storage_unavailable"
    status_code = 503
    retryable = True
    default_message = "Storage is temporarily unavailable, please retry"


class UserExists(VotingError):
    code = "user_exists"
    status_code = 409
    default_message = "User already exists with this student ID or email"


class InvalidCredentials(VotingError):
    code = "invalid_credentials"
    status_code = 401
    default_message = "Invalid credentials"


class Forbidden(VotingError):
    code = "forbidden"
    status_code = 403
    default_message = "Not authorized as admin"
