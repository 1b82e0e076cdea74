"""Domain errors raised by the services.

Business outcomes (Conflict, NotFound, Forbidden, InvalidRequest) leave the
store unchanged and are turned into guidance at the edges: a reply in the
conversation, a 4xx over HTTP. Transient covers storage and notification
sink failures. InvalidState means an internal invariant was broken.
"""


class CirclePayError(Exception):
    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message


class Conflict(CirclePayError):
    status_code = 409


class AlreadyMember(Conflict):
    pass


class NotFound(CirclePayError):
    status_code = 404


class Forbidden(CirclePayError):
    status_code = 403


class NotAMember(Forbidden):
    pass


class InvalidRequest(CirclePayError):
    status_code = 400


class InvalidState(CirclePayError):
    status_code = 500


class Transient(CirclePayError):
    status_code = 503
