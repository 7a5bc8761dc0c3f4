from .clock import utcnow
from .errors import SessionErrorCode, SessionRejected, error_response, session_error_response
