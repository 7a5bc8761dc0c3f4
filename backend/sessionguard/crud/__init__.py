from .crud_user import user
from . import crud_session
from . import crud_security_incident
