from agencyhub.platform.security.context import AGENCY_BOUND_ROLES, CLIENT_ROLES, STAFF_ROLES, Identity, Role
from agencyhub.platform.security.errors import AuthorizationError, GuardInputError
from agencyhub.platform.security.security_log import SecurityLogger, security_logger

__all__ = [
    "AGENCY_BOUND_ROLES",
    "CLIENT_ROLES",
    "STAFF_ROLES",
    "Identity",
    "Role",
    "AuthorizationError",
    "GuardInputError",
    "SecurityLogger",
    "security_logger",
]
