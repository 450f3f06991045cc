"""Error kinds raised by the authorization core.

Each kind is a werkzeug HTTPException so the application's unified error handler renders it
with the standard JSON error shape; callers outside a request can still catch them as plain
exceptions (``except AuthzError``). Descriptions are deliberately generic so that a denied
actor never learns the target's clearance or role internals.
"""
from werkzeug.exceptions import HTTPException, BadRequest, Forbidden, NotFound, Conflict, ServiceUnavailable


class AuthzError(HTTPException):
    kind = 'AuthzError'


class RoleNotFound(AuthzError, NotFound):
    kind = 'RoleNotFound'
    description = 'Role not found'


class InvalidRole(RoleNotFound):
    """Write paths reject unknown role names outright instead of defaulting them."""
    code = 400
    kind = 'InvalidRole'
    description = 'Invalid role'


class UserNotFound(AuthzError, NotFound):
    kind = 'UserNotFound'
    description = 'User not found'


class PermissionDenied(AuthzError, Forbidden):
    kind = 'PermissionDenied'
    description = 'You do not have permission to perform this action'


class SelfTargetProhibited(AuthzError, BadRequest):
    kind = 'SelfTargetProhibited'
    description = 'You cannot perform this action on your own account'


class LastAdminProtection(AuthzError, Conflict):
    kind = 'LastAdminProtection'
    description = 'At least one active super administrator must remain'


class RoleInUse(AuthzError, Conflict):
    kind = 'RoleInUse'
    description = 'Role is still assigned to users'


class StorageError(AuthzError, ServiceUnavailable):
    kind = 'StorageError'
    description = 'Storage unavailable, please retry'


ASSIGN_DENIED = 'You do not have permission to assign this role'
REVOKE_DENIED = 'You do not have permission to revoke this role'
MANAGE_USER_DENIED = 'You do not have permission to manage this user'
MANAGE_ROLE_DENIED = 'You do not have permission to manage this role'

__all__ = [
    'AuthzError', 'RoleNotFound', 'InvalidRole', 'UserNotFound', 'PermissionDenied',
    'SelfTargetProhibited', 'LastAdminProtection', 'RoleInUse', 'StorageError',
    'ASSIGN_DENIED', 'REVOKE_DENIED', 'MANAGE_USER_DENIED', 'MANAGE_ROLE_DENIED',
]
