"""
Caller authorization for quota operations.

A caller is the authenticated user document (as returned by
utils.auth.get_current_user) or SERVICE_CALLER for trusted internal
callers such as the payment webhook handler and the expiry sweep.
"""

import logging
from typing import Optional

from .exceptions import NotAuthenticated, PermissionDenied, ValidationError

logger = logging.getLogger(__name__)

SERVICE_ROLE = "service"

SERVICE_CALLER = {"id": "token-quota-service", "role": SERVICE_ROLE}


def require_caller(caller: Optional[dict]) -> dict:
    """Raise NotAuthenticated unless the caller carries an id."""
    if not caller or not caller.get("id"):
        raise NotAuthenticated()
    return caller


def is_privileged(caller: dict) -> bool:
    """Admins and internal services may act on any owner."""
    return bool(caller.get("is_admin")) or caller.get("role") == SERVICE_ROLE


def authorize_owner(caller: Optional[dict], owner_id: str) -> str:
    """
    Check that the caller may act on owner_id.

    Returns:
        The validated owner_id

    Raises:
        NotAuthenticated: no caller identity
        ValidationError: owner_id missing or blank
        PermissionDenied: caller is a regular user acting on someone else
    """
    caller = require_caller(caller)

    if not isinstance(owner_id, str) or not owner_id.strip():
        raise ValidationError("owner_id is required")

    if caller["id"] != owner_id and not is_privileged(caller):
        logger.warning(f"Caller {caller['id']} denied access to quota of {owner_id}")
        raise PermissionDenied()

    return owner_id


def require_service(caller: Optional[dict]) -> dict:
    """Operations that are not tied to a single owner (the expiry sweep)."""
    caller = require_caller(caller)
    if not is_privileged(caller):
        raise PermissionDenied("Only internal services may run this operation")
    return caller
