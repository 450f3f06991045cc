from __future__ import annotations
from typing import Any, Dict, Optional
from sqlalchemy.orm import Session
from parish_authz.models.audit import AuditLog


def add_audit(session: Session, actor_user_id: Optional[int], action: str, entity: Optional[str] = None,
              entity_id: Optional[Any] = None, meta: Optional[Dict[str, Any]] = None):
    """Stage an audit log entry in the caller's session.

    Parameters:
      actor_user_id: id of the acting user (0 for system actions such as seeding)
      action: short action code e.g. USER.ROLE.ASSIGN, ROLE.PERM.REPLACE, USER.DEACTIVATE
      entity: optional entity name (Role, User, Permission)
      entity_id: optional primary key or name
      meta: additional JSON-safe dictionary (shallow copied)
    """
    log = AuditLog(
        actor_user_id=actor_user_id or 0,
        action=action,
        entity=entity,
        entity_id=str(entity_id) if entity_id is not None else None,
        meta=dict(meta or {}),
    )
    session.add(log)
    # No commit here; the mutation's transaction boundary controls durability.
    return log
