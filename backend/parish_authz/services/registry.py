"""Role & permission registry.

An immutable snapshot of the role catalog (clearance levels, bypass flag, permission grants)
answering lookups for the clearance comparator and the capability resolver. Snapshots are
built either from the seed table or from the database; they never write.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Union

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from parish_authz.constants.permissions import (
    ALL_PERMISSION_NAMES, ROLE_SEED, WILDCARD, RoleSeedRow, display_name_for,
)
from parish_authz.errors import RoleNotFound
from parish_authz.models.authz import Permission, Role, RolePermission

logger = logging.getLogger(__name__)


class _Bypass:
    """Clearance marker of the bypass role; outranks every integer level."""
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self):
        return 'BYPASS'

    def __reduce__(self):
        return (_Bypass, ())


BYPASS = _Bypass()

Clearance = Union[int, _Bypass]


@dataclass(frozen=True)
class RoleDef:
    name: str
    clearance_level: int
    is_bypass: bool = False
    permissions: FrozenSet[str] = field(default_factory=frozenset)
    id: Optional[int] = None
    display_name: Optional[str] = None

    @property
    def label(self) -> str:
        return self.display_name or display_name_for(self.name)


class RoleRegistry:
    def __init__(self, roles: Iterable[RoleDef], permissions: Iterable[str] = ()):
        self._roles: Dict[str, RoleDef] = {}
        self._bypass: Optional[RoleDef] = None
        for role in roles:
            if role.name in self._roles:
                raise ValueError(f'Duplicate role name: {role.name}')
            if role.clearance_level < 0:
                raise ValueError(f'Role {role.name} has negative clearance level {role.clearance_level}')
            if role.is_bypass:
                if self._bypass is not None:
                    raise ValueError(f'Multiple bypass roles: {self._bypass.name}, {role.name}')
                self._bypass = role
            self._roles[role.name] = role
        catalog = set(permissions)
        for role in self._roles.values():
            catalog |= role.permissions
        self._permissions: FrozenSet[str] = frozenset(catalog)

    # --- construction ---
    @classmethod
    def from_seed(cls, rows: Iterable[RoleSeedRow] = ROLE_SEED, overrides: Optional[Mapping[str, int]] = None,
                  permissions: Iterable[str] = ALL_PERMISSION_NAMES) -> 'RoleRegistry':
        """Build from (name, level, is_bypass, [permission...]) tuples; '*' grants the whole catalog."""
        catalog = list(permissions)
        overrides = overrides or {}
        roles = []
        for name, level, is_bypass, perms in rows:
            granted = frozenset(catalog) if WILDCARD in perms else frozenset(perms)
            roles.append(RoleDef(name=name, clearance_level=int(overrides.get(name, level)), is_bypass=bool(is_bypass),
                                 permissions=granted))
        return cls(roles, catalog)

    @classmethod
    def load(cls, session: Session) -> 'RoleRegistry':
        rows = session.execute(
            select(Role)
            .options(selectinload(Role.permissions).selectinload(RolePermission.permission))
            .execution_options(populate_existing=True)
        ).scalars().all()
        roles = [
            RoleDef(
                id=r.id,
                name=r.name,
                clearance_level=r.clearance_level or 0,
                is_bypass=bool(r.is_bypass),
                permissions=frozenset(rp.permission.name for rp in r.permissions),
                display_name=r.display_name,
            )
            for r in rows
        ]
        catalog = session.execute(select(Permission.name)).scalars().all()
        return cls(roles, catalog)

    # --- lookups ---
    @property
    def bypass_role(self) -> Optional[RoleDef]:
        return self._bypass

    @property
    def permissions(self) -> FrozenSet[str]:
        return self._permissions

    def find_role(self, name: Optional[str]) -> Optional[RoleDef]:
        if name is None:
            return None
        return self._roles.get(name)

    def get_role(self, name: str) -> RoleDef:
        role = self.find_role(name)
        if role is None:
            raise RoleNotFound()
        return role

    def is_bypass(self, name: Optional[str]) -> bool:
        return self._bypass is not None and name == self._bypass.name

    def get_clearance(self, name: Optional[str]) -> Clearance:
        """Clearance of a role by name: BYPASS for the bypass role, 0 for unknown names."""
        role = self.find_role(name)
        if role is None:
            return 0
        if role.is_bypass:
            return BYPASS
        return role.clearance_level

    def permissions_for(self, role_names: Iterable[str]) -> FrozenSet[str]:
        granted = set()
        for name in role_names:
            role = self.find_role(name)
            if role is None:
                # Assignment may outlive the role it points to.
                logger.warning('Ignoring unknown role %r while resolving permissions', name)
                continue
            granted |= role.permissions
        return frozenset(granted)

    def roles(self) -> List[RoleDef]:
        """All roles, highest clearance first, ties by name."""
        return sorted(self._roles.values(), key=lambda r: (-r.clearance_level, r.name))

    def __contains__(self, name: object) -> bool:
        return name in self._roles

    def __len__(self) -> int:
        return len(self._roles)


__all__ = ['BYPASS', 'Clearance', 'RoleDef', 'RoleRegistry']
