"""Per-actor capability resolution with an advisory cache.

A capability is a named boolean derived from raw permission names through the fixed
CAPABILITIES table; bypass holders get every capability. Results are cached per actor for
a bounded TTL; every mutation that can change them evicts the affected keys after commit.
"""
from __future__ import annotations
import logging
import time
from threading import Lock
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from parish_authz.constants.permissions import CAPABILITIES
from parish_authz.errors import StorageError
from parish_authz.services.cache import CapabilityCache
from parish_authz.services.clearance import Actor, assignable_roles, holds_bypass, load_actor
from parish_authz.services.registry import RoleRegistry

logger = logging.getLogger(__name__)

DEFAULT_TTL = 30 * 60


def compute_capabilities(registry: RoleRegistry, actor: Optional[Actor],
                         table: Mapping[str, Tuple[str, ...]] = CAPABILITIES) -> Dict[str, bool]:
    if actor is None or not actor.is_active:
        return {name: False for name in table}
    if holds_bypass(registry, actor):
        return {name: True for name in table}
    perms = registry.permissions_for(actor.role_names)
    return {name: any(p in perms for p in required) for name, required in table.items()}


def role_summary(role) -> Dict[str, Any]:
    return {
        'id': role.id,
        'name': role.name,
        'display_name': role.label,
        'clearance_level': role.clearance_level,
        'permissions_count': len(role.permissions),
    }


class CapabilityResolver:
    def __init__(self, cache: CapabilityCache, session_factory: Callable[[], Session], ttl: float = DEFAULT_TTL,
                 table: Mapping[str, Tuple[str, ...]] = CAPABILITIES, clock: Callable[[], float] = time.time):
        self.cache = cache
        self.session_factory = session_factory
        self.ttl = ttl
        self.table = dict(table)
        self._clock = clock
        # Bumped on every invalidation; results computed under an older generation are not cached.
        self._generations: Dict[int, int] = {}
        self._global_generation = 0
        self._gen_lock = Lock()

    @staticmethod
    def _prefix(actor_id: int) -> str:
        # Trailing colon keeps actor 1 from matching actor 12.
        return f'actor:{actor_id}:'

    def _read(self, key: str):
        entry = self.cache.get(key)
        if not isinstance(entry, dict) or 'value' not in entry:
            return None
        age = self._clock() - float(entry.get('at', 0))
        if age > self.ttl:
            # StaleCache: the backend kept an entry past its TTL.
            logger.warning('Stale capability cache entry %s (age %.0fs > ttl %.0fs); recomputing', key, age, self.ttl)
            self.cache.invalidate(key)
            return None
        return entry['value']

    def _generation(self, actor_id: int) -> Tuple[int, int]:
        with self._gen_lock:
            return self._global_generation, self._generations.get(actor_id, 0)

    def _write(self, key: str, value, actor_id: int, generation: Tuple[int, int]) -> None:
        if self._generation(actor_id) != generation:
            logger.debug('Skipping cache write for %s: invalidated while computing', key)
            return
        self.cache.set(key, {'at': self._clock(), 'value': value}, self.ttl)

    def _snapshot(self, actor_id: int):
        session = self.session_factory()
        try:
            return RoleRegistry.load(session), load_actor(session, actor_id)
        except SQLAlchemyError as e:
            logger.error('Capability resolution failed for actor %s: %s', actor_id, e)
            raise StorageError() from e

    def resolve_capabilities(self, actor_id: Optional[int]) -> Dict[str, bool]:
        if actor_id is None:
            return compute_capabilities(RoleRegistry([]), None, self.table)
        key = self._prefix(actor_id) + 'caps'
        cached = self._read(key)
        if cached is not None:
            return dict(cached)
        generation = self._generation(actor_id)
        registry, actor = self._snapshot(actor_id)
        caps = compute_capabilities(registry, actor, self.table)
        self._write(key, caps, actor_id, generation)
        return caps

    def has_capabilities(self, actor_id: Optional[int], *names: str) -> bool:
        caps = self.resolve_capabilities(actor_id)
        return all(caps.get(n, False) for n in names)

    def list_assignable_roles(self, actor_id: Optional[int]) -> List[Dict[str, Any]]:
        """Role-selection contract: [{id, name, display_name, clearance_level, permissions_count}]."""
        if actor_id is None:
            return []
        key = self._prefix(actor_id) + 'assignable'
        cached = self._read(key)
        if cached is not None:
            return list(cached)
        generation = self._generation(actor_id)
        registry, actor = self._snapshot(actor_id)
        roles = [role_summary(r) for r in assignable_roles(registry, actor)]
        self._write(key, roles, actor_id, generation)
        return roles

    def invalidate_actor(self, actor_id: int) -> None:
        with self._gen_lock:
            self._generations[actor_id] = self._generations.get(actor_id, 0) + 1
        self.cache.invalidate(self._prefix(actor_id))

    def invalidate_all(self) -> None:
        with self._gen_lock:
            self._global_generation += 1
        self.cache.invalidate('actor:')


__all__ = ['CapabilityResolver', 'compute_capabilities', 'role_summary', 'DEFAULT_TTL']
