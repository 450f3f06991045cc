import itertools
import pytest
from parish_authz.services.clearance import (
    Actor, assignable_roles, can_assign_role, can_manage_user, effective_clearance,
)
from parish_authz.services.registry import BYPASS, RoleRegistry

REG = RoleRegistry.from_seed()
NON_BYPASS = [r.name for r in REG.roles() if not r.is_bypass]
ALL_ROLES = [r.name for r in REG.roles()]


def actor(*roles, user_id=1, active=True):
    return Actor.of(user_id, roles, active)


@pytest.mark.parametrize('held', [(), *[(r,) for r in NON_BYPASS], ('staff', 'viewer'), ('admin', 'treasurer')])
def test_no_self_escalation(held):
    a = actor(*held)
    level = effective_clearance(REG, held)
    for name in ALL_ROLES:
        target = REG.get_clearance(name)
        if target is BYPASS or target >= level:
            assert can_assign_role(REG, a, name) is False, name


@pytest.mark.parametrize('extra', [(), ('viewer',), ('admin',)])
def test_bypass_supremacy(extra):
    a = actor('super-admin', *extra)
    for name in ALL_ROLES:
        assert can_assign_role(REG, a, name) is True


def test_strict_inequality_on_equal_levels():
    assert can_assign_role(REG, actor('manager'), 'manager') is False
    assert can_assign_role(REG, actor('staff'), 'secretary') is False
    assert can_assign_role(REG, actor('manager'), 'staff') is True


@pytest.mark.parametrize('held', [(), ('viewer',), ('admin',), ('super-admin',)])
def test_unknown_role_always_denied(held):
    assert can_assign_role(REG, actor(*held), 'nonexistent-role') is False
    assert can_assign_role(REG, actor(*held), None) is False


def test_effective_clearance_is_max_not_sum():
    assert effective_clearance(REG, ['staff', 'viewer']) == 2
    assert effective_clearance(REG, []) == 0
    assert effective_clearance(REG, ['viewer', 'super-admin']) is BYPASS
    assert effective_clearance(REG, ['ghost', 'viewer']) == 1
    # level 2 actor cannot manage a staff+viewer holder, level 3 can
    target = actor('staff', 'viewer', user_id=2)
    assert can_manage_user(REG, actor('secretary'), target) is False
    assert can_manage_user(REG, actor('manager'), target) is True


def test_manage_user_rules():
    admin_target = actor('admin', user_id=2)
    sa_target = actor('super-admin', user_id=3)
    assert can_manage_user(REG, actor('admin'), admin_target) is False
    assert can_manage_user(REG, actor('admin'), sa_target) is False
    assert can_manage_user(REG, actor('super-admin'), sa_target) is True
    assert can_manage_user(REG, actor('viewer'), actor(user_id=4)) is True
    assert can_manage_user(REG, actor(), actor(user_id=4)) is False
    assert can_manage_user(REG, None, admin_target) is False
    assert can_manage_user(REG, actor('admin'), None) is False


def test_inactive_actor_has_no_clearance():
    assert can_assign_role(REG, actor('super-admin', active=False), 'viewer') is False
    assert can_manage_user(REG, actor('admin', active=False), actor(user_id=9)) is False


def test_missing_actor_denied():
    for name in ALL_ROLES:
        assert can_assign_role(REG, None, name) is False


def test_guard_fails_closed_on_internal_error(monkeypatch):
    def explode(name):
        raise RuntimeError('registry unavailable')
    reg = RoleRegistry.from_seed()
    monkeypatch.setattr(reg, 'find_role', explode)
    assert can_assign_role(reg, actor('super-admin'), 'viewer') is False


def test_assignable_roles_ordering():
    names = [r.name for r in assignable_roles(REG, actor('manager'))]
    assert names == ['secretary', 'staff', 'treasurer', 'viewer']
    assert assignable_roles(REG, actor('viewer')) == []
    assert [r.name for r in assignable_roles(REG, actor('super-admin'))] == ALL_ROLES


def test_pairwise_guard_is_antisymmetric():
    # two non-bypass roles can never mutually assign each other
    for a, b in itertools.permutations(NON_BYPASS, 2):
        assert not (can_assign_role(REG, actor(a), b) and can_assign_role(REG, actor(b), a))
