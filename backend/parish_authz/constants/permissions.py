"""Central definitions of permission names, the role seed table and the capability map.
Permission names are an external contract with the parish CRUD screens; never rename them
silently. Add new ones and retire old ones through the catalog operations instead.
"""
from __future__ import annotations
from typing import Dict, List, Tuple

BYPASS_ROLE_NAME = 'super-admin'
WILDCARD = '*'

PERMISSION_GROUPS: Dict[str, List[str]] = {
    'users': ['access users', 'manage users', 'delete users'],
    'roles': ['access roles', 'manage roles', 'delete roles'],
    'members': ['access members', 'manage members', 'delete members', 'export members'],
    'families': ['access families', 'manage families', 'delete families'],
    'sacraments': ['access sacraments', 'manage sacraments', 'delete sacraments'],
    'tithes': ['access tithes', 'manage tithes', 'delete tithes', 'view financial reports'],
    'activities': ['access activities', 'manage activities', 'delete activities'],
    'community groups': ['access community groups', 'manage community groups'],
    'reports': ['access reports', 'export reports', 'access dashboard'],
    'settings': ['access settings', 'manage settings'],
}


def build_all_permission_names() -> List[str]:
    names: List[str] = []
    for perms in PERMISSION_GROUPS.values():
        names.extend(perms)
    return names

ALL_PERMISSION_NAMES = build_all_permission_names()

# (role_name, clearance_level, is_bypass, permission names). '*' expands to the whole catalog.
RoleSeedRow = Tuple[str, int, bool, List[str]]

ROLE_SEED: List[RoleSeedRow] = [
    ('super-admin', 5, True, [WILDCARD]),
    ('admin', 4, False, [
        'access users', 'manage users',
        'access roles',
        'access members', 'manage members', 'export members',
        'access families', 'manage families',
        'access sacraments', 'manage sacraments',
        'access tithes', 'manage tithes', 'view financial reports',
        'access activities', 'manage activities',
        'access community groups', 'manage community groups',
        'access reports', 'export reports', 'access dashboard',
        'access settings',
    ]),
    ('manager', 3, False, [
        'access members', 'manage members',
        'access families', 'manage families',
        'access sacraments', 'manage sacraments',
        'access activities', 'manage activities',
        'access community groups',
        'access reports', 'access dashboard',
    ]),
    ('staff', 2, False, [
        'access members', 'manage members',
        'access families',
        'access sacraments',
        'access activities',
        'access dashboard',
    ]),
    ('secretary', 2, False, [
        'access members', 'manage members',
        'access families', 'manage families',
        'access sacraments', 'manage sacraments',
        'access reports', 'access dashboard',
    ]),
    ('treasurer', 2, False, [
        'access members',
        'access tithes', 'manage tithes', 'view financial reports',
        'access reports', 'export reports', 'access dashboard',
    ]),
    ('viewer', 1, False, [
        'access members',
        'access families',
        'access sacraments',
        'access activities',
        'access dashboard',
    ]),
]

ROLE_DESCRIPTIONS: Dict[str, str] = {
    'super-admin': 'Full system access with all permissions',
    'admin': 'Administrative access with most permissions',
    'manager': 'Management level access for operations',
    'staff': 'Basic staff operations access',
    'secretary': 'Staff level access for daily operations',
    'treasurer': 'Financial management and reporting access',
    'viewer': 'Read-only access to basic information',
}

# Capability -> permission names; holding any one of them grants the capability.
# Bypass holders get every capability regardless of this table.
CAPABILITIES: Dict[str, Tuple[str, ...]] = {
    'create_user': ('manage users',),
    'edit_user': ('manage users',),
    'delete_user': ('delete users',),
    'assign_roles': ('manage users',),
    'view_users': ('access users', 'manage users'),
    'view_roles': ('access roles', 'manage roles'),
    'manage_roles': ('manage roles',),
    'delete_roles': ('delete roles',),
    'can_access_members': ('access members',),
    'can_manage_members': ('manage members',),
    'can_delete_members': ('delete members',),
    'can_export_members': ('export members',),
    'can_access_families': ('access families',),
    'can_manage_families': ('manage families',),
    'can_delete_families': ('delete families',),
    'can_access_sacraments': ('access sacraments',),
    'can_manage_sacraments': ('manage sacraments',),
    'can_delete_sacraments': ('delete sacraments',),
    'can_access_tithes': ('access tithes',),
    'can_manage_tithes': ('manage tithes',),
    'can_delete_tithes': ('delete tithes',),
    'can_view_financial_reports': ('view financial reports',),
    'can_access_activities': ('access activities',),
    'can_manage_activities': ('manage activities',),
    'can_delete_activities': ('delete activities',),
    'can_access_community_groups': ('access community groups',),
    'can_manage_community_groups': ('manage community groups',),
    'can_access_reports': ('access reports',),
    'can_export_reports': ('export reports',),
    'can_access_dashboard': ('access dashboard',),
    'can_access_settings': ('access settings', 'manage settings'),
    'can_manage_settings': ('manage settings',),
}


def display_name_for(role_name: str) -> str:
    return role_name.replace('-', ' ').replace('_', ' ').title()
