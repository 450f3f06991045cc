#!/usr/bin/env python
"""Idempotent seed script for the parish role catalog and bootstrap administrator.

Usage:
    python backend/scripts/seed_authz.py               # seed normally
    python backend/scripts/seed_authz.py --show-roles  # print roles with level & permission counts
    python backend/scripts/seed_authz.py --dry-run     # run logic then rollback (no DB changes)
    python backend/scripts/seed_authz.py --export-json roles.json
    python backend/scripts/seed_authz.py --validate    # exit 2 on catalog problems
"""
from __future__ import annotations
import os, sys, argparse, textwrap, json, hashlib
from sqlalchemy import text

# Allow running from repo root
sys.path.append(os.path.abspath('backend'))

from parish_authz import create_app, get_db  # type: ignore
from parish_authz.models.authz import Base
import parish_authz.models.audit  # noqa: F401
from parish_authz.services.bootstrap import bypass_holder_ids, ensure_bypass_holder, seed_catalog
from parish_authz.services.registry import RoleRegistry


def build_role_map(session):
    mapping = {}
    for role in RoleRegistry.load(session).roles():
        mapping[role.name] = {
            'clearance_level': role.clearance_level,
            'is_bypass': role.is_bypass,
            'permissions': sorted(role.permissions),
        }
    return mapping


def print_role_summary(role_map):
    if not role_map:
        print("[INFO] No roles present.")
        return
    name_w = max(len(n) for n in role_map)
    print(f"{'Role'.ljust(name_w)} | Level | Count | Bypass")
    print('-' * (name_w + 30))
    for name, info in role_map.items():
        print(f"{name.ljust(name_w)} | {str(info['clearance_level']).rjust(5)} | "
              f"{str(len(info['permissions'])).rjust(5)} | {'yes' if info['is_bypass'] else ''}")


def validate(session):
    problems = []
    try:
        registry = RoleRegistry.load(session)
    except ValueError as e:
        return [str(e)]
    if registry.bypass_role is None:
        problems.append('No bypass role defined')
    else:
        missing = registry.permissions - registry.bypass_role.permissions
        if missing:
            problems.append(f"Bypass role lacks permissions: {sorted(missing)}")
        if not bypass_holder_ids(session, registry):
            problems.append('No active user holds the bypass role')
    return problems


def parse_args():
    p = argparse.ArgumentParser(
        description="Seed parish roles, permissions & bootstrap administrator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=textwrap.dedent("""Examples:\n  seed normally: seed_authz.py\n  dry run: seed_authz.py --dry-run\n  show roles: seed_authz.py --show-roles\n""")
    )
    p.add_argument('--show-roles', action='store_true', help='Print roles with clearance and permission counts after seeding')
    p.add_argument('--dry-run', action='store_true', help='Rollback after operations (no commit)')
    p.add_argument('--export-json', nargs='?', const='-', metavar='FILE', help='Export role catalog JSON (to FILE or stdout if omitted)')
    p.add_argument('--validate', action='store_true', help='Validate catalog & bootstrap invariants; exits 2 on problems')
    p.add_argument('--admin-email', metavar='EMAIL', help='Bootstrap administrator email (default: SEED_ADMIN_EMAIL)')
    return p.parse_args()


def main():
    args = parse_args()
    app = create_app()
    with app.app_context():
        session = get_db()
        try:
            # Ensure tables exist (lightweight fallback if migrations not run yet)
            session.execute(text('SELECT 1 FROM roles LIMIT 1'))
        except Exception:
            session.rollback()
            Base.metadata.create_all(session.get_bind())
        finally:
            session.commit()

        try:
            counts = seed_catalog(session, overrides=app.config['ROLE_CLEARANCE_OVERRIDES'])
            admin_email = args.admin_email or app.config['SEED_ADMIN_EMAIL']
            admin = ensure_bypass_holder(session, admin_email, password=app.config['SEED_ADMIN_PASSWORD'])
            if admin is not None:
                print(f"[INFO] Bootstrap administrator {admin_email} holds the bypass role.")
            role_map = build_role_map(session)
            if args.validate:
                problems = validate(session)
                if problems:
                    print('\n[VALIDATION] FAIL:')
                    for problem in problems:
                        print(' -', problem)
                    session.rollback()
                    sys.exit(2)
                print('[VALIDATION] OK: catalog & bootstrap invariants hold.')
            if args.dry_run:
                session.rollback()
                print(f"[DRY-RUN] (rolled back) Permissions would create: {counts['permissions']}, Roles would create: {counts['roles']}")
            else:
                session.commit()
                print(f"[DONE] Permissions created: {counts['permissions']}, Roles created: {counts['roles']}")
            if args.show_roles:
                print('\nRole Summary:')
                print_role_summary(role_map)
            if args.export_json is not None:
                canonical = json.dumps(role_map, sort_keys=True, separators=(',', ':'))
                payload = {
                    'roles': role_map,
                    'meta': {
                        'roles_checksum_sha256': hashlib.sha256(canonical.encode('utf-8')).hexdigest(),
                        'role_names_sorted': sorted(role_map),
                        'dry_run': args.dry_run,
                    }
                }
                if args.export_json == '-':
                    print(json.dumps(payload, indent=2, sort_keys=True))
                else:
                    with open(args.export_json, 'w', encoding='utf-8') as f:
                        json.dump(payload, f, indent=2, sort_keys=True)
                    print(f"[INFO] Exported JSON to {args.export_json}")
        except Exception:
            session.rollback()
            raise

if __name__ == '__main__':
    main()
