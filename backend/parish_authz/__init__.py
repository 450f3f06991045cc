from flask import Flask
from werkzeug.exceptions import HTTPException
from flask_jwt_extended import JWTManager
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool
from sqlalchemy.orm import sessionmaker, scoped_session
from dotenv import load_dotenv
from typing import Optional, Dict, Any
import json
import os

load_dotenv()

db_engine = None
SessionLocal = None
capability_resolver = None
jwt = JWTManager()


def _env_config() -> Dict[str, Any]:
    overrides_raw = os.getenv('ROLE_CLEARANCE_OVERRIDES', '')
    return {
        'JWT_SECRET_KEY': os.getenv('JWT_SECRET_KEY', 'dev-secret'),
        'DATABASE_URL': os.getenv('DATABASE_URL', 'sqlite:///dev.db'),
        'CAPABILITY_CACHE_URL': os.getenv('CAPABILITY_CACHE_URL', ''),
        'CAPABILITY_CACHE_TTL': int(os.getenv('CAPABILITY_CACHE_TTL', '1800')),
        'SEED_ADMIN_EMAIL': os.getenv('SEED_ADMIN_EMAIL', 'admin@parish.com'),
        'SEED_ADMIN_PASSWORD': os.getenv('SEED_ADMIN_PASSWORD', 'ChangeMe123!'),
        # JSON object role name -> clearance level; levels are configuration, not constants
        'ROLE_CLEARANCE_OVERRIDES': json.loads(overrides_raw) if overrides_raw else {},
        'AUTHZ_BOOTSTRAP_ON_START': os.getenv('AUTHZ_BOOTSTRAP_ON_START', '0') in ('1', 'true', 'yes'),
    }


def create_app(config: Optional[Dict[str, Any]] = None):
    global db_engine, SessionLocal, capability_resolver
    app = Flask(__name__)

    app.config.update(_env_config())
    if config:
        # allow tests or callers to override default config values
        app.config.update(config)

    # Database
    db_url = app.config['DATABASE_URL']
    if db_url.endswith(':memory:'):
        # Ensure a single shared in-memory SQLite database across all sessions
        db_engine = create_engine(
            db_url,
            echo=False,
            future=True,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    else:
        db_engine = create_engine(db_url, echo=False, future=True)
    SessionLocal = scoped_session(sessionmaker(bind=db_engine, expire_on_commit=False, autoflush=False))

    from .services.cache import build_cache
    from .services.capabilities import CapabilityResolver
    capability_resolver = CapabilityResolver(
        build_cache(app.config['CAPABILITY_CACHE_URL']),
        get_db,
        ttl=app.config['CAPABILITY_CACHE_TTL'],
    )
    app.extensions['capability_resolver'] = capability_resolver

    jwt.init_app(app)

    from .routes.iam import iam_bp
    app.register_blueprint(iam_bp, url_prefix='/iam')

    @app.teardown_appcontext
    def remove_session(exc=None):
        SessionLocal.remove()

    @app.route('/healthz')
    def health():
        return {'status': 'ok'}

    # Unified error handler producing standardized JSON shape
    @app.errorhandler(Exception)
    def handle_errors(e):  # type: ignore
        if isinstance(e, HTTPException):
            payload = {
                'error': {
                    'status': e.code,
                    'title': e.name,
                    'detail': e.description,
                }
            }
            kind = getattr(e, 'kind', None)
            if kind:
                payload['error']['kind'] = kind
            return payload, e.code
        # Unhandled exception
        app.logger.exception('Unhandled exception')
        return {
            'error': {
                'status': 500,
                'title': 'Internal Server Error',
                'detail': 'Unexpected error'
            }
        }, 500

    if app.config['AUTHZ_BOOTSTRAP_ON_START']:
        bootstrap(app)

    return app


def bootstrap(app: Flask):
    """Seed the role catalog and make sure a bypass holder exists (idempotent)."""
    from .models.authz import Base
    from .services.bootstrap import ensure_bypass_holder, seed_catalog
    import parish_authz.models.audit  # noqa: F401  registers audit_logs on Base
    with app.app_context():
        session = get_db()
        try:
            Base.metadata.create_all(session.get_bind())
            counts = seed_catalog(session, overrides=app.config['ROLE_CLEARANCE_OVERRIDES'])
            user = ensure_bypass_holder(session, app.config['SEED_ADMIN_EMAIL'],
                                        password=app.config['SEED_ADMIN_PASSWORD'])
            session.commit()
        except Exception:
            session.rollback()
            raise
    app.logger.info('Authorization bootstrap: %s created, bootstrap admin %s', counts,
                    user.email if user else 'unchanged')
    capability_resolver.invalidate_all()


def get_db():
    return SessionLocal()


def get_capability_resolver():
    return capability_resolver
