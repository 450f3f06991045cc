import os, sys, pytest
# Ensure the backend directory is on path so 'parish_authz' can be imported
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
import parish_authz
from parish_authz import create_app, get_db
from parish_authz.models.authz import Base
# Import all model modules to ensure tables are registered before create_all
import parish_authz.models.audit  # noqa: F401

TEST_CONFIG = {
    'DATABASE_URL': 'sqlite+pysqlite:///:memory:',
    'JWT_SECRET_KEY': 'test-secret-key-with-enough-length-for-hs256',
    'CAPABILITY_CACHE_URL': '',
    'AUTHZ_BOOTSTRAP_ON_START': False,
    'ROLE_CLEARANCE_OVERRIDES': {},
    'TESTING': True,
}

@pytest.fixture(scope='session', autouse=True)
def app_instance():
    app = create_app(TEST_CONFIG)
    with app.app_context():
        engine = get_db().get_bind()
        Base.metadata.create_all(engine)
    yield app

@pytest.fixture(autouse=True)
def fresh_schema(app_instance):
    # Every test starts from empty tables and an empty capability cache
    parish_authz.SessionLocal.remove()
    Base.metadata.drop_all(parish_authz.db_engine)
    Base.metadata.create_all(parish_authz.db_engine)
    parish_authz.capability_resolver.invalidate_all()
    yield
    parish_authz.SessionLocal.remove()

@pytest.fixture()
def client(app_instance):
    return app_instance.test_client()

@pytest.fixture()
def resolver():
    return parish_authz.get_capability_resolver()
