import os, sys, pytest
# Ensure backend directory is on path so 'crudperm' and 'tests' can be imported
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
from sqlalchemy import delete
from crudperm import create_app, get_db
from crudperm.models.authz import Base, CrudPermission, UserPermission
# Import all model modules to ensure tables are registered before create_all
import crudperm.models.audit  # noqa: F401
import crudperm.models.supplier  # noqa: F401


@pytest.fixture(scope='session', autouse=True)
def app_instance():
    os.environ['DATABASE_URL'] = 'sqlite+pysqlite:///:memory:'
    # no startup load (tables do not exist yet) and no reload threads racing the test session
    app = create_app({'PERMISSIONS_PRELOAD': False, 'PERMISSIONS_BACKGROUND_RELOAD': False})
    with app.app_context():
        engine = get_db().get_bind()
        Base.metadata.create_all(engine)
    yield app


@pytest.fixture()
def app_context(app_instance):
    with app_instance.app_context():
        yield app_instance


@pytest.fixture()
def client(app_instance):
    return app_instance.test_client()


@pytest.fixture()
def resolver(app_instance):
    return app_instance.extensions['permission_resolver']


@pytest.fixture(autouse=True)
def empty_permissions(app_instance):
    """Every test starts with empty permission tables and cold caches."""
    session = get_db()
    session.rollback()
    session.execute(delete(CrudPermission))
    session.execute(delete(UserPermission))
    session.commit()
    app_instance.extensions['permission_resolver'].cache.clear()
    app_instance.extensions['column_resolver'].clear()
    yield
