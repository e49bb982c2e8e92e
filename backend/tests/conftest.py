import os, sys, pytest
# Ensure the backend directory is on path so 'orderflow' can be imported
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
from orderflow import create_app, get_db
from orderflow.models.authz import Base
# Import all model modules to ensure tables are registered before create_all
import orderflow.models.catalog_item  # noqa: F401
import orderflow.models.order  # noqa: F401
import orderflow.models.notification  # noqa: F401
import orderflow.models.audit  # noqa: F401


@pytest.fixture(scope='session', autouse=True)
def app_instance(tmp_path_factory):
    app = create_app({
        'DATABASE_URL': 'sqlite+pysqlite:///:memory:',
        'JWT_SECRET_KEY': 'test-secret-key-with-enough-length-for-hs256',
        'UPLOAD_FOLDER': str(tmp_path_factory.mktemp('uploads')),
        'AUTO_CLOSE_ENABLED': False,
        'NOTIFY_ASYNC': False,
    })
    app.config['TESTING'] = True
    with app.app_context():
        engine = get_db().get_bind()
        Base.metadata.create_all(engine)
    yield app


@pytest.fixture()
def client(app_instance):
    return app_instance.test_client()


@pytest.fixture()
def app_context(app_instance):
    with app_instance.app_context():
        yield app_instance
