import pytest
from werkzeug.security import generate_password_hash

from app.etmf import create_app
from app.etmf.constants import empty_permissions
from app.etmf.db import session_scope
from app.etmf.models import Base, Role, User
from scripts.init_db import seed

ADMIN_EMAIL = "admin@example.com"
ADMIN_PASSWORD = "pw-admin-123"


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("STORAGE_ROOT", str(tmp_path / "storage"))
    for k in ("S3_ENDPOINT", "S3_REGION", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY"):
        monkeypatch.delenv(k, raising=False)

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        seed(s, admin_email=ADMIN_EMAIL, admin_password=ADMIN_PASSWORD)

    yield app
    engine.dispose()


@pytest.fixture()
def admin_id(app):
    with session_scope(app) as s:
        return s.query(User.id).filter(User.email == ADMIN_EMAIL).scalar()


def login(client, email, password):
    r = client.post("/auth/login", json={"email": email, "password": password})
    assert r.status_code == 200, r.json
    return client


@pytest.fixture()
def client(app):
    return login(app.test_client(), ADMIN_EMAIL, ADMIN_PASSWORD)


@pytest.fixture()
def anon_client(app):
    return app.test_client()


@pytest.fixture()
def make_user(app):
    """Create an active user holding one custom role built from `grants` ("resource.action" keys)."""

    def _make(email: str, *grants: str, password: str = "pw-user-123") -> int:
        perms = empty_permissions()
        for key in grants:
            resource, _, action = key.partition(".")
            perms[resource][action] = True
        with session_scope(app) as s:
            role = Role(
                role_key=email.split("@")[0].replace(".", "_").replace("-", "_"),
                name=f"Role for {email}",
                permissions=perms,
            )
            u = User(email=email, password_hash=generate_password_hash(password), is_active=True)
            u.roles.append(role)
            s.add_all([role, u])
            s.flush()
            return u.id

    return _make


@pytest.fixture()
def user_client(app):
    def _client(email: str, password: str = "pw-user-123"):
        return login(app.test_client(), email, password)

    return _client
