import bcrypt
import pytest
from flask_jwt_extended import create_access_token

from certledger.app import create_app
from certledger.config import Config, LifecycleSettings
from certledger.lifecycle import CertificateLifecycle
from certledger.models import db, CertificateType, User
from certledger.registry import CertificateRegistry

CONTRACT_ADDRESS = "0x5FbDB2315678afecb367f032d93F642f64180aa3"
STUDENT_WALLET = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    JWT_SECRET_KEY = "testing-secret-key-with-enough-length-for-hs256"
    BLOCKCHAIN_NETWORK = "localhost"
    CONTRACT_ADDRESS = CONTRACT_ADDRESS
    CHAIN_ID = "31337"
    CERT_NUMBER_BACKOFF_SECONDS = 0
    LOG_LEVEL = "DEBUG"


# -----------------------------------------------------------------------------
# Application / database
# -----------------------------------------------------------------------------


@pytest.fixture
def app():
    app = create_app(TestingConfig)
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def users(app):
    """Admin, issuer and student accounts; returns their ids by role."""
    pw_hash = bcrypt.hashpw(b"secret", bcrypt.gensalt(rounds=4)).decode("utf-8")
    rows = {
        "admin": User(name="Ada Admin", email="admin@school.test", password_hash=pw_hash, role="admin"),
        "issuer": User(name="Isaac Issuer", email="issuer@school.test", password_hash=pw_hash, role="issuer"),
        "student": User(name="Sam Student", email="sam@school.test", password_hash=pw_hash, role="student",
                        wallet_address=STUDENT_WALLET),
    }
    db.session.add_all(rows.values())
    db.session.commit()
    return {role: u.id for role, u in rows.items()}


@pytest.fixture
def cert_type(app):
    t = CertificateType(name="Completion", description="Course completion", is_active=True)
    db.session.add(t)
    db.session.add(CertificateType(name="Retired", is_active=False))
    db.session.commit()
    return t.id


@pytest.fixture
def auth_headers(app, users):
    def _headers(role):
        token = create_access_token(
            identity=str(users[role]),
            additional_claims={"role": role, "email": f"{role}@school.test"},
        )
        return {"Authorization": f"Bearer {token}"}
    return _headers


# -----------------------------------------------------------------------------
# Lifecycle
# -----------------------------------------------------------------------------


@pytest.fixture
def settings():
    return LifecycleSettings(blockchain_network="localhost", number_max_attempts=5, number_backoff_seconds=0)


@pytest.fixture
def registry(app):
    return CertificateRegistry(db.session)


@pytest.fixture
def lifecycle(registry, settings):
    return CertificateLifecycle(registry, settings, sleep=lambda _: None)
