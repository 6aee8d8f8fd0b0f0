"""Fixtures compartilhadas da suíte.

As variáveis de ambiente precisam estar definidas antes do primeiro import de whatscrm:
config.py lê tudo no import (banco em memória, sem rate limit, sem pausa nos envios em massa).
"""

from __future__ import annotations

import os

os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["ENVIRONMENT"] = "test"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["BULK_SEND_DELAY_SECONDS"] = "0"
os.environ.pop("EVOLUTION_API_URL", None)
os.environ.pop("EVOLUTION_API_KEY", None)

import pytest
from fastapi.testclient import TestClient

from whatscrm.core import security
from whatscrm.core.database import (
    Base, SessionLocal, engine, Contact, Conversation, Instance, Organization, User,
    InstanceStatus, UserRole, UserStatus
)
from whatscrm.main import app as fastapi_app

EVOLUTION_URL = "http://evolution.test"
PASSWORD = "secret123"
# bcrypt é lento: um hash só para a suíte inteira
PASSWORD_HASH = security.get_password_hash(PASSWORD)


@pytest.fixture(autouse=True)
def reset_db():
    """Cada teste começa com as tabelas vazias."""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture()
def app():
    return fastapi_app


@pytest.fixture()
def client(app):
    with TestClient(app, raise_server_exceptions=False) as c:
        yield c


@pytest.fixture()
def db():
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture()
def organization(db) -> Organization:
    org = Organization(name="Acme", settings={})
    db.add(org)
    db.commit()
    db.refresh(org)
    return org


@pytest.fixture()
def evolution_org(db, organization) -> Organization:
    """Organização com a Evolution configurada."""
    organization.settings = {"evolution": {"baseUrl": EVOLUTION_URL, "apiKey": "evo-key"}}
    db.commit()
    db.refresh(organization)
    return organization


@pytest.fixture()
def make_user(db, organization):
    """Fábrica de usuários: make_user(role=UserRole.OPERATOR, email=None, organization=None)."""
    counter = {"n": 0}

    def _make(role: UserRole = UserRole.OPERATOR, email: str | None = None,
              org: Organization | None = None, status: UserStatus = UserStatus.ACTIVE) -> User:
        counter["n"] += 1
        user = User(
            name=f"{role.value.title()} {counter['n']}",
            email=email or f"{role.value.lower()}{counter['n']}@acme.test",
            password=PASSWORD_HASH,
            role=role.value,
            status=status.value,
            organization_id=(org or organization).id,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make


@pytest.fixture()
def auth_header():
    def _header(user: User) -> dict[str, str]:
        return {"Authorization": f"Bearer {security.create_user_token(user)}"}

    return _header


@pytest.fixture()
def admin(make_user) -> User:
    return make_user(UserRole.ADMIN, email="admin@acme.test")


@pytest.fixture()
def admin_headers(admin, auth_header) -> dict[str, str]:
    return auth_header(admin)


@pytest.fixture()
def operator(make_user) -> User:
    return make_user(UserRole.OPERATOR, email="operator@acme.test")


@pytest.fixture()
def operator_headers(operator, auth_header) -> dict[str, str]:
    return auth_header(operator)


@pytest.fixture()
def make_instance(db, organization):
    def _make(instance_name: str = "acme-vendas", status: InstanceStatus = InstanceStatus.CONNECTED,
              org: Organization | None = None) -> Instance:
        instance = Instance(
            name=instance_name.title(),
            instance_name=instance_name,
            status=status.value,
            settings={},
            organization_id=(org or organization).id,
        )
        db.add(instance)
        db.commit()
        db.refresh(instance)
        return instance

    return _make


@pytest.fixture()
def connected_instance(evolution_org, make_instance) -> Instance:
    return make_instance()


@pytest.fixture()
def contact(db, organization) -> Contact:
    c = Contact(organization_id=organization.id, phone_number="5511999990000", name="Maria", tags=["vip"])
    db.add(c)
    db.commit()
    db.refresh(c)
    return c


@pytest.fixture()
def conversation(db, organization, contact) -> Conversation:
    conv = Conversation(organization_id=organization.id, contact_id=contact.id, title="Conversa com Maria", tags=[])
    db.add(conv)
    db.commit()
    db.refresh(conv)
    return conv
