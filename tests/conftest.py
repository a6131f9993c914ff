import os
import tempfile

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("STORAGE_DIR", tempfile.mkdtemp(prefix="loanshelf-images-"))

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from db import get_session
from main import app
from models import Catalog, Institution, Item, Profile, Role, User
from routers.auth import hash_password
from storage import ItemImageStore, get_image_store

JPEG_BYTES = b"\xff\xd8\xff\xe0" + b"\x00" * 64


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def store(tmp_path):
    return ItemImageStore(str(tmp_path / "items"), "/storage/items")


@pytest.fixture
def make_client(engine, store):
    """
    Build signed-in clients: make_client("a@example.com", "admin").
    """

    def override_get_session():
        with Session(engine) as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_image_store] = lambda: store

    def factory(email=None, role="user", password="secret123"):
        client = TestClient(app)
        if email is not None:
            response = client.post(
                "/signup",
                json={"email": email, "password": password, "role": role},
            )
            assert response.status_code == 200, response.text
        return client

    yield factory
    app.dependency_overrides.clear()


@pytest.fixture
def anon(make_client):
    return make_client()


@pytest.fixture
def admin(make_client):
    return make_client("admin@example.com", "admin")


@pytest.fixture
def student(make_client):
    return make_client("student@example.com", "user")


def add_user(session, email, role):
    user = User(email=email, password_hash=hash_password("secret123"))
    session.add(user)
    session.flush()
    session.add(Profile(id=user.id, email=email))
    session.add(Role(user_id=user.id, role=role))
    session.commit()
    session.refresh(user)
    return user


@pytest.fixture
def world(session):
    """
    One admin owning an institution with a catalog of two items,
    and one student.
    """
    admin_user = add_user(session, "boss@example.com", "admin")
    student_user = add_user(session, "kid@example.com", "user")

    institution = Institution(creator_id=admin_user.id, name="Lab", acronym="LAB")
    session.add(institution)
    session.commit()
    session.refresh(institution)

    catalog = Catalog(institution_id=institution.id, name="Electronics", acronym="ELEC")
    session.add(catalog)
    session.commit()
    session.refresh(catalog)

    camera = Item(catalog_id=catalog.id, name="Camera", default_quantity=5, actual_quantity=5)
    tripod = Item(catalog_id=catalog.id, name="Tripod", default_quantity=2, actual_quantity=2)
    session.add(camera)
    session.add(tripod)
    session.commit()
    session.refresh(camera)
    session.refresh(tripod)

    return {
        "admin": admin_user,
        "student": student_user,
        "institution": institution,
        "catalog": catalog,
        "camera": camera,
        "tripod": tripod,
    }
