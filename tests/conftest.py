import os

os.environ.setdefault("BCRYPT_ROUNDS", "4")

import mongomock
import pytest

from academy import SessionRegistry, sign_up
from auth import IdentityProvider
from database import DocumentStore


@pytest.fixture
def mongo_db():
    return mongomock.MongoClient().academy_test


@pytest.fixture
def store(mongo_db):
    return DocumentStore(mongo_db)


@pytest.fixture
def identity(store):
    return IdentityProvider(store)


@pytest.fixture
def registry(store, identity):
    registry = SessionRegistry(store, identity)
    yield registry
    registry.close()


@pytest.fixture
def director(store, identity, registry):
    auth_session = sign_up(store, identity, "김원장", "director@hyeyum.kr", "secret1")
    return registry.for_token(auth_session.token)


@pytest.fixture
def teacher(director, identity, registry):
    director.add_user("teacher@hyeyum.kr", "박강사", "teacher", "secret2")
    auth_session = identity.sign_in("teacher@hyeyum.kr", "secret2")
    return registry.for_token(auth_session.token)
