import pytest
from config import TestConfig
from studybuddy import create_app
from studybuddy.extensions import db
from studybuddy.models.note import Note
from studybuddy.models.user import User
from studybuddy.services.embedding_store import get_embedding_store, provision_embedding_table


def _app(provision):
    app = create_app(TestConfig)
    if provision:
        with app.app_context():
            provision_embedding_table()
    return app


@pytest.fixture
def web_app():
    """
    Provisioned app with no context left pushed, so each test client request
    gets its own app context and Flask-Login state never leaks between clients.
    """
    return _app(provision=True)


@pytest.fixture
def bare_web_app():
    """web_app whose note_embeddings table was never created."""
    return _app(provision=False)


@pytest.fixture
def app(web_app):
    """Provisioned app with an app context pushed for direct service calls."""
    with web_app.app_context():
        yield web_app
        db.session.remove()


@pytest.fixture
def bare_app(bare_web_app):
    """App whose note_embeddings table was never created, context pushed."""
    with bare_web_app.app_context():
        yield bare_web_app
        db.session.remove()


@pytest.fixture
def client(web_app):
    return web_app.test_client()


@pytest.fixture
def store(app):
    return get_embedding_store()


@pytest.fixture
def make_user():
    def _make(username="alice"):
        user = User(username=username, email=f"{username}@example.com")
        user.set_password("secret123")
        db.session.add(user)
        db.session.commit()
        return user
    return _make


@pytest.fixture
def make_note():
    def _make(user, title="Untitled", content=""):
        note = Note(user_id=user.id, title=title, content=content)
        db.session.add(note)
        db.session.commit()
        return note
    return _make
