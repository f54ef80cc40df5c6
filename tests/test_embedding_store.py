import math
import numpy as np
import pytest
from pgvector.sqlalchemy import Vector
from sqlalchemy import text
from sqlalchemy.dialects import postgresql
from studybuddy.extensions import db
from studybuddy.services.embedding_store import (
    EmbeddingStore,
    StorageMode,
    decode_json_vector,
    decode_native_vector,
    encode_json_vector,
    encode_native_vector,
    get_embedding_store,
)
from studybuddy.services.errors import DecodeFailure, DimensionMismatch, StorageUnavailable

DIM = 64


def vec(seed):
    return [math.sin(seed * (i + 1)) / 3.0 for i in range(DIM)]


# ---- codecs ----

TRICKY = [0.1, -2.5, 1e-300, 123456.789, 1.0 / 3.0, -0.0, 2.0 ** -40]


def test_native_codec_yields_plain_floats():
    assert encode_native_vector(np.array([1, 0.5, -2])) == [1.0, 0.5, -2.0]
    assert decode_native_vector(np.array([1, 0.5], dtype=np.float32)) == [1.0, 0.5]


def test_native_codec_matches_pgvector_wire_format():
    dialect = postgresql.dialect()
    wire = Vector(3).bind_processor(dialect)(encode_native_vector([1, 0.5, -2]))
    assert wire == "[1.0,0.5,-2.0]"
    assert decode_native_vector(Vector(3).result_processor(dialect, None)(wire)) == [1.0, 0.5, -2.0]


def test_json_vector_round_trip_is_exact():
    assert decode_json_vector(encode_json_vector(TRICKY)) == TRICKY


def test_json_decoder_accepts_parsed_lists():
    assert decode_json_vector([1, 2.5]) == [1.0, 2.5]


@pytest.mark.parametrize("value", ["[1,2,3]", 42, ["x"]])
def test_bad_native_vector_raises(value):
    with pytest.raises(DecodeFailure):
        decode_native_vector(value)


@pytest.mark.parametrize("value", ["not json", '{"a": 1}', '["x"]', "[1, null]"])
def test_bad_json_vector_raises(value):
    with pytest.raises(DecodeFailure):
        decode_json_vector(value)


# ---- mode detection ----

def test_sqlite_table_is_generic_structured(store):
    assert store.mode is StorageMode.GENERIC_STRUCTURED


def test_missing_table_is_unavailable(bare_app):
    assert get_embedding_store().mode is StorageMode.UNAVAILABLE


def test_mode_is_cached_until_refreshed(store):
    assert store.mode is StorageMode.GENERIC_STRUCTURED
    db.session.execute(text("DROP TABLE note_embeddings"))
    db.session.commit()
    assert store.mode is StorageMode.GENERIC_STRUCTURED
    assert store.refresh_mode() is StorageMode.UNAVAILABLE


def test_store_is_shared_per_app(app):
    assert get_embedding_store() is get_embedding_store()


# ---- writes and reads ----

def test_upsert_round_trip(store, make_user, make_note):
    user = make_user()
    note = make_note(user, "Cells", "Mitochondria produce ATP")
    vector = vec(1)

    assert store.upsert(note.id, user.id, "note", "Mitochondria produce ATP", vector) is True

    row = store.get(note.id, "note")
    assert row["embedding"] == vector
    assert row["user_id"] == user.id
    assert row["content_text"] == "Mitochondria produce ATP"
    assert row["created_at"] is not None


def test_upsert_twice_keeps_one_row(store, make_user, make_note):
    user = make_user()
    note = make_note(user)

    store.upsert(note.id, user.id, "note", "first", vec(1))
    first = store.get(note.id, "note")
    store.upsert(note.id, user.id, "note", "second", vec(2))
    second = store.get(note.id, "note")

    assert store.count() == 1
    assert second["id"] == first["id"]
    assert second["content_text"] == "second"
    assert second["embedding"] == vec(2)
    assert second["updated_at"] >= first["updated_at"]
    assert second["created_at"] == first["created_at"]


def test_identical_upserts_are_idempotent(store, make_user, make_note):
    user = make_user()
    note = make_note(user)
    for _ in range(2):
        store.upsert(note.id, user.id, "note", "same", vec(3))
    assert store.count(user.id) == 1
    assert store.get(note.id, "note")["embedding"] == vec(3)


def test_content_types_are_separate_rows(store, make_user, make_note):
    user = make_user()
    note = make_note(user)
    store.upsert(note.id, user.id, "note", "full text", vec(1))
    store.upsert(note.id, user.id, "summary", "short", vec(2))

    assert store.count(user.id) == 2
    assert store.get(note.id, "summary")["embedding"] == vec(2)


def test_wrong_dimension_fails_the_write(store, make_user, make_note):
    user = make_user()
    note = make_note(user)
    with pytest.raises(DimensionMismatch):
        store.upsert(note.id, user.id, "note", "text", vec(1)[:-1])
    with pytest.raises(DimensionMismatch):
        store.upsert(note.id, user.id, "note", "text", vec(1) + [0.0])
    assert store.count() == 0


def test_non_finite_values_fail_the_write(store, make_user, make_note):
    user = make_user()
    note = make_note(user)
    bad = vec(1)
    bad[5] = float("nan")
    with pytest.raises(ValueError):
        store.upsert(note.id, user.id, "note", "text", bad)
    assert store.count() == 0


def test_content_text_is_bounded(app, store, make_user, make_note):
    user = make_user()
    note = make_note(user)
    store.upsert(note.id, user.id, "note", "z" * (store.max_chars + 100), vec(1))
    assert len(store.get(note.id, "note")["content_text"]) == store.max_chars


def test_deletes(store, make_user, make_note):
    user = make_user()
    note = make_note(user)
    other = make_note(user)
    store.upsert(note.id, user.id, "note", "a", vec(1))
    store.upsert(note.id, user.id, "summary", "b", vec(2))
    store.upsert(other.id, user.id, "note", "c", vec(3))

    assert store.delete_by_note_and_type(note.id, "summary") == 1
    assert store.get(note.id, "summary") is None
    assert store.get(note.id, "note") is not None

    assert store.delete_by_note(note.id) == 1
    assert store.get(note.id, "note") is None
    assert store.get(other.id, "note") is not None


def test_deleting_missing_rows_is_not_an_error(store):
    assert store.delete_by_note(999) == 0
    assert store.delete_by_note_and_type(999, "note") == 0


def test_delete_by_user(store, make_user, make_note):
    alice, bob = make_user("alice"), make_user("bob")
    store.upsert(make_note(alice).id, alice.id, "note", "a", vec(1))
    store.upsert(make_note(bob).id, bob.id, "note", "b", vec(2))

    assert store.delete_by_user(alice.id) == 1
    assert store.count(alice.id) == 0
    assert store.count(bob.id) == 1


def test_get_raises_on_undecodable_row(store, make_user, make_note):
    user = make_user()
    note = make_note(user)
    db.session.execute(
        text("INSERT INTO note_embeddings (note_id, user_id, content_type, content_text, embedding) "
             "VALUES (:n, :u, 'note', 'x', 'not json')"),
        {"n": note.id, "u": user.id},
    )
    db.session.commit()
    with pytest.raises(DecodeFailure):
        store.get(note.id, "note")


# ---- unavailable storage ----

def test_unavailable_store_is_a_no_op(bare_app, make_user, make_note):
    store = get_embedding_store()
    user = make_user()
    note = make_note(user)

    assert store.upsert(note.id, user.id, "note", "text", vec(1)) is False
    assert store.get(note.id, "note") is None
    assert store.candidates(user.id) == []
    assert store.count() == 0
    assert store.delete_by_note(note.id) == 0
    assert store.delete_by_note_and_type(note.id, "note") == 0


def test_unavailable_store_still_validates_dimension(bare_app):
    with pytest.raises(DimensionMismatch):
        get_embedding_store().upsert(1, 1, "note", "text", [1.0])


def test_unavailable_store_cannot_encode(bare_app):
    with pytest.raises(StorageUnavailable):
        get_embedding_store().encode(vec(1))


# ---- native vector mode (SQL captured, no PostgreSQL needed) ----

class FakeResult:
    def __init__(self, rows):
        self._rows = rows
        self.rowcount = len(rows)

    def mappings(self):
        return list(self._rows)


class RecordingSession:
    def __init__(self, rows=None):
        self.rows = rows or []
        self.calls = []
        self.commits = 0

    def execute(self, stmt, params=None):
        self.calls.append((stmt, params))
        return FakeResult(self.rows)

    def commit(self):
        self.commits += 1


@pytest.fixture
def native_store(app):
    store = EmbeddingStore(dimension=DIM)
    store._mode = StorageMode.NATIVE_VECTOR
    store._column_type = "vector"
    return store


def test_native_upsert_binds_through_pgvector(native_store, monkeypatch):
    session = RecordingSession()
    monkeypatch.setattr(db, "session", session)

    native_store.upsert(7, 3, "note", "text", vec(1))

    stmt, params = session.calls[0]
    sql = str(stmt)
    assert ":embedding" in sql
    assert "CAST" not in sql
    assert "ON CONFLICT (note_id, content_type) DO UPDATE" in sql
    bind_type = stmt.compile(dialect=postgresql.dialect()).binds["embedding"].type
    assert isinstance(bind_type, Vector)
    assert bind_type.dim == DIM
    assert params["embedding"] == vec(1)
    assert session.commits == 1


def test_native_get_reads_through_pgvector(native_store, monkeypatch):
    stored = np.array(vec(4), dtype=np.float32)
    session = RecordingSession(rows=[{
        "id": 1, "note_id": 7, "user_id": 3, "content_type": "note", "content_text": "text",
        "embedding": stored, "created_at": None, "updated_at": None,
    }])
    monkeypatch.setattr(db, "session", session)

    row = native_store.get(7, "note")

    stmt, _ = session.calls[0]
    assert isinstance(stmt.selected_columns["embedding"].type, Vector)
    assert row["embedding"] == pytest.approx(vec(4), rel=1e-6)


def test_native_nearest_uses_distance_operator(native_store, monkeypatch):
    session = RecordingSession()
    monkeypatch.setattr(db, "session", session)

    native_store.nearest(3, vec(1), 4)

    stmt, params = session.calls[0]
    sql = str(stmt)
    assert "<=>" in sql
    assert "LIMIT :limit" in sql
    assert isinstance(stmt.compile(dialect=postgresql.dialect()).binds["query"].type, Vector)
    assert params == {"user_id": 3, "query": vec(1), "limit": 4}


def test_native_nearest_maps_nan_similarity_to_zero(native_store, monkeypatch):
    session = RecordingSession(rows=[{
        "id": 1, "note_id": 7, "user_id": 3, "content_type": "note", "content_text": "text",
        "title": "T", "similarity": float("nan"), "created_at": None, "updated_at": None,
    }])
    monkeypatch.setattr(db, "session", session)

    rows = native_store.nearest(3, [0.0] * DIM, 4)

    assert rows[0]["similarity"] == 0.0


def test_postgres_mode_detection_is_scoped_to_current_schema(app, monkeypatch):
    seen = []

    class FakeConnection:
        class dialect:
            name = "postgresql"

        def execute(self, stmt, params=None):
            seen.append(str(stmt))
            return FakeScalar("vector")

    class FakeScalar:
        def __init__(self, value):
            self.value = value

        def scalar(self):
            return self.value

    class FakeInspector:
        def has_table(self, name):
            return True

    class FakeSession:
        def connection(self):
            return FakeConnection()

    monkeypatch.setattr(db, "session", FakeSession())
    monkeypatch.setattr("studybuddy.services.embedding_store.inspect", lambda conn: FakeInspector())

    assert EmbeddingStore(dimension=DIM).refresh_mode() is StorageMode.NATIVE_VECTOR
    assert "table_schema = current_schema()" in seen[0]


def test_nearest_requires_native_mode(store):
    with pytest.raises(StorageUnavailable):
        store.nearest(1, vec(1), 3)
