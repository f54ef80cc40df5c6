import enum
import json
import logging
import math
from datetime import datetime, timezone
import numpy as np
from flask import current_app
from pgvector.sqlalchemy import Vector
from sqlalchemy import bindparam, inspect, text
from sqlalchemy.exc import DBAPIError
from studybuddy.extensions import db
from studybuddy.models.embedding import NoteEmbedding
from studybuddy.services.errors import DecodeFailure, DimensionMismatch, StorageUnavailable

logger = logging.getLogger(__name__)

TABLE = NoteEmbedding.__tablename__


class StorageMode(enum.Enum):
    NATIVE_VECTOR = "native-vector"          # pgvector column, distance operator in SQL
    GENERIC_STRUCTURED = "generic-structured"  # JSON array, ranked in-process
    UNAVAILABLE = "unavailable"              # table missing: writes no-op, reads empty


# ---- Codecs ----------------------------------------------------------------
# Native vectors are bound and read through pgvector's SQLAlchemy ``Vector``
# type; the codec pair only converts to and from plain float lists.

def encode_native_vector(vector):
    return [float(x) for x in vector]


def decode_native_vector(value):
    if not isinstance(value, (list, tuple, np.ndarray)):
        raise DecodeFailure(f"Unsupported vector value of type {type(value).__name__}")
    try:
        return [float(x) for x in value]
    except (TypeError, ValueError) as e:
        raise DecodeFailure(f"Stored vector holds a non-numeric entry: {e}") from e


def encode_json_vector(vector):
    return json.dumps([float(x) for x in vector])


def decode_json_vector(value):
    # Drivers hand back JSONB already parsed; SQLite returns the raw text
    if isinstance(value, (str, bytes)):
        try:
            value = json.loads(value)
        except ValueError as e:
            raise DecodeFailure(f"Stored embedding is not valid JSON: {e}") from e
    if not isinstance(value, list):
        raise DecodeFailure("Stored embedding is not a JSON array")
    try:
        return [float(x) for x in value]
    except (TypeError, ValueError) as e:
        raise DecodeFailure(f"Stored embedding holds a non-numeric entry: {e}") from e


CODECS = {
    StorageMode.NATIVE_VECTOR: (encode_native_vector, decode_native_vector),
    StorageMode.GENERIC_STRUCTURED: (encode_json_vector, decode_json_vector),
}


# ---- Store -----------------------------------------------------------------

class EmbeddingStore:
    """
    Persists one embedding per (note_id, content_type) in ``note_embeddings``.

    The storage mode is probed once per instance and cached; it only changes
    when someone calls ``refresh_mode`` after provisioning the table.
    """

    def __init__(self, dimension=None, max_chars=None):
        self.dimension = int(dimension or current_app.config["EMBEDDING_DIMENSION"])
        self.max_chars = int(max_chars or current_app.config.get("EMBEDDING_MAX_CHARS", 8000))
        self._mode = None
        self._column_type = None

    @property
    def mode(self):
        if self._mode is None:
            self._mode = self._detect_mode()
        return self._mode

    def refresh_mode(self):
        self._mode = None
        self._column_type = None
        return self.mode

    def _detect_mode(self):
        try:
            mode = self._probe()
        except StorageUnavailable as e:
            logger.warning("Embedding storage unavailable, semantic search disabled: %s", e)
            return StorageMode.UNAVAILABLE
        logger.info("Embedding storage mode: %s (%s column)", mode.value, self._column_type)
        return mode

    def _probe(self):
        conn = db.session.connection()
        inspector = inspect(conn)
        if not inspector.has_table(TABLE):
            raise StorageUnavailable(f"table {TABLE} does not exist")

        if conn.dialect.name == "postgresql":
            udt_name = conn.execute(
                text(
                    "SELECT udt_name FROM information_schema.columns "
                    "WHERE table_schema = current_schema() AND table_name = :table "
                    "AND column_name = 'embedding'"
                ),
                {"table": TABLE},
            ).scalar()
            if udt_name is None:
                raise StorageUnavailable(f"table {TABLE} has no embedding column")
            self._column_type = udt_name
            return StorageMode.NATIVE_VECTOR if udt_name == "vector" else StorageMode.GENERIC_STRUCTURED

        columns = {c["name"]: c for c in inspector.get_columns(TABLE)}
        if "embedding" not in columns:
            raise StorageUnavailable(f"table {TABLE} has no embedding column")
        self._column_type = str(columns["embedding"]["type"]).lower()
        return StorageMode.GENERIC_STRUCTURED

    # ---- encoding helpers ----

    def encode(self, vector):
        encoder, _ = CODECS[self._require_mode()]
        return encoder(vector)

    def decode(self, value):
        """Decode a stored vector; raises DecodeFailure on bad data or wrong dimension."""
        if value is None:
            raise DecodeFailure("Stored embedding is NULL")
        _, decoder = CODECS[self._require_mode()]
        vector = decoder(value)
        if len(vector) != self.dimension:
            raise DecodeFailure(f"Stored embedding has dimension {len(vector)}, expected {self.dimension}")
        return vector

    def _require_mode(self):
        mode = self.mode
        if mode is StorageMode.UNAVAILABLE:
            raise StorageUnavailable(f"table {TABLE} does not exist")
        return mode

    def check_vector(self, vector):
        """Validate length and finiteness; returns the vector as a list of floats."""
        values = np.asarray(vector, dtype=np.float64).ravel()
        if values.shape[0] != self.dimension:
            raise DimensionMismatch(f"Embedding has dimension {values.shape[0]}, expected {self.dimension}")
        if not np.all(np.isfinite(values)):
            raise ValueError("Embedding contains NaN or infinite values")
        return values.tolist()

    def _vector_type(self):
        return Vector(self.dimension)

    def _value_sql(self, param):
        """SQL expression that turns a bound, encoded vector into the column's type."""
        mode = self._require_mode()
        if mode is StorageMode.GENERIC_STRUCTURED and db.engine.dialect.name == "postgresql":
            return f"CAST(:{param} AS {self._column_type})"
        return f":{param}"

    def _vector_params(self, *names):
        """Typed bind params for vector values; native mode binds through pgvector."""
        if self._require_mode() is StorageMode.NATIVE_VECTOR:
            return [bindparam(name, type_=self._vector_type()) for name in names]
        return []

    def _vector_columns(self):
        """Result column types for ``embedding``; native mode parses through pgvector."""
        if self._require_mode() is StorageMode.NATIVE_VECTOR:
            return {"embedding": self._vector_type()}
        return {}

    # ---- writes ----

    def upsert(self, note_id, user_id, content_type, content_text, vector):
        """
        Insert or replace the embedding for (note_id, content_type).

        Last writer wins. Returns False without touching the database when the
        table is not provisioned.

        Raises:
            DimensionMismatch: vector length differs from the configured dimension
        """
        vector = self.check_vector(vector)
        if self.mode is StorageMode.UNAVAILABLE:
            logger.debug("Skipping embedding write for note %s: storage unavailable", note_id)
            return False

        stmt = text(
            f"INSERT INTO {TABLE} "
            "(note_id, user_id, content_type, content_text, embedding, created_at, updated_at) "
            f"VALUES (:note_id, :user_id, :content_type, :content_text, {self._value_sql('embedding')}, :now, :now) "
            "ON CONFLICT (note_id, content_type) DO UPDATE SET "
            "user_id = excluded.user_id, "
            "content_text = excluded.content_text, "
            "embedding = excluded.embedding, "
            "updated_at = excluded.updated_at"
        ).bindparams(bindparam("now", type_=db.DateTime), *self._vector_params("embedding"))

        db.session.execute(stmt, {
            "note_id": note_id,
            "user_id": user_id,
            "content_type": content_type,
            "content_text": (content_text or "")[:self.max_chars],
            "embedding": self.encode(vector),
            "now": datetime.now(timezone.utc),
        })
        db.session.commit()
        return True

    def _delete(self, where, params):
        if self.mode is StorageMode.UNAVAILABLE:
            return 0
        result = db.session.execute(text(f"DELETE FROM {TABLE} WHERE {where}"), params)
        db.session.commit()
        return result.rowcount or 0

    def delete_by_note(self, note_id):
        return self._delete("note_id = :note_id", {"note_id": note_id})

    def delete_by_note_and_type(self, note_id, content_type):
        return self._delete(
            "note_id = :note_id AND content_type = :content_type",
            {"note_id": note_id, "content_type": content_type},
        )

    def delete_by_user(self, user_id):
        return self._delete("user_id = :user_id", {"user_id": user_id})

    # ---- reads ----

    def _select(self, stmt, params, **extra_columns):
        stmt = stmt.columns(created_at=db.DateTime, updated_at=db.DateTime, **extra_columns)
        return [dict(row) for row in db.session.execute(stmt, params).mappings()]

    def get(self, note_id, content_type):
        """Stored row for (note_id, content_type) with its decoded ``embedding``, or None."""
        if self.mode is StorageMode.UNAVAILABLE:
            return None
        rows = self._select(
            text(
                "SELECT ne.id, ne.note_id, ne.user_id, ne.content_type, ne.content_text, "
                "ne.embedding, ne.created_at, ne.updated_at "
                f"FROM {TABLE} ne WHERE ne.note_id = :note_id AND ne.content_type = :content_type"
            ),
            {"note_id": note_id, "content_type": content_type},
            **self._vector_columns(),
        )
        if not rows:
            return None
        row = rows[0]
        row["embedding"] = self.decode(row["embedding"])
        return row

    def count(self, user_id=None):
        if self.mode is StorageMode.UNAVAILABLE:
            return 0
        sql = f"SELECT COUNT(*) FROM {TABLE}"
        params = {}
        if user_id is not None:
            sql += " WHERE user_id = :user_id"
            params["user_id"] = user_id
        return db.session.execute(text(sql), params).scalar() or 0

    def candidates(self, user_id):
        """
        Every embedding row owned by ``user_id`` with the note title and the raw
        (undecoded) stored vector, ordered by id.
        """
        if self.mode is StorageMode.UNAVAILABLE:
            return []
        return self._select(
            text(
                "SELECT ne.id, ne.note_id, ne.user_id, ne.content_type, ne.content_text, "
                "ne.embedding, ne.created_at, ne.updated_at, n.title "
                f"FROM {TABLE} ne JOIN notes n ON n.id = ne.note_id "
                "WHERE ne.user_id = :user_id ORDER BY ne.id"
            ),
            {"user_id": user_id},
            **self._vector_columns(),
        )

    def nearest(self, user_id, query_vector, limit):
        """
        Top ``limit`` rows by cosine distance, ranked by pgvector. Native mode only.
        Rows come back sorted; ties fall back to id order. A zero-magnitude
        vector on either side has similarity 0.
        """
        if self.mode is not StorageMode.NATIVE_VECTOR:
            raise StorageUnavailable("nearest() needs a native vector column")
        query = self.encode(self.check_vector(query_vector))
        rows = self._select(
            text(
                "SELECT ne.id, ne.note_id, ne.user_id, ne.content_type, ne.content_text, "
                "ne.created_at, ne.updated_at, n.title, "
                "1 - (ne.embedding <=> :query) AS similarity "
                f"FROM {TABLE} ne JOIN notes n ON n.id = ne.note_id "
                "WHERE ne.user_id = :user_id AND ne.embedding IS NOT NULL "
                "ORDER BY ne.embedding <=> :query, ne.id "
                "LIMIT :limit"
            ).bindparams(*self._vector_params("query")),
            {"user_id": user_id, "query": query, "limit": limit},
            similarity=db.Float,
        )
        # pgvector yields NaN for cosine distance against a zero vector
        for row in rows:
            similarity = row.get("similarity")
            if similarity is None or math.isnan(similarity):
                row["similarity"] = 0.0
        return rows


def get_embedding_store():
    """Per-app store instance, so the detected mode is probed only once."""
    store = current_app.extensions.get("embedding_store")
    if store is None:
        store = EmbeddingStore()
        current_app.extensions["embedding_store"] = store
    return store


# ---- Provisioning ------------------------------------------------------------

_PG_TABLE_DDL = """
CREATE TABLE IF NOT EXISTS note_embeddings (
  id SERIAL PRIMARY KEY,
  note_id INTEGER NOT NULL REFERENCES notes(id) ON DELETE CASCADE,
  user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
  content_type VARCHAR(50) NOT NULL DEFAULT 'note',
  content_text TEXT NOT NULL,
  embedding {column_type},
  created_at TIMESTAMP DEFAULT NOW(),
  updated_at TIMESTAMP DEFAULT NOW(),
  CONSTRAINT uq_note_embedding_type UNIQUE (note_id, content_type)
)
"""

_PG_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_note_embeddings_user_id ON note_embeddings(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_note_embeddings_note_id ON note_embeddings(note_id)",
    "CREATE INDEX IF NOT EXISTS idx_note_embeddings_content_type ON note_embeddings(content_type)",
]


def provision_embedding_table(dimension=None):
    """
    Create ``note_embeddings`` if it is missing.

    On PostgreSQL a pgvector ``vector(<dimension>)`` column with an HNSW cosine
    index is tried first; when the extension cannot be created the table falls
    back to a JSONB column. Other engines get the JSON column from the model.
    Returns the resulting StorageMode.
    """
    dimension = int(dimension or current_app.config["EMBEDDING_DIMENSION"])
    engine = db.engine

    if engine.dialect.name != "postgresql":
        NoteEmbedding.__table__.create(engine, checkfirst=True)
    elif not inspect(engine).has_table(TABLE):
        try:
            with engine.begin() as conn:
                conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
                conn.execute(text(_PG_TABLE_DDL.format(column_type=f"vector({dimension})")))
                for ddl in _PG_INDEXES:
                    conn.execute(text(ddl))
                conn.execute(text(
                    "CREATE INDEX IF NOT EXISTS idx_note_embeddings_vector "
                    "ON note_embeddings USING hnsw (embedding vector_cosine_ops)"
                ))
            logger.info("Created %s with a vector(%d) column", TABLE, dimension)
        except DBAPIError as e:
            logger.warning("pgvector not available (%s), creating %s with a JSONB column", e.orig, TABLE)
            with engine.begin() as conn:
                conn.execute(text(_PG_TABLE_DDL.format(column_type="JSONB")))
                for ddl in _PG_INDEXES:
                    conn.execute(text(ddl))

    store = current_app.extensions.get("embedding_store")
    if store is not None:
        return store.refresh_mode()
    return EmbeddingStore(dimension=dimension).mode
