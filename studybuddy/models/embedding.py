from datetime import datetime, timezone
from studybuddy.extensions import db


class NoteEmbedding(db.Model):
    """One embedded fragment of a note, unique per (note_id, content_type).

    ``db.create_all`` creates the ``embedding`` column as JSON. On PostgreSQL
    the table may instead be provisioned with a native ``vector`` column, so
    reads and writes of ``embedding`` go through ``EmbeddingStore`` only.
    """

    __tablename__ = "note_embeddings"

    id = db.Column(db.Integer, primary_key=True)
    note_id = db.Column(db.Integer, db.ForeignKey("notes.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    content_type = db.Column(db.String(50), nullable=False, default="note", index=True)
    content_text = db.Column(db.Text, nullable=False)
    embedding = db.Column(db.JSON)
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))

    __table_args__ = (db.UniqueConstraint("note_id", "content_type", name="uq_note_embedding_type"),)
