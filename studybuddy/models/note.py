from datetime import datetime, timezone
from studybuddy.extensions import db


class Note(db.Model):
    """Owner and title of a note. Editing notes happens outside this service."""

    __tablename__ = "notes"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    title = db.Column(db.String(200), nullable=False, default="Untitled")
    content = db.Column(db.Text, default="")
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))

    def embedding_text(self):
        """Text that gets embedded for the "note" content type."""
        parts = [self.title or "", self.content or ""]
        return "\n\n".join(p.strip() for p in parts if p and p.strip())

    def to_dict(self):
        return {
            "id": self.id,
            "title": self.title,
            "content": self.content,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
