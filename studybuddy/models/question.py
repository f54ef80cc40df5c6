from datetime import datetime, timezone
from studybuddy.extensions import db


class UserQuestion(db.Model):
    __tablename__ = "user_questions"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    question = db.Column(db.Text, nullable=False)
    answer = db.Column(db.Text, nullable=False)
    context_note_ids = db.Column(db.JSON, default=list)  # note ids used as retrieval context
    topic_tags = db.Column(db.JSON, default=list)
    difficulty = db.Column(db.String(20), default="medium")  # "easy" / "medium" / "hard"
    feedback_score = db.Column(db.Integer, nullable=True)  # 1-5
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc), index=True)
    updated_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "question": self.question,
            "answer": self.answer,
            "context_note_ids": list(self.context_note_ids or []),
            "topic_tags": list(self.topic_tags or []),
            "difficulty": self.difficulty,
            "feedback_score": self.feedback_score,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
