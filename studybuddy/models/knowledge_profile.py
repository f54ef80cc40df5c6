from datetime import datetime, timezone
from studybuddy.extensions import db

# Fields a partial update is allowed to touch, with the empty value of each
PROFILE_FIELDS = {
    "topics_studied": list,
    "weak_areas": list,
    "strong_areas": list,
    "study_preferences": dict,
    "question_patterns": dict,
}


class UserKnowledgeProfile(db.Model):
    __tablename__ = "user_knowledge_profiles"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False)
    topics_studied = db.Column(db.JSON, default=list)
    weak_areas = db.Column(db.JSON, default=list)
    strong_areas = db.Column(db.JSON, default=list)
    study_preferences = db.Column(db.JSON, default=dict)
    question_patterns = db.Column(db.JSON, default=dict)
    last_updated = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        d = {"user_id": self.user_id}
        for field, empty in PROFILE_FIELDS.items():
            value = getattr(self, field)
            d[field] = value if value is not None else empty()
        d["last_updated"] = self.last_updated.isoformat() if self.last_updated else None
        return d
