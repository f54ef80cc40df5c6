import logging
from datetime import datetime, timezone
from flask import current_app
from sqlalchemy.exc import IntegrityError
from studybuddy.extensions import db
from studybuddy.models.knowledge_profile import PROFILE_FIELDS, UserKnowledgeProfile
from studybuddy.models.note import Note
from studybuddy.models.question import UserQuestion
from studybuddy.services.embedding_service import extract_topics
from studybuddy.services.errors import InvalidContext

logger = logging.getLogger(__name__)

WEAK_FEEDBACK = 2   # average feedback at or below this marks a weak area
STRONG_FEEDBACK = 4  # at or above, a strong area


def _clean_tags(tags):
    seen = []
    for tag in tags or []:
        tag = str(tag).strip()
        if tag and tag not in seen:
            seen.append(tag)
    return seen


def _owned_note_ids(user_id, note_ids):
    ids = []
    for nid in note_ids or []:
        nid = int(nid)
        if nid not in ids:
            ids.append(nid)
    if not ids:
        return ids
    owned = {
        row.id for row in
        db.session.query(Note.id).filter(Note.id.in_(ids), Note.user_id == user_id).all()
    }
    foreign = [nid for nid in ids if nid not in owned]
    if foreign:
        raise InvalidContext(f"Context notes not owned by user {user_id}: {foreign}")
    return ids


def record_question(user_id, question, answer, context_note_ids=None, topic_tags=None, difficulty=None):
    """
    Store one question/answer exchange.

    The profile is not touched here; callers fold the record in afterwards with
    apply_question_to_profile so a profile error cannot lose the question.

    Args:
        context_note_ids: notes used as retrieval context, all owned by user_id
        topic_tags: topics of the question; extracted from the question text if None
        difficulty: one of DIFFICULTIES (defaults to DEFAULT_DIFFICULTY)

    Raises:
        ValueError: empty question/answer, unknown difficulty, or context_note_ids
            / topic_tags that are not lists
        InvalidContext: a context note belongs to someone else or does not exist
    """
    if not isinstance(question, str) or not question.strip():
        raise ValueError("Question is required")
    if answer is None or not str(answer).strip():
        raise ValueError("Answer is required")

    difficulty = difficulty or current_app.config.get("DEFAULT_DIFFICULTY", "medium")
    if difficulty not in current_app.config.get("DIFFICULTIES", ["easy", "medium", "hard"]):
        raise ValueError(f"Unknown difficulty: {difficulty}")

    if context_note_ids is not None and not isinstance(context_note_ids, list):
        raise ValueError("context_note_ids must be a list")
    if topic_tags is None:
        topic_tags = extract_topics(question)
    elif not isinstance(topic_tags, list):
        raise ValueError("topic_tags must be a list")

    record = UserQuestion(
        user_id=user_id,
        question=question,
        answer=answer,
        context_note_ids=_owned_note_ids(user_id, context_note_ids),
        topic_tags=_clean_tags(topic_tags),
        difficulty=difficulty,
    )
    db.session.add(record)
    db.session.commit()
    return record


def get_recent_questions(user_id, limit=None):
    """Newest first, never more than QUESTION_HISTORY_LIMIT."""
    cap = current_app.config.get("QUESTION_HISTORY_LIMIT", 50)
    limit = cap if limit is None else max(0, min(int(limit), cap))
    return (
        UserQuestion.query.filter_by(user_id=user_id)
        .order_by(UserQuestion.created_at.desc(), UserQuestion.id.desc())
        .limit(limit)
        .all()
    )


def set_feedback(user_id, question_id, score):
    """Attach a 1-5 feedback score. Returns the question, or None if the user has no such question."""
    if isinstance(score, bool) or not isinstance(score, int) or not 1 <= score <= 5:
        raise ValueError("Feedback score must be an integer from 1 to 5")
    record = UserQuestion.query.filter_by(id=question_id, user_id=user_id).first()
    if record is None:
        return None
    record.feedback_score = score
    db.session.commit()
    return record


def get_profile(user_id):
    """Existing profile, or a freshly created empty one."""
    profile = UserKnowledgeProfile.query.filter_by(user_id=user_id).first()
    if profile:
        return profile

    profile = UserKnowledgeProfile(
        user_id=user_id,
        topics_studied=[],
        weak_areas=[],
        strong_areas=[],
        study_preferences={},
        question_patterns={},
    )
    db.session.add(profile)
    try:
        db.session.commit()
    except IntegrityError:
        # Another request created it first
        db.session.rollback()
        profile = UserKnowledgeProfile.query.filter_by(user_id=user_id).one()
    return profile


def update_profile(user_id, partial_update):
    """
    Merge ``partial_update`` into the user's profile.

    List fields (topics_studied, weak_areas, strong_areas) are replaced; dict
    fields (study_preferences, question_patterns) are merged key by key, a
    None value removing the key. Fields not given are left untouched.
    """
    unknown = set(partial_update) - set(PROFILE_FIELDS)
    if unknown:
        raise ValueError(f"Unknown profile fields: {sorted(unknown)}")

    profile = get_profile(user_id)
    for field, kind in PROFILE_FIELDS.items():
        if field not in partial_update:
            continue
        value = partial_update[field]
        if not isinstance(value, kind):
            raise ValueError(f"{field} must be a {kind.__name__}")
        if kind is list:
            setattr(profile, field, list(value))
        else:
            merged = dict(getattr(profile, field) or {})
            for key, item in value.items():
                if item is None:
                    merged.pop(key, None)
                else:
                    merged[key] = item
            setattr(profile, field, merged)

    profile.last_updated = datetime.now(timezone.utc)
    db.session.commit()
    return profile


def apply_question_to_profile(user_id, question):
    """Fold one recorded exchange into the profile's topics and question counters."""
    profile = get_profile(user_id)

    topics = list(profile.topics_studied or [])
    for tag in question.topic_tags or []:
        if tag not in topics:
            topics.append(tag)

    patterns = dict(profile.question_patterns or {})
    patterns["total_questions"] = patterns.get("total_questions", 0) + 1
    by_difficulty = dict(patterns.get("by_difficulty") or {})
    by_difficulty[question.difficulty] = by_difficulty.get(question.difficulty, 0) + 1
    patterns["by_difficulty"] = by_difficulty
    topic_counts = dict(patterns.get("topic_counts") or {})
    for tag in question.topic_tags or []:
        topic_counts[tag] = topic_counts.get(tag, 0) + 1
    patterns["topic_counts"] = topic_counts

    profile.topics_studied = topics
    profile.question_patterns = patterns
    profile.last_updated = datetime.now(timezone.utc)
    db.session.commit()
    return profile


def analyze_profile(user_id):
    """
    Rebuild question patterns and weak/strong areas from recent history.

    Topics averaging feedback <= 2 become weak areas, >= 4 strong areas.
    Topics without feedback are studied but neither weak nor strong.
    """
    profile = get_profile(user_id)
    history = get_recent_questions(user_id)

    topics = list(profile.topics_studied or [])
    by_difficulty = {}
    topic_counts = {}
    topic_scores = {}
    scores = []
    for q in reversed(history):  # oldest first keeps first-seen topic order
        by_difficulty[q.difficulty] = by_difficulty.get(q.difficulty, 0) + 1
        if q.feedback_score is not None:
            scores.append(q.feedback_score)
        for tag in q.topic_tags or []:
            if tag not in topics:
                topics.append(tag)
            topic_counts[tag] = topic_counts.get(tag, 0) + 1
            if q.feedback_score is not None:
                topic_scores.setdefault(tag, []).append(q.feedback_score)

    averages = {tag: sum(s) / len(s) for tag, s in topic_scores.items()}
    weak = sorted((t for t, avg in averages.items() if avg <= WEAK_FEEDBACK), key=lambda t: (averages[t], t))
    strong = sorted((t for t, avg in averages.items() if avg >= STRONG_FEEDBACK), key=lambda t: (-averages[t], t))

    patterns = dict(profile.question_patterns or {})
    patterns.update({
        "total_questions": UserQuestion.query.filter_by(user_id=user_id).count(),
        "analyzed_questions": len(history),
        "by_difficulty": by_difficulty,
        "topic_counts": topic_counts,
        "average_feedback": round(sum(scores) / len(scores), 2) if scores else None,
    })

    profile.topics_studied = topics
    profile.weak_areas = weak
    profile.strong_areas = strong
    profile.question_patterns = patterns
    profile.last_updated = datetime.now(timezone.utc)
    db.session.commit()
    logger.info("Analyzed %d questions for user %s: %d weak, %d strong areas",
                len(history), user_id, len(weak), len(strong))
    return profile
