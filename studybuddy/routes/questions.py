import logging
from flask import Blueprint, request, jsonify
from flask_login import login_required, current_user
from studybuddy.extensions import db
from studybuddy.services.errors import InvalidContext
from studybuddy.services.knowledge_service import (
    apply_question_to_profile,
    get_recent_questions,
    record_question,
    set_feedback,
)
from studybuddy.services.retrieval_service import build_context, search_notes

logger = logging.getLogger(__name__)

questions_bp = Blueprint("questions", __name__, url_prefix="/api")


@questions_bp.route("/search", methods=["POST"])
@login_required
def search():
    data = request.get_json() or {}
    query = data.get("query")
    if not isinstance(query, str) or not query.strip():
        return jsonify({"error": "Query is required"}), 400

    limit = data.get("limit")
    if limit is not None and (isinstance(limit, bool) or not isinstance(limit, int) or limit < 0):
        return jsonify({"error": "Limit must be a non-negative integer"}), 400

    fragments = search_notes(current_user.id, query.strip(), limit=limit)
    return jsonify({
        "results": fragments,
        "context": build_context(fragments),
    })


@questions_bp.route("/questions", methods=["POST"])
@login_required
def create_question():
    data = request.get_json() or {}
    try:
        record = record_question(
            current_user.id,
            data.get("question", ""),
            data.get("answer", ""),
            context_note_ids=data.get("context_note_ids"),
            topic_tags=data.get("topic_tags"),
            difficulty=data.get("difficulty"),
        )
    except InvalidContext as e:
        return jsonify({"error": str(e)}), 422
    except (TypeError, ValueError) as e:
        return jsonify({"error": str(e)}), 400

    # Profile folding failures leave the stored question in place
    try:
        apply_question_to_profile(current_user.id, record)
    except Exception:
        db.session.rollback()
        logger.exception("Profile update failed for question %s", record.id)

    return jsonify(record.to_dict()), 201


@questions_bp.route("/questions", methods=["GET"])
@login_required
def list_questions():
    limit = request.args.get("limit", type=int)
    questions = get_recent_questions(current_user.id, limit=limit)
    return jsonify({"questions": [q.to_dict() for q in questions]})


@questions_bp.route("/questions/<int:question_id>/feedback", methods=["PUT"])
@login_required
def update_feedback(question_id):
    data = request.get_json() or {}
    try:
        record = set_feedback(current_user.id, question_id, data.get("score"))
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    if record is None:
        return jsonify({"error": "Question not found"}), 404
    return jsonify(record.to_dict())
