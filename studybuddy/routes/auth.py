import logging
from flask import Blueprint, request, jsonify
from flask_login import login_user, logout_user, login_required, current_user
from studybuddy.extensions import db
from studybuddy.models.knowledge_profile import UserKnowledgeProfile
from studybuddy.models.note import Note
from studybuddy.models.question import UserQuestion
from studybuddy.models.user import User
from studybuddy.services.embedding_store import get_embedding_store

logger = logging.getLogger(__name__)

auth_bp = Blueprint("auth", __name__, url_prefix="/auth")

MIN_PASSWORD_LENGTH = 6


def _text(data, key):
    value = data.get(key)
    return value.strip() if isinstance(value, str) else ""


def _public(user):
    return {"id": user.id, "username": user.username}


@auth_bp.route("/register", methods=["POST"])
def register():
    data = request.get_json(silent=True) or {}
    username = _text(data, "username")
    email = _text(data, "email").lower()
    password = data.get("password") if isinstance(data.get("password"), str) else ""

    if not username or not email or not password:
        return jsonify({"error": "username, email and password are required"}), 400
    if len(password) < MIN_PASSWORD_LENGTH:
        return jsonify({"error": f"Password must be at least {MIN_PASSWORD_LENGTH} characters"}), 400

    taken = User.query.filter((User.username == username) | (User.email == email)).first()
    if taken is not None:
        field = "Username" if taken.username == username else "Email"
        return jsonify({"error": f"{field} already registered"}), 409

    user = User(username=username, email=email)
    user.set_password(password)
    db.session.add(user)
    db.session.commit()

    login_user(user)
    return jsonify({"user": _public(user)}), 201


@auth_bp.route("/login", methods=["POST"])
def login():
    data = request.get_json(silent=True) or {}
    user = User.query.filter_by(username=_text(data, "username")).first()
    password = data.get("password")
    if user is None or not isinstance(password, str) or not user.check_password(password):
        return jsonify({"error": "Invalid username or password"}), 401

    login_user(user, remember=True)
    return jsonify({"user": _public(user)})


@auth_bp.route("/logout", methods=["POST"])
@login_required
def logout():
    logout_user()
    return jsonify({"message": "Logged out"})


@auth_bp.route("/me", methods=["GET"])
@login_required
def me():
    """The signed-in user and the size of what they have stored."""
    store = get_embedding_store()
    return jsonify({
        "user": dict(_public(current_user), email=current_user.email),
        "study": {
            "notes": Note.query.filter_by(user_id=current_user.id).count(),
            "questions": UserQuestion.query.filter_by(user_id=current_user.id).count(),
            "embeddings": store.count(current_user.id),
            "storage_mode": store.mode.value,
        },
    })


@auth_bp.route("/me", methods=["DELETE"])
@login_required
def delete_account():
    """Remove the account with its notes, embeddings, questions and profile."""
    data = request.get_json(silent=True) or {}
    password = data.get("password")
    if not isinstance(password, str) or not current_user.check_password(password):
        return jsonify({"error": "Password confirmation failed"}), 403

    user_id = current_user.id
    # SQLite does not enforce the note_embeddings foreign keys
    removed = get_embedding_store().delete_by_user(user_id)
    UserQuestion.query.filter_by(user_id=user_id).delete()
    UserKnowledgeProfile.query.filter_by(user_id=user_id).delete()
    Note.query.filter_by(user_id=user_id).delete()
    user = db.session.get(User, user_id)
    logout_user()
    db.session.delete(user)
    db.session.commit()

    logger.info("Deleted user %s and %d embeddings", user_id, removed)
    return jsonify({"message": "Account deleted", "embeddings_removed": removed})
