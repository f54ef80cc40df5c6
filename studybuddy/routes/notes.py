import logging
from flask import Blueprint, request, jsonify
from flask_login import login_required, current_user
from studybuddy.extensions import db
from studybuddy.models.note import Note
from studybuddy.services.embedding_store import get_embedding_store
from studybuddy.services.errors import EmbeddingUnavailable, RetrievalCoreError
from studybuddy.services.retrieval_service import index_note

logger = logging.getLogger(__name__)

notes_bp = Blueprint("notes", __name__, url_prefix="/api")


def _embedding_to_dict(row):
    if row is None:
        return None
    return {
        "id": row["id"],
        "note_id": row["note_id"],
        "content_type": row["content_type"],
        "content_text": row["content_text"],
        "dimension": len(row["embedding"]),
        "updated_at": row["updated_at"].isoformat() if hasattr(row["updated_at"], "isoformat") else row["updated_at"],
    }


@notes_bp.route("/notes", methods=["POST"])
@login_required
def create_note():
    data = request.get_json() or {}
    note = Note(
        user_id=current_user.id,
        title=data.get("title") or "Untitled",
        content=data.get("content", ""),
    )
    db.session.add(note)
    db.session.commit()

    # Indexing failures never fail note creation
    embedding = None
    try:
        embedding = index_note(note)
    except RetrievalCoreError as e:
        logger.warning("Embedding note %s failed: %s", note.id, e)

    d = note.to_dict()
    d["embedding"] = _embedding_to_dict(embedding)
    return jsonify(d), 201


@notes_bp.route("/notes/<int:note_id>", methods=["GET"])
@login_required
def get_note(note_id):
    note = Note.query.filter_by(id=note_id, user_id=current_user.id).first_or_404()
    return jsonify(note.to_dict())


@notes_bp.route("/notes/<int:note_id>", methods=["DELETE"])
@login_required
def delete_note(note_id):
    note = Note.query.filter_by(id=note_id, user_id=current_user.id).first_or_404()
    get_embedding_store().delete_by_note(note.id)
    db.session.delete(note)
    db.session.commit()
    return jsonify({"message": "Note deleted"})


@notes_bp.route("/notes/<int:note_id>/embeddings", methods=["POST"])
@login_required
def embed_note(note_id):
    """(Re-)embed a note. Optional body: content_type, text (e.g. a summary)."""
    note = Note.query.filter_by(id=note_id, user_id=current_user.id).first_or_404()
    data = request.get_json(silent=True) or {}
    content_type = (data.get("content_type") or "note").strip()
    text = data.get("text")
    if text is not None and not str(text).strip():
        return jsonify({"error": "Text cannot be empty"}), 400

    try:
        embedding = index_note(note, content_type=content_type, text=text)
    except EmbeddingUnavailable as e:
        return jsonify({"error": str(e)}), 400
    except RetrievalCoreError as e:
        logger.error("Embedding note %s failed: %s", note.id, e)
        return jsonify({"error": f"Embedding failed: {e}"}), 502

    store = get_embedding_store()
    return jsonify({
        "storage_mode": store.mode.value,
        "embedding": _embedding_to_dict(embedding),
    })


@notes_bp.route("/notes/<int:note_id>/embeddings", methods=["DELETE"])
@login_required
def delete_note_embeddings(note_id):
    note = Note.query.filter_by(id=note_id, user_id=current_user.id).first_or_404()
    store = get_embedding_store()
    content_type = request.args.get("content_type")
    if content_type:
        deleted = store.delete_by_note_and_type(note.id, content_type)
    else:
        deleted = store.delete_by_note(note.id)
    return jsonify({"deleted": deleted})
