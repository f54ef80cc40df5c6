import logging
from flask import current_app
from studybuddy.services.embedding_service import get_embedding_service
from studybuddy.services.embedding_store import StorageMode, get_embedding_store
from studybuddy.services.errors import DecodeFailure, RetrievalCoreError
from studybuddy.services.similarity import cosine_similarity

logger = logging.getLogger(__name__)

RESULT_FIELDS = ("id", "note_id", "user_id", "content_type", "content_text", "title", "similarity")


def _clamp_limit(limit):
    if limit is None:
        return current_app.config.get("SEARCH_DEFAULT_LIMIT", 5)
    return max(0, min(int(limit), current_app.config.get("SEARCH_MAX_LIMIT", 50)))


def _to_result(row, similarity):
    result = {key: row.get(key) for key in RESULT_FIELDS}
    result["similarity"] = float(similarity)
    for stamp in ("created_at", "updated_at"):
        value = row.get(stamp)
        result[stamp] = value.isoformat() if hasattr(value, "isoformat") else value
    return result


def _decoded(store, rows):
    """Yield (row, vector) for every row whose stored vector decodes; skip the rest."""
    for row in rows:
        try:
            vector = store.decode(row["embedding"])
        except DecodeFailure as e:
            logger.warning("Skipping embedding %s of note %s: %s", row.get("id"), row.get("note_id"), e)
            continue
        yield row, vector


def search_similar(user_id, query_vector, limit=None, store=None):
    """
    Rank ``user_id``'s stored embeddings by cosine similarity to ``query_vector``.

    Args:
        user_id: only this user's embeddings are considered
        query_vector: vector of the configured dimension
        limit: maximum number of results (defaults to SEARCH_DEFAULT_LIMIT)
        store: EmbeddingStore to use (defaults to the app's store)

    Returns:
        list of dicts with id, note_id, user_id, content_type, content_text,
        title, similarity, created_at, updated_at; highest similarity first.
        Empty when the user has no embeddings or storage is unavailable.
    """
    store = store or get_embedding_store()
    limit = _clamp_limit(limit)
    mode = store.mode

    if mode is StorageMode.UNAVAILABLE or limit == 0:
        return []

    query_vector = store.check_vector(query_vector)

    if mode is StorageMode.NATIVE_VECTOR:
        return [_to_result(row, row["similarity"]) for row in store.nearest(user_id, query_vector, limit)]

    if mode is StorageMode.GENERIC_STRUCTURED:
        # Loads the user's whole corpus into memory
        scored = [
            _to_result(row, cosine_similarity(query_vector, vector))
            for row, vector in _decoded(store, store.candidates(user_id))
        ]
        scored.sort(key=lambda r: r["similarity"], reverse=True)
        return scored[:limit]

    raise AssertionError(f"Unhandled storage mode: {mode}")


def index_note(note, content_type="note", text=None, embedder=None, store=None):
    """
    Embed a note's text and upsert it under (note.id, content_type).

    Returns the stored row, or None when there is nothing to embed or the
    embedding table is not provisioned. Provider failures propagate.
    """
    store = store or get_embedding_store()
    if store.mode is StorageMode.UNAVAILABLE:
        logger.debug("Embedding storage unavailable, note %s not indexed", note.id)
        return None

    text = note.embedding_text() if text is None else text
    if not text or not text.strip():
        logger.info("Note %s has no text to embed", note.id)
        return None

    embedder = embedder or get_embedding_service()
    vector = embedder.embed(text)
    store.upsert(note.id, note.user_id, content_type, text.strip(), vector)
    return store.get(note.id, content_type)


def search_notes(user_id, query, limit=None, embedder=None, store=None):
    """
    Search a user's notes with a free-text question.

    Embedding failures degrade to "no grounding context": they are logged and
    an empty list is returned.
    """
    store = store or get_embedding_store()
    if store.mode is StorageMode.UNAVAILABLE:
        return []

    embedder = embedder or get_embedding_service()
    try:
        query_vector = embedder.embed(query)
    except RetrievalCoreError as e:
        logger.warning("Search for user %s returned no context: %s", user_id, e)
        return []
    return search_similar(user_id, query_vector, limit=limit, store=store)


def build_context(fragments):
    """Grounding block for the answer generator, one fragment per section."""
    return "\n\n---\n\n".join(
        f"[Note #{f['note_id']}: {f.get('title') or 'Untitled'}] {f['content_text']}" for f in fragments
    )
