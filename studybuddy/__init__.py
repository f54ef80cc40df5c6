import logging
from flask import Flask
from config import Config
from studybuddy.extensions import db, migrate, login_manager


def create_app(config_class=Config):
    app = Flask(__name__)
    app.config.from_object(config_class)

    logging.basicConfig(
        level=app.config.get("LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)

    # Register blueprints
    from studybuddy.routes.auth import auth_bp
    from studybuddy.routes.notes import notes_bp
    from studybuddy.routes.questions import questions_bp
    from studybuddy.routes.profile import profile_bp

    app.register_blueprint(auth_bp)
    app.register_blueprint(notes_bp)
    app.register_blueprint(questions_bp)
    app.register_blueprint(profile_bp)

    from studybuddy.cli import embeddings_cli
    app.cli.add_command(embeddings_cli)

    # User loader
    from studybuddy.models.user import User

    @login_manager.user_loader
    def load_user(user_id):
        return db.session.get(User, int(user_id))

    with app.app_context():
        from studybuddy.models import user, note, embedding, question, knowledge_profile  # noqa
        _create_tables(app)

    return app


def _create_tables(app):
    """
    Create every table except note_embeddings, whose column type depends on
    whether pgvector is available; provision_embedding_table decides that.
    """
    from studybuddy.models.embedding import NoteEmbedding
    from studybuddy.services.embedding_store import provision_embedding_table

    tables = [t for t in db.metadata.sorted_tables if t.name != NoteEmbedding.__tablename__]
    db.metadata.create_all(bind=db.engine, tables=tables)

    if app.config.get("EMBEDDINGS_AUTO_PROVISION"):
        try:
            provision_embedding_table()
        except Exception:
            # Semantic search stays off; everything else keeps working
            logging.getLogger(__name__).exception("Embedding table provisioning failed (non-fatal)")
