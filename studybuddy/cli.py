import click
from flask.cli import with_appcontext
from studybuddy.services.embedding_service import get_embedding_service
from studybuddy.services.embedding_store import get_embedding_store, provision_embedding_table


@click.group("embeddings")
def embeddings_cli():
    """Manage the note_embeddings table."""


@embeddings_cli.command("provision")
@click.option("--dimension", type=int, default=None, help="Vector dimension (defaults to EMBEDDING_DIMENSION).")
@with_appcontext
def provision(dimension):
    """Create note_embeddings, preferring a pgvector column."""
    mode = provision_embedding_table(dimension)
    click.echo(f"note_embeddings ready: {mode.value}")


@embeddings_cli.command("status")
@with_appcontext
def status():
    """Show the detected storage mode and row count."""
    store = get_embedding_store()
    click.echo(f"mode: {store.mode.value}")
    click.echo(f"dimension: {store.dimension}")
    click.echo(f"rows: {store.count()}")
    click.echo(f"embeddings: {'synthetic' if get_embedding_service().is_synthetic else 'live'}")
