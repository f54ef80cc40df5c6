# Models package: import all models so SQLAlchemy sees them
from studybuddy.models.user import User  # noqa
from studybuddy.models.note import Note  # noqa
from studybuddy.models.embedding import NoteEmbedding  # noqa
from studybuddy.models.question import UserQuestion  # noqa
from studybuddy.models.knowledge_profile import UserKnowledgeProfile  # noqa
