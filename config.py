import os
from dotenv import load_dotenv

load_dotenv()


class Config:
    SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-key")
    SQLALCHEMY_DATABASE_URI = os.getenv("DATABASE_URL", "sqlite:///app.db").replace("postgres://", "postgresql://", 1)
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Storage calls carry their own timeout on PostgreSQL
    DB_STATEMENT_TIMEOUT_MS = int(os.getenv("DB_STATEMENT_TIMEOUT_MS", "10000"))
    SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True}
    if SQLALCHEMY_DATABASE_URI.startswith("postgresql"):
        SQLALCHEMY_ENGINE_OPTIONS["connect_args"] = {"options": f"-c statement_timeout={DB_STATEMENT_TIMEOUT_MS}"}

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    # Embedding provider (either key enables live embeddings)
    OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
    OPENROUTER_API_KEY = os.getenv("OPENROUTER_API_KEY", "")
    OPENAI_BASE_URL = "https://api.openai.com/v1"
    OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
    EMBEDDING_BASE_URL = os.getenv("EMBEDDING_BASE_URL", "")
    EMBEDDING_MODEL = os.getenv("EMBEDDING_MODEL", "text-embedding-3-small")
    EMBEDDING_DIMENSION = int(os.getenv("EMBEDDING_DIMENSION", "1536"))
    EMBEDDING_MAX_CHARS = 8000
    EMBEDDING_TIMEOUT = int(os.getenv("EMBEDDING_TIMEOUT", "30"))

    # Embedding table
    EMBEDDINGS_AUTO_PROVISION = os.getenv("EMBEDDINGS_AUTO_PROVISION", "1") == "1"

    # Retrieval
    SEARCH_DEFAULT_LIMIT = 5
    SEARCH_MAX_LIMIT = 50

    # Knowledge profile
    QUESTION_HISTORY_LIMIT = 50
    DEFAULT_DIFFICULTY = "medium"
    DIFFICULTIES = ["easy", "medium", "hard"]


class TestConfig(Config):
    TESTING = True
    SECRET_KEY = "test-secret-key"
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    SQLALCHEMY_ENGINE_OPTIONS = {}
    OPENAI_API_KEY = ""
    OPENROUTER_API_KEY = ""
    EMBEDDING_DIMENSION = 64
    EMBEDDINGS_AUTO_PROVISION = False
    LOG_LEVEL = "DEBUG"
