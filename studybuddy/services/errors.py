class RetrievalCoreError(Exception):
    """Base class for failures raised by the embedding / retrieval services."""


class EmbeddingUnavailable(RetrievalCoreError):
    """Text given for embedding was empty after trimming."""


class NoValidInput(EmbeddingUnavailable):
    """Every entry of a batch was empty or whitespace-only."""


class EmbeddingProviderError(RetrievalCoreError):
    """The embedding provider could not be reached, timed out or answered non-2xx."""


class ProviderContractViolation(RetrievalCoreError):
    """The provider returned a different count or dimension than requested."""


class DimensionMismatch(RetrievalCoreError, ValueError):
    """Two vectors (or a vector and the configured dimension) disagree in length."""


class StorageUnavailable(RetrievalCoreError):
    """The note_embeddings table is not provisioned."""


class DecodeFailure(RetrievalCoreError):
    """A stored vector could not be parsed."""


class InvalidContext(RetrievalCoreError, ValueError):
    """A question referenced context notes not owned by the asking user."""
