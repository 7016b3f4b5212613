"""Custom exceptions for the memory engine."""


class MemoryEngineError(Exception):
    """Base exception for the memory engine."""

    pass


class ConfigurationError(MemoryEngineError):
    """Configuration-related errors."""

    pass


class EmbeddingError(MemoryEngineError):
    """Embedding provider call failed (transport, quota, malformed response)."""

    def __init__(self, message: str, provider_id: str = "", model: str = ""):
        super().__init__(message)
        self.provider_id = provider_id
        self.model = model


class EmbeddingUnavailableError(EmbeddingError):
    """No usable credential/configuration for the embedding provider."""

    def __init__(self, provider_id: str, model: str):
        super().__init__(
            f"Embedding provider '{provider_id}' is not configured for model '{model}'",
            provider_id=provider_id,
            model=model,
        )


class StoreError(MemoryEngineError):
    """Content store errors."""

    pass


class StoreClosedError(StoreError):
    """Operation attempted on a store that is not open."""

    def __init__(self, db_path: str = ""):
        message = f"Memory store is closed: {db_path}" if db_path else "Memory store is closed"
        super().__init__(message)
        self.db_path = db_path
