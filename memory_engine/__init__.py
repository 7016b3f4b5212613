"""Memory Engine - chunked markdown memory with hybrid vector/keyword retrieval."""

__version__ = "0.1.0"

from memory_engine.config import Config
from memory_engine.engine import MemoryEngine, create_memory_engine
from memory_engine.recall import MemoryRecall
from memory_engine.search import ScoredResult

__all__ = ["Config", "MemoryEngine", "MemoryRecall", "ScoredResult", "create_memory_engine", "__version__"]
