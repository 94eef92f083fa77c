from scholarai.vectorstore.base import ScoredChunk, StoredChunk, VectorIndex, rank_by_cosine
from scholarai.vectorstore.memory import InMemoryVectorIndex

__all__ = ["VectorIndex", "StoredChunk", "ScoredChunk", "rank_by_cosine", "InMemoryVectorIndex"]
