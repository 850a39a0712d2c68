"""Default configurations for ctx-index."""

# Default embedding model per provider
DEFAULT_EMBEDDING_MODELS = {
    "sentence-transformers": "sentence-transformers/all-MiniLM-L6-v2",
    "ollama": "nomic-embed-text",
    "openai": "text-embedding-3-small",
}

# Default base URLs for HTTP providers
DEFAULT_PROVIDER_URLS = {
    "ollama": "http://localhost:11434",
    "openai": "https://api.openai.com/v1",
}

# Declared output dimensionality by model family.
# Keys are matched as case-insensitive substrings of the model name, so order
# matters: more specific names come first.
MODEL_SPECIFICATIONS: list[tuple[str, int]] = [
    ("text-embedding-3-large", 3072),
    ("text-embedding-3-small", 1536),
    ("text-embedding-ada", 1536),
    ("bge-large", 1024),
    ("bge-base", 768),
    ("bge-small", 384),
    ("mxbai-embed", 1024),
    ("nomic-embed", 768),
    ("all-minilm", 384),
    ("paraphrase-minilm", 384),
    ("all-mpnet", 768),
    ("multi-qa-mpnet", 768),
    ("graphcodebert", 768),
    ("codebert", 768),
]

# Embedding pipeline
DEFAULT_BATCH_SIZE = 32
DEFAULT_EMBEDDING_TIMEOUT = 120.0  # seconds per provider call
DEFAULT_MEMORY_ESTIMATE_DIMENSIONS = 1024
EMBEDDING_OVERHEAD_BYTES = 100  # per-vector bookkeeping in memory estimates

# Search
DEFAULT_TOP_K = 10
BM25_SCORE_SCALE = 10.0  # raw BM25 score that maps to 1.0
RRF_K = 60
DEFAULT_DENSE_WEIGHT = 0.7
DEFAULT_BM25_WEIGHT = 0.3
DEFAULT_RERANK_CANDIDATES = 50
DEFAULT_RERANK_MODEL = "cross-encoder/ms-marco-MiniLM-L-6-v2"

# Indexing session progress
RATE_EMA_ALPHA = 0.3
RATE_HISTORY_SIZE = 10

INDEXING_IN_PROGRESS_MESSAGE = (
    "Indexing already in progress. Use /index cancel to stop it first."
)


def get_model_dimensions(model_name: str) -> int:
    """Get the declared embedding dimensionality for a model.

    Args:
        model_name: Model name or path (e.g. "BAAI/bge-small-en-v1.5")

    Returns:
        Number of dimensions the model produces

    Raises:
        ValueError: If the model family is unknown
    """
    lowered = model_name.lower()
    for family, dimensions in MODEL_SPECIFICATIONS:
        if family in lowered:
            return dimensions
    raise ValueError(
        f"Unknown embedding model: {model_name}. "
        f"Pass explicit dimensions or add it to MODEL_SPECIFICATIONS."
    )


def is_known_model(model_name: str) -> bool:
    """Check whether a model's dimensionality can be resolved."""
    try:
        get_model_dimensions(model_name)
    except ValueError:
        return False
    return True
