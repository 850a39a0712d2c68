"""System memory probing for embedding batch sizing."""

import psutil
from loguru import logger

from ..config.defaults import DEFAULT_BATCH_SIZE, EMBEDDING_OVERHEAD_BYTES

# Memory kept free for the OS and other processes
DEFAULT_MEMORY_RESERVE_MB = 1000

# Fraction of available memory one batch may occupy
DEFAULT_MEMORY_FRACTION = 0.1


def get_system_memory() -> tuple[int, int]:
    """Get total and available system memory in MB.

    Returns:
        Tuple of (total_mb, available_mb)
    """
    mem = psutil.virtual_memory()
    total_mb = mem.total // (1024 * 1024)
    available_mb = mem.available // (1024 * 1024)
    return total_mb, available_mb


def get_batch_size_for_memory(
    dimensions: int,
    avg_chunk_bytes: int = 2048,
    requested: int = DEFAULT_BATCH_SIZE,
    memory_fraction: float = DEFAULT_MEMORY_FRACTION,
    memory_reserve_mb: int = DEFAULT_MEMORY_RESERVE_MB,
) -> int:
    """Cap a requested batch size by what fits in available memory.

    One batch holds the chunk texts plus their float32 vectors.

    Args:
        dimensions: Embedding dimensionality
        avg_chunk_bytes: Estimated size of one chunk's text
        requested: Batch size asked for
        memory_fraction: Share of available memory a batch may use
        memory_reserve_mb: Memory left untouched

    Returns:
        Batch size in ``[1, requested]``
    """
    _, available_mb = get_system_memory()
    usable_bytes = max(0, available_mb - memory_reserve_mb) * 1024 * 1024
    budget = int(usable_bytes * memory_fraction)

    per_item = dimensions * 4 + EMBEDDING_OVERHEAD_BYTES + avg_chunk_bytes
    fits = max(1, budget // per_item)

    if fits < requested:
        logger.info(
            f"Reducing embedding batch size {requested} -> {fits} "
            f"({available_mb}MB available)"
        )
        return fits
    return requested
