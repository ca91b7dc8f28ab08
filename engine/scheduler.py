"""Chunk scheduler: round-robin fan-out of addresses over a fixed worker count.

Chunk ``c`` receives list indices ``i`` with ``i % worker_count == c`` so slow
or blocked addresses spread evenly instead of stalling one worker on a bad
contiguous run. Each worker verifies its chunk sequentially.
"""

import asyncio
import logging
from typing import Optional, Sequence, TypeVar

from .errors import WorkerCrashedError
from .models import EmailRecord, VerificationOutcome

logger = logging.getLogger("listverify.scheduler")

DEFAULT_WORKER_COUNT = 4

T = TypeVar("T")


def partition_round_robin(items: Sequence[T], worker_count: int) -> list[list[T]]:
    """Split ``items`` into ``worker_count`` chunks by index modulo.

    Chunks may be empty when there are fewer items than workers.
    """
    if worker_count < 1:
        raise ValueError("worker_count must be >= 1")
    chunks: list[list[T]] = [[] for _ in range(worker_count)]
    for idx, item in enumerate(items):
        chunks[idx % worker_count].append(item)
    return chunks


async def schedule(
    records: Sequence[EmailRecord],
    verifier,
    worker_count: int = DEFAULT_WORKER_COUNT,
    progress_callback=None,
) -> list[VerificationOutcome]:
    """Verify ``records`` concurrently and return outcomes in input order.

    ``verifier`` is anything with ``async verify(address) -> VerificationOutcome``.
    A worker that raises is fatal: the remaining workers are cancelled and
    WorkerCrashedError is raised.
    """
    positions = partition_round_robin(range(len(records)), worker_count)
    outcomes: list[Optional[VerificationOutcome]] = [None] * len(records)

    async def _run_chunk(chunk_id: int, chunk: list[int]) -> None:
        logger.debug("Worker %d started with %d addresses", chunk_id, len(chunk))
        try:
            for pos in chunk:
                outcome = await verifier.verify(records[pos].address)
                outcomes[pos] = outcome
                if progress_callback:
                    progress_callback(outcome)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Worker %d crashed", chunk_id)
            raise WorkerCrashedError(chunk_id, e) from e
        logger.debug("Worker %d finished", chunk_id)

    tasks = [
        asyncio.create_task(_run_chunk(chunk_id, chunk))
        for chunk_id, chunk in enumerate(positions)
        if chunk
    ]
    logger.info(
        "Scheduled %d addresses across %d workers (%d non-empty chunks)",
        len(records), worker_count, len(tasks),
    )

    try:
        await asyncio.gather(*tasks)
    except WorkerCrashedError:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise

    missing = [pos for pos, outcome in enumerate(outcomes) if outcome is None]
    if missing:
        raise WorkerCrashedError(-1, RuntimeError(f"{len(missing)} addresses left unverified"))
    return outcomes
