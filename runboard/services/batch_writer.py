"""
Batch Write Coordinator

Accepts any number of document writes and commits them in chunks no larger
than the store's per-transaction write limit. Chunks commit sequentially;
a failed chunk is recorded and, unless stop_on_error is set, the remaining
chunks still commit.
"""

import logging
from typing import Iterable, List, Optional

from runboard.data_models.results import BatchResult
from runboard.database.store import WriteOp
from runboard.utils.exceptions import RunboardException

logger = logging.getLogger(__name__)


def chunked(ops: List[WriteOp], size: int) -> List[List[WriteOp]]:
    return [ops[i:i + size] for i in range(0, len(ops), size)]


class BatchWriteCoordinator:
    """Splits write sequences into store-sized batches."""

    def __init__(self, store, chunk_size: Optional[int] = None):
        self.store = store
        self.chunk_size = min(chunk_size or store.batch_limit, store.batch_limit)

    async def commit(self, ops: Iterable[WriteOp], stop_on_error: bool = False) -> BatchResult:
        ops = list(ops)
        result = BatchResult()
        if not ops:
            return result

        chunks = chunked(ops, self.chunk_size)
        for index, chunk in enumerate(chunks, start=1):
            result.chunks += 1
            try:
                await self.store.commit_batch(chunk)
                result.committed += len(chunk)
            except RunboardException as e:
                result.failed += len(chunk)
                result.failed_ids.extend(op.target_id for op in chunk)
                result.errors.append(f"Chunk {index}/{len(chunks)} ({len(chunk)} writes): {e}")
                logger.error(f"Batch chunk {index}/{len(chunks)} failed: {e}")
                if stop_on_error:
                    break

        if result.failed:
            logger.warning(f"Batch commit finished with {result.failed} failed writes of {len(ops)}")
        else:
            logger.debug(f"Committed {result.committed} writes in {result.chunks} chunks")
        return result
