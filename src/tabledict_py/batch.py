from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Iterable, Sequence

from .errors import BatchFailedError, TabledictError, ValidationError
from .store import OperationResult, TableOperation

logger = logging.getLogger(__name__)

MaxBatchSize = 100


def group_operations(
    operations: Iterable[TableOperation] | None,
    *,
    max_batch_size: int = MaxBatchSize,
) -> list[list[TableOperation]]:
    """Split operations into single-partition groups of at most ``max_batch_size``.

    Groups for one partition key come out in input order, so concatenating them
    restores that partition's original order. Groups for different partitions
    are ordered by the first appearance of their partition key. A row key seen
    twice starts a new group, since a store batch may touch each row once.
    """
    if operations is None:
        raise ValidationError("operations is required")
    ops = list(operations)
    return [[ops[i] for i in group] for group in _group_indices(ops, max_batch_size)]


def submit_grouped(
    submit: Callable[[Sequence[TableOperation]], list[OperationResult]],
    operations: Sequence[TableOperation],
    *,
    max_batch_size: int = MaxBatchSize,
) -> list[OperationResult]:
    """Run every group through ``submit`` and return one result per operation, in input order."""
    results: list[OperationResult | None] = [None] * len(operations)

    for group in _group_indices(operations, max_batch_size):
        batch = [operations[i] for i in group]
        logger.debug("submitting batch: partition=%r size=%d", batch[0].partition_key, len(batch))
        try:
            group_results = submit(batch)
        except TabledictError as err:
            group_results = _failed_group(batch, err)
        for i, result in zip(group, group_results, strict=True):
            results[i] = result

    return [r for r in results if r is not None]


async def asubmit_grouped(
    submit: Callable[[Sequence[TableOperation]], Awaitable[list[OperationResult]]],
    operations: Sequence[TableOperation],
    *,
    max_batch_size: int = MaxBatchSize,
) -> list[OperationResult]:
    results: list[OperationResult | None] = [None] * len(operations)

    for group in _group_indices(operations, max_batch_size):
        batch = [operations[i] for i in group]
        logger.debug("submitting batch: partition=%r size=%d", batch[0].partition_key, len(batch))
        try:
            group_results = await submit(batch)
        except TabledictError as err:
            group_results = _failed_group(batch, err)
        for i, result in zip(group, group_results, strict=True):
            results[i] = result

    return [r for r in results if r is not None]


def _group_indices(operations: Sequence[TableOperation], max_batch_size: int) -> list[list[int]]:
    if max_batch_size <= 0:
        raise ValidationError("max_batch_size must be > 0")

    by_partition: dict[str, list[list[int]]] = {}
    open_rows: dict[str, set[str]] = {}

    for i, op in enumerate(operations):
        if not isinstance(op, TableOperation):
            raise ValidationError(f"unsupported batch operation: {type(op).__name__}")

        groups = by_partition.setdefault(op.partition_key, [])
        rows = open_rows.setdefault(op.partition_key, set())
        if not groups or len(groups[-1]) >= max_batch_size or op.row_key in rows:
            groups.append([])
            rows.clear()

        groups[-1].append(i)
        rows.add(op.row_key)

    out: list[list[int]] = []
    for groups in by_partition.values():
        out.extend(groups)
    return out


def _failed_group(group: Sequence[TableOperation], err: TabledictError) -> list[OperationResult]:
    logger.warning("batch failed: partition=%r size=%d error=%s", group[0].partition_key, len(group), err)
    if isinstance(err, BatchFailedError):
        failed_index = err.index
        cause: Exception = err.cause or err
    else:
        failed_index = -1
        cause = err

    return [
        OperationResult(operation=op, error=cause if i == failed_index else err) for i, op in enumerate(group)
    ]
