"""
Deterministic partition-to-worker assignment.

A partition's worker depends only on its (topic, partition) and the worker
count, never on the order partitions are listed or on which other partitions
exist. Restarts and topic additions therefore leave existing assignments in
place instead of reshuffling every partition.
"""

import hashlib

from shazamq_protocols.types import SourcePartition


def worker_for(partition: SourcePartition, num_workers: int) -> int:
    """Worker index for a partition: first 8 bytes of SHA-256, big-endian, mod workers."""
    if num_workers < 1:
        raise ValueError("num_workers must be at least 1")
    digest = hashlib.sha256(f"{partition.topic}:{partition.partition}".encode()).digest()
    return int.from_bytes(digest[:8], "big") % num_workers


def assign(
    partitions: list[SourcePartition], num_workers: int
) -> dict[int, list[SourcePartition]]:
    """
    Group partitions by worker.

    Returns:
        Every worker index in range(num_workers) mapped to its partitions,
        sorted; idle workers map to an empty list
    """
    assignment: dict[int, list[SourcePartition]] = {i: [] for i in range(num_workers)}
    for partition in sorted(set(partitions)):
        assignment[worker_for(partition, num_workers)].append(partition)
    return assignment
