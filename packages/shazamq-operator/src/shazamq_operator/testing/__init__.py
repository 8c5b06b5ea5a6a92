"""
In-memory implementations of every collaborator protocol.

Used by the test suite and handy for exercising the engine without a
cluster: the platform fake simulates resource versions, merge patches and a
StatefulSet controller; the broker, object store and mirror fakes record
what the engine asked of them.
"""

from shazamq_operator.testing.broker import FakeBroker, FakeSegment, InMemoryObjectStore
from shazamq_operator.testing.mirror import (
    InMemoryMirrorFactory,
    InMemoryMirrorSource,
    InMemoryMirrorTarget,
)
from shazamq_operator.testing.platform import InMemoryPlatform, apply_merge_patch

__all__ = [
    "FakeBroker",
    "FakeSegment",
    "InMemoryMirrorFactory",
    "InMemoryMirrorSource",
    "InMemoryMirrorTarget",
    "InMemoryObjectStore",
    "InMemoryPlatform",
    "apply_merge_patch",
]
