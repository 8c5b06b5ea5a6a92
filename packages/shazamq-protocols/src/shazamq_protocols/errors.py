"""
Error taxonomy shared by the reconciliation engine and its adapters.

Every failure the engine can surface maps onto one of these classes. Each
class carries:
- reason: stable reason code, written verbatim into status conditions
- retryable: whether the scheduler should requeue the pass with backoff

Adapters translate library exceptions (kubernetes_asyncio, httpx, aiokafka,
botocore) into these types at the boundary, so engine code never sees a
third-party exception type.
"""


class OperatorError(Exception):
    """
    Base class for all engine errors.

    Attributes:
        reason: Stable reason code used in status conditions
        retryable: True if the pass should be requeued with backoff
    """

    reason = "OperatorError"
    retryable = True

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class TransientAPIError(OperatorError):
    """Network or timeout failure talking to the orchestration API or object storage."""

    reason = "TransientAPIError"
    retryable = True


class ConflictError(OperatorError):
    """
    Optimistic-concurrency mismatch on update.

    Raised by platform adapters on HTTP 409. Callers re-fetch and retry a
    small bounded number of times before converting to TransientAPIError.
    """

    reason = "Conflict"
    retryable = True


class SpecValidationError(OperatorError):
    """
    Cluster spec failed semantic validation.

    Non-retryable: no reconciliation progress is made until the spec is edited.

    Attributes:
        problems: Individual validation failures
    """

    reason = "SpecValidationError"
    retryable = False

    def __init__(self, problems: list[str]) -> None:
        self.problems = problems
        super().__init__("; ".join(problems))


class OwnershipConflict(OperatorError):
    """
    A desired object already exists but is controlled by something else.

    Attributes:
        kind: Object kind value
        name: Object name
        owner: Description of the current controller, if any
    """

    reason = "OwnershipConflict"
    retryable = False

    def __init__(self, kind: str, name: str, owner: str | None) -> None:
        self.kind = kind
        self.name = name
        self.owner = owner
        super().__init__(
            f"{kind} '{name}' is controlled by {owner or 'no controller'}; "
            f"manual resolution required"
        )


class ExternalDependencyError(OperatorError):
    """
    Mirror source unreachable, object-storage auth failure and similar.

    Surfaced as Degraded for the affected sub-feature only.

    Attributes:
        feature: Sub-feature affected ("mirror", "tieredStorage", "upgrade")
    """

    reason = "ExternalDependencyError"
    retryable = True

    def __init__(self, feature: str, message: str) -> None:
        self.feature = feature
        super().__init__(f"{feature}: {message}")


class ChecksumMismatch(ExternalDependencyError):
    """Uploaded object checksum does not match the local segment."""

    reason = "ChecksumMismatch"

    def __init__(self, key: str, expected: str, actual: str | None) -> None:
        self.key = key
        self.expected = expected
        self.actual = actual
        super().__init__(
            "tieredStorage",
            f"checksum mismatch for {key}: expected {expected}, got {actual}",
        )


class UpgradeReadinessTimeout(OperatorError):
    """
    A replaced ordinal did not become ready within the bounded wait.

    Halts automatic progression until the spec changes or an override is set.

    Attributes:
        ordinal: The ordinal that failed readiness
        attempts: Replacement attempts made
    """

    reason = "UpgradeReadinessTimeout"
    retryable = False

    def __init__(self, ordinal: int, attempts: int) -> None:
        self.ordinal = ordinal
        self.attempts = attempts
        super().__init__(
            f"replica ordinal {ordinal} failed readiness after {attempts} attempt(s)"
        )


class LeadershipLost(OperatorError):
    """A mutating call was attempted after leadership was lost."""

    reason = "LeadershipLost"
    retryable = False
