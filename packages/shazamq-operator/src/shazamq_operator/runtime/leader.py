"""
Lease-based leader election.

Only one operator instance may reconcile a watch scope at a time. The
instances share a coordination Lease; the holder renews it every
renew_interval_seconds, and any instance may take it over once the holder's
renewTime is older than leaseDurationSeconds.

Leadership is local knowledge with a deadline: after each successful renew
this instance considers itself leader until renewTime + lease duration, and
ensure_leader() starts raising LeadershipLost the moment that deadline
passes, even if the renew loop is stuck on an unreachable API. Mutating
engine calls are guarded by ensure_leader(), so a deposed instance stops
writing promptly.
"""

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any

from shazamq_operator.config import OperatorSettings
from shazamq_operator.db.events import OPERATOR_KEY, EventRecorder
from shazamq_protocols.errors import ConflictError, LeadershipLost, OperatorError
from shazamq_protocols.platform import PlatformClientProtocol
from shazamq_protocols.types import ObjectKind

logger = logging.getLogger(__name__)

LEASE_API_VERSION = "coordination.k8s.io/v1"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_micro_time(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def parse_micro_time(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class LeaderElector:
    """
    Acquires and renews the operator's Lease.

    Example:
        elector = LeaderElector(platform, settings, recorder)
        task = asyncio.create_task(elector.run())
        await elector.acquired.wait()
        api = GuardedPlatform(platform, settings, guard=elector.ensure_leader)
    """

    def __init__(
        self,
        platform: PlatformClientProtocol,
        settings: OperatorSettings,
        recorder: EventRecorder,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.platform = platform
        self.recorder = recorder
        self.clock = clock
        self.identity = settings.identity
        self.lease_name = settings.lease_name
        self.lease_namespace = settings.lease_namespace
        self.duration = timedelta(seconds=settings.lease_duration_seconds)
        self.renew_interval = settings.renew_interval_seconds

        self.acquired = asyncio.Event()
        self.lost = asyncio.Event()
        self.lost.set()
        self._leader = False
        self._valid_until: datetime | None = None

    def _lease_valid(self) -> bool:
        return self._valid_until is not None and self.clock() < self._valid_until

    @property
    def is_leader(self) -> bool:
        return self._leader and self._lease_valid()

    def ensure_leader(self) -> None:
        """Raise LeadershipLost unless this instance currently holds the lease."""
        if not self.is_leader:
            raise LeadershipLost(
                f"{self.identity} does not hold lease "
                f"{self.lease_namespace}/{self.lease_name}"
            )

    def _lease_body(self, now: datetime, transitions: int) -> dict[str, Any]:
        stamp = format_micro_time(now)
        return {
            "apiVersion": LEASE_API_VERSION,
            "kind": "Lease",
            "metadata": {"name": self.lease_name, "namespace": self.lease_namespace},
            "spec": {
                "holderIdentity": self.identity,
                "leaseDurationSeconds": int(self.duration.total_seconds()),
                "acquireTime": stamp,
                "renewTime": stamp,
                "leaseTransitions": transitions,
            },
        }

    async def try_acquire_or_renew(self) -> bool:
        """
        One election round.

        Returns:
            True if this instance holds the lease afterwards

        Raises:
            OperatorError: API failures other than conflicts
        """
        now = self.clock()
        lease = await self.platform.get(
            ObjectKind.LEASE, self.lease_namespace, self.lease_name
        )
        try:
            if lease is None:
                await self.platform.create(
                    ObjectKind.LEASE, self.lease_namespace, self._lease_body(now, 0)
                )
                self._valid_until = now + self.duration
                return True

            spec = lease.get("spec") or {}
            resource_version = lease.get("metadata", {}).get("resourceVersion")
            holder = spec.get("holderIdentity")

            if holder == self.identity:
                await self.platform.patch(
                    ObjectKind.LEASE,
                    self.lease_namespace,
                    self.lease_name,
                    {
                        "metadata": {"resourceVersion": resource_version},
                        "spec": {"renewTime": format_micro_time(now)},
                    },
                )
                self._valid_until = now + self.duration
                return True

            renewed = parse_micro_time(spec.get("renewTime"))
            duration = timedelta(
                seconds=spec.get("leaseDurationSeconds")
                or self.duration.total_seconds()
            )
            if holder and renewed is not None and now < renewed + duration:
                return False

            body = self._lease_body(now, int(spec.get("leaseTransitions") or 0) + 1)
            await self.platform.patch(
                ObjectKind.LEASE,
                self.lease_namespace,
                self.lease_name,
                {
                    "metadata": {"resourceVersion": resource_version},
                    "spec": body["spec"],
                },
            )
            logger.info("Took over lease from %s", holder or "nobody")
            self._valid_until = now + self.duration
            return True
        except ConflictError:
            logger.debug("Lease update conflicted; another instance won this round")
            return False

    async def release(self) -> None:
        """Give up the lease so another instance can take over at once."""
        if not self._leader:
            return
        lease = await self.platform.get(
            ObjectKind.LEASE, self.lease_namespace, self.lease_name
        )
        if lease is not None and (lease.get("spec") or {}).get("holderIdentity") == self.identity:
            try:
                await self.platform.patch(
                    ObjectKind.LEASE,
                    self.lease_namespace,
                    self.lease_name,
                    {
                        "metadata": {
                            "resourceVersion": lease["metadata"].get("resourceVersion")
                        },
                        "spec": {"holderIdentity": None},
                    },
                )
            except ConflictError:
                logger.debug("Lease changed before release")
        await self._set_leader(False)

    async def _set_leader(self, leader: bool) -> None:
        if leader == self._leader:
            return
        self._leader = leader
        if leader:
            self.lost.clear()
            self.acquired.set()
            await self.recorder.emit(
                OPERATOR_KEY,
                "LeadershipAcquired",
                f"{self.identity} acquired lease {self.lease_namespace}/{self.lease_name}",
                identity=self.identity,
            )
        else:
            self._valid_until = None
            self.acquired.clear()
            self.lost.set()
            await self.recorder.emit(
                OPERATOR_KEY,
                "LeadershipLost",
                f"{self.identity} lost lease {self.lease_namespace}/{self.lease_name}",
                warning=True,
                identity=self.identity,
            )

    async def step(self) -> bool:
        """Run one round and update leadership state; returns is_leader."""
        try:
            held = await self.try_acquire_or_renew()
        except OperatorError as e:
            logger.warning("Lease renewal failed: %s", e)
            held = self.is_leader
        await self._set_leader(held and self._lease_valid())
        return self.is_leader

    async def run(self) -> None:
        """Acquire and renew until cancelled."""
        while True:
            await self.step()
            await asyncio.sleep(self.renew_interval)
