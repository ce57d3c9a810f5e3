"""
Dispatcher - selects and claims a courier for a pending delivery.

Flow of ``assign``:
1. Load the delivery; it must still be pending.
2. Discover candidates near the restaurant (bounded by a timeout).
3. Score and rank them (distance + rating + recency).
4. Claim the best one with a compare-and-set on courier availability.
   A lost claim moves on to the next ranked candidate; when the ranked list
   runs out, discovery is re-run without the couriers already tried.
5. Bind the claimed courier through the state machine, which re-checks the
   delivery status in the same transaction. If the delivery changed (e.g.
   was cancelled meanwhile) the claim is rolled back with it.

Finding nobody is a normal outcome (NO_COURIER_AVAILABLE), not an error.
"""
import asyncio
import enum
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from lastmile.core.config import settings
from lastmile.core.exceptions import (
    AlreadyAssignedError,
    ClaimConflictError,
    DeliveryNotFoundError,
)
from lastmile.core.logging import get_logger, log_async_operation
from lastmile.core.timeutil import utcnow
from lastmile.db.models.delivery import Delivery, DeliveryStatus
from lastmile.domain.geo import GeoPoint
from lastmile.domain.services.courier_registry import Candidate, CourierRegistry
from lastmile.domain.services.state_machine import DeliveryStateMachine
from lastmile.domain.services.tracking_hub import TrackingHub

logger = get_logger(__name__)


@dataclass(frozen=True)
class ScoringPolicy:
    """Weights of the courier score; defaults come from settings."""

    distance_max: float = 50.0
    distance_per_km: float = 5.0
    rating_weight: float = 6.0
    recency_max: float = 20.0

    @classmethod
    def from_settings(cls) -> "ScoringPolicy":
        return cls(
            distance_max=settings.SCORE_DISTANCE_MAX,
            distance_per_km=settings.SCORE_DISTANCE_PER_KM,
            rating_weight=settings.SCORE_RATING_WEIGHT,
            recency_max=settings.SCORE_RECENCY_MAX,
        )


@dataclass(frozen=True)
class ScoredCandidate:
    candidate: Candidate
    distance_score: float
    rating_score: float
    recency_score: float

    @property
    def total(self) -> float:
        return self.distance_score + self.rating_score + self.recency_score

    @property
    def courier_id(self) -> int:
        return self.candidate.courier.id


def score_candidate(
    candidate: Candidate,
    policy: ScoringPolicy,
    now: datetime,
) -> ScoredCandidate:
    """distance = max(0, 50 - km*5), rating = rating*6, recency = max(0, 20 - minutes since update)"""
    courier = candidate.courier
    distance_score = max(0.0, policy.distance_max - candidate.distance_km * policy.distance_per_km)
    rating_score = (courier.rating or 0.0) * policy.rating_weight

    if courier.last_location_update_time is None:
        recency_score = 0.0
    else:
        minutes = max(0.0, (now - courier.last_location_update_time).total_seconds() / 60)
        recency_score = max(0.0, policy.recency_max - minutes)

    return ScoredCandidate(
        candidate=candidate,
        distance_score=distance_score,
        rating_score=rating_score,
        recency_score=recency_score,
    )


def rank_candidates(
    candidates: Sequence[Candidate],
    policy: ScoringPolicy,
    now: datetime,
) -> List[ScoredCandidate]:
    """
    Highest score first. Ties go to the most recent location update, then to
    the registry order of ``candidates`` (stable sort).
    """
    scored = [score_candidate(c, policy, now) for c in candidates]
    # both sorts are stable, so equal keys keep the registry order
    scored.sort(
        key=lambda s: s.candidate.courier.last_location_update_time or datetime.min,
        reverse=True,
    )
    scored.sort(key=lambda s: s.total, reverse=True)
    return scored


class DispatchOutcome(str, enum.Enum):
    ASSIGNED = "assigned"
    NO_COURIER_AVAILABLE = "no_courier_available"


@dataclass
class DispatchResult:
    outcome: DispatchOutcome
    delivery_id: int
    courier_id: Optional[int] = None
    score: Optional[float] = None
    attempts: int = 0
    reason: Optional[str] = None

    @property
    def assigned(self) -> bool:
        return self.outcome == DispatchOutcome.ASSIGNED


class Dispatcher:
    """Courier selection and atomic claim"""

    def __init__(
        self,
        db: AsyncSession,
        policy: Optional[ScoringPolicy] = None,
        hub: Optional[TrackingHub] = None,
    ):
        self.db = db
        self.policy = policy or ScoringPolicy.from_settings()
        self.registry = CourierRegistry(db)
        self.state_machine = DeliveryStateMachine(db, hub=hub)

    async def _get_delivery(self, delivery_id: int) -> Delivery:
        result = await self.db.execute(
            select(Delivery)
            .where(Delivery.id == delivery_id)
            .execution_options(populate_existing=True)
        )
        delivery = result.scalar_one_or_none()
        if delivery is None:
            raise DeliveryNotFoundError(delivery_id)
        return delivery

    @log_async_operation("dispatch_assign", expected=(AlreadyAssignedError, DeliveryNotFoundError))
    async def assign(
        self,
        delivery_id: int,
        *,
        timeout: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> DispatchResult:
        """
        Pick and claim the best courier for a pending delivery.

        Raises:
            DeliveryNotFoundError: unknown delivery
            AlreadyAssignedError: delivery is not pending (also when it was
                cancelled while the claim was in flight)
        """
        now = now or utcnow()
        timeout = settings.DISPATCH_CANDIDATE_TIMEOUT_SECONDS if timeout is None else timeout
        max_attempts = settings.DISPATCH_MAX_CLAIM_ATTEMPTS

        delivery = await self._get_delivery(delivery_id)
        if delivery.status != DeliveryStatus.PENDING:
            raise AlreadyAssignedError(delivery_id, delivery.status.value, delivery.delivery_personnel_id)

        origin = GeoPoint(delivery.restaurant_latitude, delivery.restaurant_longitude)
        tried: set = set()
        attempts = 0
        reason = "no_candidates"

        while attempts < max_attempts:
            try:
                candidates = await self.registry.find_candidates(
                    origin,
                    settings.DISPATCH_RADIUS_KM,
                    exclude=tried,
                    timeout=timeout,
                )
            except asyncio.TimeoutError:
                logger.warning(
                    "Courier discovery timed out",
                    extra_data={"delivery_id": delivery_id, "timeout": timeout},
                )
                await self.db.rollback()
                return self._no_courier(delivery_id, attempts, "discovery_timeout")

            if not candidates:
                break

            for scored in rank_candidates(candidates, self.policy, now):
                if attempts >= max_attempts:
                    break
                attempts += 1
                tried.add(scored.courier_id)

                if not await self.registry.claim(scored.courier_id):
                    reason = "claims_exhausted"
                    logger.info(
                        "Claim conflict, trying next candidate",
                        extra_data={
                            "delivery_id": delivery_id,
                            "courier_id": scored.courier_id,
                            "attempt": attempts,
                        },
                    )
                    continue

                # commits the claim together with the assignment, or rolls both back
                await self.state_machine.transition_delivery(
                    delivery_id,
                    DeliveryStatus.ASSIGNED,
                    courier_id=scored.courier_id,
                    now=now,
                )
                logger.info(
                    "Courier assigned",
                    extra_data={
                        "delivery_id": delivery_id,
                        "courier_id": scored.courier_id,
                        "score": round(scored.total, 2),
                        "distance_km": round(scored.candidate.distance_km, 3),
                        "attempts": attempts,
                    },
                )
                return DispatchResult(
                    outcome=DispatchOutcome.ASSIGNED,
                    delivery_id=delivery_id,
                    courier_id=scored.courier_id,
                    score=scored.total,
                    attempts=attempts,
                )

        # release the read transaction before reporting
        await self.db.rollback()
        return self._no_courier(delivery_id, attempts, reason)

    def _no_courier(self, delivery_id: int, attempts: int, reason: str) -> DispatchResult:
        logger.info(
            "No courier available",
            extra_data={"delivery_id": delivery_id, "attempts": attempts, "reason": reason},
        )
        return DispatchResult(
            outcome=DispatchOutcome.NO_COURIER_AVAILABLE,
            delivery_id=delivery_id,
            attempts=attempts,
            reason=reason,
        )

    async def accept(
        self,
        delivery_id: int,
        courier_id: int,
        now: Optional[datetime] = None,
    ) -> Delivery:
        """
        Courier self-assignment with the same atomic claim as ``assign``.

        Raises:
            AlreadyAssignedError: delivery is no longer pending
            ClaimConflictError: courier is busy or inactive
        """
        delivery = await self._get_delivery(delivery_id)
        if delivery.status != DeliveryStatus.PENDING:
            raise AlreadyAssignedError(delivery_id, delivery.status.value, delivery.delivery_personnel_id)

        await self.registry.get_courier(courier_id)
        if not await self.registry.claim(courier_id):
            await self.db.rollback()
            raise ClaimConflictError(delivery_id, courier_id)

        return await self.state_machine.transition_delivery(
            delivery_id,
            DeliveryStatus.ASSIGNED,
            courier_id=courier_id,
            now=now,
        )
