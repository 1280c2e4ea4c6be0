from datetime import datetime
from typing import Callable, Optional

from .config import RewardsSettings
from .errors import (
    AlreadyReferredError,
    DuplicateKeyError,
    ReferralNotFoundError,
    RequestValidationError,
    SelfReferralError,
    UnknownReferrerError,
)
from .events import EventEmitter
from .logging_config import get_logger
from .models import ReferralEarned, ReferralEdge, utcnow
from .storage import Storage, account_key, referral_key

logger = get_logger(__name__)


class ReferralGraph:
    """Append-only referrer -> referred edges, at most one per referred identity."""

    def __init__(
        self,
        storage: Storage,
        events: EventEmitter,
        settings: RewardsSettings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.storage = storage
        self.events = events
        self.settings = settings
        self.clock = clock

    def claim_referral(self, referred_id: str, referrer_id: str, fingerprint: Optional[str] = None) -> ReferralEdge:
        """Record that ``referrer_id`` brought in ``referred_id`` and pay the referral bonus.

        A claim whose device fingerprint already belongs to another account is
        still recorded, so the identity cannot be claimed again, but the edge
        is marked invalid and nothing is credited.
        """
        if not referred_id or not referrer_id:
            raise RequestValidationError("Missing referrer or referred id")
        if referred_id == referrer_id:
            raise SelfReferralError("An account cannot refer itself")

        bonus = self.settings.referral_bonus
        try:
            with self.storage.transaction(referral_key(referred_id), account_key(referrer_id)) as tx:
                referrer = tx.get_account(referrer_id)
                if referrer is None:
                    logger.warning("referral_unknown_referrer", referrer_id=referrer_id, referred_id=referred_id)
                    raise UnknownReferrerError(f"Referrer {referrer_id} not found")
                if tx.get_edge(referred_id) is not None:
                    raise AlreadyReferredError(f"{referred_id} has already been referred")

                shared_device = bool(
                    fingerprint
                    and self.settings.flag_shared_device_referrals
                    and tx.device_seen_elsewhere(fingerprint, referred_id)
                )
                edge = ReferralEdge(
                    referrer_id=referrer_id,
                    referred_id=referred_id,
                    device_id=fingerprint,
                    valid=not shared_device,
                    created_at=self.clock(),
                )
                tx.add_edge(edge)

                if edge.valid:
                    referrer.balance += bonus
                    referrer.total_referrals += 1
                    tx.save_account(referrer)
        except DuplicateKeyError as exc:
            raise AlreadyReferredError(f"{referred_id} has already been referred") from exc

        if not edge.valid:
            logger.warning(
                "referral_flagged_shared_device",
                referrer_id=referrer_id,
                referred_id=referred_id,
                device_id=fingerprint,
            )
            return edge

        logger.info("referral_claimed", referrer_id=referrer_id, referred_id=referred_id, bonus=bonus)
        self.events.emit(ReferralEarned(referrer_id=referrer_id, referred_id=referred_id, amount=bonus))
        return edge

    def invalidate_referral(self, referred_id: str) -> ReferralEdge:
        """Fraud review: mark an edge invalid and take it out of the referrer's count.

        The bonus already paid stays on the referrer's balance.
        """
        with self.storage.transaction() as tx:
            edge = tx.get_edge(referred_id)
        if edge is None:
            raise ReferralNotFoundError(f"No referral recorded for {referred_id}")

        with self.storage.transaction(referral_key(referred_id), account_key(edge.referrer_id)) as tx:
            edge = tx.get_edge(referred_id)
            if not edge.valid:
                return edge
            edge.valid = False
            tx.save_edge(edge)
            referrer = tx.get_account(edge.referrer_id)
            if referrer is not None:
                referrer.total_referrals = max(referrer.total_referrals - 1, 0)
                tx.save_account(referrer)

        logger.info("referral_invalidated", referrer_id=edge.referrer_id, referred_id=referred_id)
        return edge

    def list_referrals(self, referrer_id: str) -> list[ReferralEdge]:
        return self.storage.list_edges(referrer_id)
