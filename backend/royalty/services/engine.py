"""
Royalty Engine - Service Container

Built once at process start from EngineSettings and passed explicitly to
whatever needs it (FastAPI keeps it on app.state). Holds the stateless
collaborators (analyzer, calculator, channels, gateways) and builds the
session-bound services per request or per job.
"""
import logging
from typing import Any, Dict, Iterable, Optional
from uuid import uuid4

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import EngineSettings
from ..models.db_models import CreatorProfileDB, StreamEventDB, utcnow
from ..models.domain import StreamEventData
from .fraud import FraudAnalyzer
from .ledger import AuditLogService, LedgerService
from .payouts import (
    HttpPayoutGateway,
    PayoutGateway,
    PayoutOrchestrator,
    PayoutReconciler,
    RateLookup,
    StaticRateLookup,
    default_channels,
)
from .royalty import RoyaltyCalculator
from .scheduler import RoyaltyScheduler
from .treasury import TreasuryDistributor

logger = logging.getLogger(__name__)


class RoyaltyEngine:
    """Explicitly constructed service container."""

    def __init__(
        self,
        settings: EngineSettings,
        payment_gateway: Optional[PayoutGateway] = None,
        crypto_gateway: Optional[PayoutGateway] = None,
        rates: Optional[RateLookup] = None,
    ):
        self.settings = settings

        if payment_gateway is None and settings.payment_gateway_url:
            payment_gateway = HttpPayoutGateway(
                settings.payment_gateway_url,
                settings.payment_gateway_key,
                settings.payment_gateway_timeout,
            )
        if crypto_gateway is None and settings.crypto_gateway_url:
            crypto_gateway = HttpPayoutGateway(
                settings.crypto_gateway_url,
                settings.crypto_gateway_key,
                settings.payment_gateway_timeout,
            )
        self.payment_gateway = payment_gateway
        self.crypto_gateway = crypto_gateway
        self.rates = rates or StaticRateLookup()

        self.analyzer = FraudAnalyzer(settings.fraud_score_cutoff, settings.qualified_stream_seconds)
        self.calculator = RoyaltyCalculator()
        self.channels = default_channels(self.payment_gateway, self.crypto_gateway, self.rates)

        if self.payment_gateway is None:
            logger.warning("No payment gateway configured; connect and bank payouts are disabled")

    # =========================================================================
    # SESSION-BOUND SERVICES
    # =========================================================================

    def audit(self, db: Session) -> AuditLogService:
        return AuditLogService(db)

    def ledger(self, db: Session) -> LedgerService:
        return LedgerService(db, self.audit(db))

    def distributor(self, db: Session) -> TreasuryDistributor:
        audit = self.audit(db)
        return TreasuryDistributor(
            db,
            self.settings,
            ledger=LedgerService(db, audit),
            analyzer=self.analyzer,
            calculator=self.calculator,
            audit=audit,
        )

    def orchestrator(self, db: Session) -> PayoutOrchestrator:
        audit = self.audit(db)
        return PayoutOrchestrator(db, self.settings, self.channels, LedgerService(db, audit), audit)

    def scheduler(self, db: Session) -> RoyaltyScheduler:
        return RoyaltyScheduler(db, self.settings, self.distributor(db), self.orchestrator(db), self.audit(db))

    def reconciler(self, db: Session) -> PayoutReconciler:
        ledger = self.ledger(db)
        return PayoutReconciler(db, ledger, self.distributor(db), ledger.audit)

    # =========================================================================
    # STREAM EVENT INGESTION
    # =========================================================================

    def ingest_stream_events(self, db: Session, events: Iterable[StreamEventData]) -> Dict[str, Any]:
        """
        Store play/view events with `qualified` derived at ingestion.

        Events carrying an already-seen event_id are skipped. Qualified events
        also bump the creator's lifetime stream count used for promotion.
        Flushes only; the caller commits.
        """
        events = list(events)
        for event in events:
            self.analyzer.validate_event(event)

        stored, duplicates = 0, 0
        qualified_by_creator: Dict[str, int] = {}
        for event in events:
            qualified = self.analyzer.event_qualified(event)
            row = StreamEventDB(
                id=str(uuid4()),
                event_id=event.event_id,
                creator_id=event.creator_id,
                viewer_id=event.viewer_id,
                duration_seconds=event.duration_seconds,
                fraud_score=event.fraud_score,
                qualified=qualified,
                occurred_at=event.occurred_at,
                created_at=utcnow(),
            )
            try:
                with db.begin_nested():
                    db.add(row)
            except IntegrityError:
                duplicates += 1
                continue
            stored += 1
            if qualified:
                qualified_by_creator[event.creator_id] = qualified_by_creator.get(event.creator_id, 0) + 1

        for creator_id, count in qualified_by_creator.items():
            self._bump_stream_count(db, creator_id, count)

        return {"received": len(events), "stored": stored, "duplicates": duplicates,
                "qualified": sum(qualified_by_creator.values())}

    @staticmethod
    def _bump_stream_count(db: Session, creator_id: str, count: int) -> None:
        if db.get(CreatorProfileDB, creator_id) is None:
            now = utcnow()
            try:
                with db.begin_nested():
                    db.add(CreatorProfileDB(creator_id=creator_id, created_at=now, updated_at=now))
            except IntegrityError:
                # Created by a concurrent ingest
                logger.debug(f"Creator profile {creator_id} already exists")
        db.execute(
            update(CreatorProfileDB)
            .where(CreatorProfileDB.creator_id == creator_id)
            .values(total_streams=CreatorProfileDB.total_streams + count, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        cached = db.identity_map.get(db.identity_key(CreatorProfileDB, creator_id))
        if cached is not None:
            db.expire(cached)

    def close(self) -> None:
        for gateway in (self.payment_gateway, self.crypto_gateway):
            if isinstance(gateway, HttpPayoutGateway):
                gateway.close()


def build_engine_from_env() -> RoyaltyEngine:
    return RoyaltyEngine(EngineSettings.from_env())
