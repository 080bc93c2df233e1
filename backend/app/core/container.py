import logging
from typing import Optional

from app.config.settlement_config import SETTLEMENT_MODE
from app.core.config import Settings, settings as default_settings
from app.core.database import MongoConnection
from app.repositories.cancellation_store import (
    CancellationStore,
    InMemoryCancellationStore,
    MongoCancellationStore,
)
from app.repositories.refund_store import InMemoryRefundStore, MongoRefundStore, RefundStore
from app.repositories.ticket_directory import InMemoryTicketDirectory, MongoTicketDirectory, TicketDirectory
from app.repositories.wallet_store import InMemoryWalletStore, MongoWalletStore, WalletStore
from app.services.analytics import AnalyticsTracker
from app.services.cancellation_service import CancellationService
from app.services.event_bus import EventBus
from app.services.notification_service import NotificationService
from app.services.refund_service import RefundService
from app.services.settlement.base import SettlementGateway
from app.services.settlement.provider import ProviderSettlementGateway
from app.services.settlement.simulation import SimulationSettlementGateway

logger = logging.getLogger(__name__)


class ServiceContainer:
    """
    Builds and holds the stores and services for one application instance.

    Tests pass their own stores or gateway; anything left out is built from
    settings (``STORAGE_BACKEND`` and ``SETTLEMENT_MODE``).
    """

    def __init__(
        self,
        settings: Settings = default_settings,
        *,
        refund_store: Optional[RefundStore] = None,
        cancellation_store: Optional[CancellationStore] = None,
        tickets: Optional[TicketDirectory] = None,
        wallet_store: Optional[WalletStore] = None,
        gateway: Optional[SettlementGateway] = None
    ):
        self.settings = settings
        self.mongo: Optional[MongoConnection] = None
        self._refund_store = refund_store
        self._cancellation_store = cancellation_store
        self._tickets = tickets
        self._wallet_store = wallet_store
        self._gateway = gateway
        self._started = False

    async def start(self) -> None:
        """Open storage and build the services."""
        if self._started:
            return

        if self.settings.STORAGE_BACKEND == "mongo":
            self.mongo = MongoConnection(self.settings)
            db = await self.mongo.connect()
            refund_store = MongoRefundStore(db)
            cancellation_store = MongoCancellationStore(db)
            wallet_store = MongoWalletStore(db)
            for store in (refund_store, cancellation_store, wallet_store):
                await store.ensure_indexes()
            self._refund_store = self._refund_store or refund_store
            self._cancellation_store = self._cancellation_store or cancellation_store
            self._wallet_store = self._wallet_store or wallet_store
            self._tickets = self._tickets or MongoTicketDirectory(db)
        else:
            self._refund_store = self._refund_store or InMemoryRefundStore()
            self._cancellation_store = self._cancellation_store or InMemoryCancellationStore()
            self._wallet_store = self._wallet_store or InMemoryWalletStore()
            self._tickets = self._tickets or InMemoryTicketDirectory()

        if self._gateway is None:
            if SETTLEMENT_MODE == "SIMULATION":
                self._gateway = SimulationSettlementGateway()
            else:
                self._gateway = ProviderSettlementGateway(self._wallet_store)

        self.event_bus = EventBus(
            maxsize=self.settings.EVENT_BUS_QUEUE_SIZE,
            overflow=self.settings.EVENT_BUS_OVERFLOW
        )
        self.analytics = AnalyticsTracker()
        self.notification_service = NotificationService()
        self.refund_service = RefundService(
            self._refund_store,
            self._tickets,
            self._gateway,
            self.event_bus,
            max_attempts=self.settings.REFUND_MAX_ATTEMPTS
        )
        self.cancellation_service = CancellationService(
            self._cancellation_store,
            self._tickets,
            self.refund_service,
            self.notification_service,
            self.analytics,
            self.event_bus,
            confirmation_phrase=self.settings.CANCELLATION_CONFIRMATION_PHRASE,
            worker_pool_size=self.settings.CANCELLATION_WORKER_POOL_SIZE,
            processing_fee_estimate=self.settings.CANCELLATION_PROCESSING_FEE_ESTIMATE,
            deducted_fee_percentage=self.settings.CANCELLATION_DEDUCTED_FEE_PERCENTAGE,
            deadline_days=self.settings.COMPENSATION_DEADLINE_DAYS
        )
        self._started = True
        logger.info(
            f"Services ready (storage: {self.settings.STORAGE_BACKEND}, "
            f"settlement: {type(self._gateway).__name__})"
        )

    async def recover(self) -> None:
        """Finish work interrupted by a previous shutdown."""
        refunds = await self.refund_service.recover_in_flight_refunds()
        cancellations = await self.cancellation_service.resume_interrupted_cancellations()
        if refunds or cancellations:
            logger.info(f"Recovered {len(refunds)} refunds and {len(cancellations)} cancellations")

    async def stop(self) -> None:
        if self._started:
            await self.refund_service.wait_for_pending_processing()
        if self.mongo:
            await self.mongo.close()
        self._started = False

    @property
    def tickets(self) -> TicketDirectory:
        return self._tickets

    @property
    def gateway(self) -> SettlementGateway:
        return self._gateway

    @property
    def wallet_store(self) -> WalletStore:
        return self._wallet_store
