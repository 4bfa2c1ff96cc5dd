"""Service provider helpers wiring the order components with their ports.

``build_container`` is called once at startup. It selects the storage
backend, then chooses the payment processor: the HTTP client when
``use_http_adapters`` is enabled and a processor key is configured,
otherwise the in-process stub suitable for tests and local development.
``Container.aclose`` is the matching teardown hook.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from .adapters import ProcessorStub
from .archive import ArchiveService
from .domain import Notifier, PaymentProcessorPort
from .http_adapters import CircuitBreaker, StripeCheckoutClient
from .notifications import LogNotifier
from .persistence import OrderStore, open_store
from .reconciliation import CheckoutReconciler
from .repository import OrderRepository
from .settings import Settings

logger = logging.getLogger(__name__)


@dataclass
class Container:
    """Process-wide collaborators, built in dependency order."""

    settings: Settings
    store: OrderStore
    processor: PaymentProcessorPort
    notifier: Notifier
    repository: OrderRepository = field(init=False)
    reconciler: CheckoutReconciler = field(init=False)
    archive: ArchiveService = field(init=False)

    def __post_init__(self):
        self.repository = OrderRepository(self.store)
        self.reconciler = CheckoutReconciler(self.store, self.processor, self.notifier)
        self.archive = ArchiveService(self.store)

    async def aclose(self) -> None:
        await self.store.close()


def build_processor(settings: Settings) -> PaymentProcessorPort:
    if settings.use_http_adapters and settings.stripe_secret_key:
        breaker = CircuitBreaker(
            "payments",
            settings.http_circuit_fail_threshold,
            settings.http_circuit_reset_timeout,
        )
        return StripeCheckoutClient(
            secret_key=settings.stripe_secret_key,
            api_base=settings.stripe_api_base,
            breaker=breaker,
            timeout=settings.http_timeout_secs,
            max_retries=settings.http_retry_max,
            backoff_base=settings.http_retry_backoff_base,
            max_sleep=settings.http_retry_max_sleep,
            currency=settings.currency,
            public_base_url=settings.base_url,
        )
    logger.warning("payment processor not configured, using in-process stub")
    return ProcessorStub(base_url=settings.base_url)


async def build_container(
    settings: Settings,
    processor: Optional[PaymentProcessorPort] = None,
    notifier: Optional[Notifier] = None,
) -> Container:
    """Return the container for this process.

    Args:
        settings: Loaded configuration.
        processor: Override for the payment processor (tests).
        notifier: Override for the notification channel (tests).

    Raises:
        StorageUnavailable: When the configured backend cannot be opened.
    """
    store = await open_store(settings)
    return Container(
        settings=settings,
        store=store,
        processor=processor or build_processor(settings),
        notifier=notifier or LogNotifier(),
    )
