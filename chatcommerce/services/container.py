from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy.orm import Session

from chatcommerce.config import Settings
from chatcommerce.logging_config import get_logger
from chatcommerce.services import alert_service
from chatcommerce.services.action_registry import ActionRegistry, FrequencyCapPolicy
from chatcommerce.services.actions import build_registry
from chatcommerce.services.idempotency_service import IdempotencyGate
from chatcommerce.services.intent_service import IntentClassifier
from chatcommerce.services.job_hooks import BuiltinHooks
from chatcommerce.services.job_queue import JobQueue
from chatcommerce.services.llm import LLMProvider, OpenAIProvider
from chatcommerce.services.messaging_client import MessagingClient, WhatsAppCloudClient
from chatcommerce.services.pipeline import ConversationPipeline
from chatcommerce.services.rate_limiter import CallerContext, RateLimiter
from chatcommerce.services.store_gateway import CartGateway, CatalogGateway, OrderGateway, StoreApiClient

logger = get_logger("container")


@dataclass
class ServiceContainer:
    settings: Settings
    gate: IdempotencyGate
    classifier: IntentClassifier
    registry: ActionRegistry
    queue: JobQueue
    hooks: BuiltinHooks
    pipeline: ConversationPipeline
    rate_limiter: RateLimiter


def build_container(
    settings: Settings,
    session_factory: Callable[[], Session],
    *,
    messaging: Optional[MessagingClient] = None,
    catalog: Optional[CatalogGateway] = None,
    carts: Optional[CartGateway] = None,
    orders: Optional[OrderGateway] = None,
    llm: Optional[LLMProvider] = None,
    alert: Optional[Callable[[str, dict], object]] = None,
) -> ServiceContainer:
    """Wire every component. Collaborators not passed in are built from settings."""
    if catalog is None or carts is None or orders is None:
        store = StoreApiClient(settings.store_api_url, settings.store_api_token, settings.store_timeout_seconds)
        catalog = catalog or store
        carts = carts or store
        orders = orders or store

    if messaging is None:
        if not settings.whatsapp_access_token or not settings.whatsapp_phone_number_id:
            logger.warning("WhatsApp credentials missing, outbound sends will fail")
        messaging = WhatsAppCloudClient(
            settings.whatsapp_api_url,
            settings.whatsapp_phone_number_id,
            settings.whatsapp_access_token,
            settings.send_timeout_seconds,
        )

    if llm is None and settings.openai_api_key:
        llm = OpenAIProvider(settings.openai_api_key, default_model=settings.intent_model)

    rate_limiter = RateLimiter(
        {
            CallerContext.ADMIN: settings.rate_limit_admin_per_minute,
            CallerContext.AUTOMATED: settings.rate_limit_automated_per_minute,
        }
    )
    queue = JobQueue(
        session_factory,
        rate_limiter=rate_limiter,
        alert=alert or alert_service.alert_error,
    )
    registry = build_registry(
        catalog,
        carts,
        orders,
        FrequencyCapPolicy(session_factory),
        notify=alert_service.send_alert,
    )
    classifier = IntentClassifier(
        llm,
        model=settings.intent_model,
        timeout_seconds=settings.intent_timeout_seconds,
        threshold=settings.intent_confidence_threshold,
    )
    hooks = BuiltinHooks(
        queue,
        session_factory,
        messaging,
        catalog,
        registry,
        conversation_timeout_seconds=settings.conversation_timeout_seconds,
        stale_cart_after_minutes=settings.stale_cart_after_minutes,
    )
    hooks.register()
    pipeline = ConversationPipeline(
        session_factory,
        classifier,
        registry,
        queue,
        conversation_timeout_seconds=settings.conversation_timeout_seconds,
    )
    return ServiceContainer(
        settings=settings,
        gate=IdempotencyGate(session_factory),
        classifier=classifier,
        registry=registry,
        queue=queue,
        hooks=hooks,
        pipeline=pipeline,
        rate_limiter=rate_limiter,
    )
