"""Built-in job hooks and the recurring triggers that drive them."""

from datetime import timedelta
from typing import Any, Callable

from sqlalchemy.orm import Session

from chatcommerce.logging_config import get_logger
from chatcommerce.models import Conversation
from chatcommerce.services import conversation_service
from chatcommerce.services.action_registry import ActionName, ActionRegistry
from chatcommerce.services.job_queue import JobQueue
from chatcommerce.services.messaging_client import MessagingClient
from chatcommerce.services.result import Result
from chatcommerce.services.store_gateway import CatalogGateway

logger = get_logger("job_hooks")

SEND_MESSAGE = "send_message"
SYNC_STOCK = "sync_stock"
SWEEP_STALE_CARTS = "sweep_stale_carts"
SEND_CART_REMINDER = "send_cart_reminder"
EXPIRE_CONVERSATIONS = "expire_conversations"

STOCK_BATCH_SIZE = 50
SWEEP_LIMIT = 500
# Abandoned carts older than this are left alone.
REMINDER_MAX_IDLE = timedelta(days=7)


class BuiltinHooks:
    def __init__(
        self,
        queue: JobQueue,
        session_factory: Callable[[], Session],
        messaging: MessagingClient,
        catalog: CatalogGateway,
        registry: ActionRegistry,
        *,
        conversation_timeout_seconds: int = 1800,
        stale_cart_after_minutes: int = 120,
    ):
        self.queue = queue
        self.session_factory = session_factory
        self.messaging = messaging
        self.catalog = catalog
        self.registry = registry
        self.conversation_timeout_seconds = conversation_timeout_seconds
        self.stale_cart_after = timedelta(minutes=stale_cart_after_minutes)

    def register(self) -> None:
        self.queue.register_handler(SEND_MESSAGE, self.send_message)
        self.queue.register_handler(SYNC_STOCK, self.sync_stock)
        self.queue.register_handler(SWEEP_STALE_CARTS, self.sweep_stale_carts)
        self.queue.register_handler(SEND_CART_REMINDER, self.send_cart_reminder)
        self.queue.register_handler(EXPIRE_CONVERSATIONS, self.expire_conversations)

    def register_recurring(self) -> None:
        self.queue.schedule_recurring(EXPIRE_CONVERSATIONS, EXPIRE_CONVERSATIONS, {}, 300)
        self.queue.schedule_recurring(SWEEP_STALE_CARTS, SWEEP_STALE_CARTS, {}, 3600)

    # --- hooks ---

    def send_message(self, args: dict[str, Any]) -> dict[str, Any]:
        customer_id = args["customer_id"]
        message_id = self.messaging.send(customer_id, args["message"])
        return {"customer_id": customer_id, "message_id": message_id, "event_id": args.get("event_id")}

    def sync_stock(self, args: dict[str, Any]) -> Result[dict]:
        """Re-check stock for a batch of products, fanning out large requests first."""
        if "batch" not in args:
            product_ids = [int(product_id) for product_id in args.get("product_ids") or []]
            if not product_ids:
                return Result.failure("sync_stock needs product_ids", code="invalid_args")
            job_ids = self.queue.dispatch_batch(SYNC_STOCK, product_ids, args.get("batch_size") or STOCK_BATCH_SIZE)
            return Result.success({"batches": len(job_ids)})

        product_ids = [int(product_id) for product_id in args["batch"]]
        levels = self.catalog.get_stock_levels(product_ids)
        out_of_stock = sorted(product_id for product_id, level in levels.items() if level is not None and level <= 0)
        logger.info(
            "Stock synced",
            extra={
                "context": {
                    "batch_num": args.get("batch_num"),
                    "checked": len(product_ids),
                    "out_of_stock": len(out_of_stock),
                }
            },
        )
        return Result.success({"checked": len(product_ids), "out_of_stock": out_of_stock})

    def sweep_stale_carts(self, args: dict[str, Any]) -> dict[str, Any]:
        now = self.queue.now()
        idle_since = now - self.stale_cart_after
        db = self.session_factory()
        try:
            candidates = (
                db.query(Conversation)
                .filter(
                    Conversation.last_activity_at < idle_since,
                    Conversation.last_activity_at > now - REMINDER_MAX_IDLE,
                )
                .order_by(Conversation.last_activity_at)
                .limit(SWEEP_LIMIT)
                .all()
            )
            dispatched = 0
            for conversation in candidates:
                if not (conversation.context or {}).get("cart_updated_at"):
                    continue
                self.queue.enqueue(
                    db,
                    SEND_CART_REMINDER,
                    {"customer_id": conversation.customer_id, "version": conversation.version},
                )
                dispatched += 1
            db.commit()
        finally:
            db.close()
        return {"candidates": len(candidates), "dispatched": dispatched}

    def send_cart_reminder(self, args: dict[str, Any]) -> dict[str, Any]:
        customer_id = args["customer_id"]
        db = self.session_factory()
        try:
            conversation = conversation_service.get_conversation(db, customer_id)
            if conversation is None or conversation.version != args.get("version"):
                # The customer moved on since the sweep.
                logger.info("Cart reminder skipped, conversation changed", extra={"context": {"customer_id": customer_id}})
                return {"sent": 0, "skipped": "stale"}

            result = self.registry.execute(
                ActionName.SEND_CART_REMINDER, customer_id, {}, dict(conversation.context or {})
            )
            if not result.success:
                raise RuntimeError(result.error or "cart reminder failed")
            for message in result.messages:
                self.queue.enqueue(db, SEND_MESSAGE, {"customer_id": customer_id, "message": message})
            db.commit()
        finally:
            db.close()
        return {"sent": len(result.messages)}

    def expire_conversations(self, args: dict[str, Any]) -> dict[str, Any]:
        db = self.session_factory()
        try:
            reset = conversation_service.expire_conversations(
                db, self.conversation_timeout_seconds, now=self.queue.now()
            )
        finally:
            db.close()
        return {"reset": reset}
