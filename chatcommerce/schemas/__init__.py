from chatcommerce.schemas.job import DispatchRequest, DispatchResponse, JobResponse
from chatcommerce.schemas.webhook import InboundEvent, WebhookAck, WebhookPayload

__all__ = ["DispatchRequest", "DispatchResponse", "JobResponse", "InboundEvent", "WebhookAck", "WebhookPayload"]
