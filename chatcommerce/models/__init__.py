from chatcommerce.models.conversation import Conversation
from chatcommerce.models.event_claim import EventClaim
from chatcommerce.models.job import Job
from chatcommerce.models.recurring_job import RecurringJob
from chatcommerce.models.sent_message_log import SentMessageLog

__all__ = [
    "Conversation",
    "EventClaim",
    "Job",
    "RecurringJob",
    "SentMessageLog",
]
