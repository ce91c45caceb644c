from chatcommerce.services.conversation_service import (
    ConcurrentUpdateError,
    get_or_create_conversation,
    normalize_customer_id,
    save_conversation,
)
from chatcommerce.services.state_machine import (
    ActionInvocation,
    ConversationState,
    transition,
)
