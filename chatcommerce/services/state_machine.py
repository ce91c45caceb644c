"""Conversation finite-state machine.

Pure decision logic: given the current state and a classified intent it
returns the next state and the actions to invoke. It never performs I/O;
persistence lives in conversation_service and execution in the pipeline.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from chatcommerce.services.action_registry import ActionName
from chatcommerce.services.intent_service import Intent, IntentType


class ConversationState(str, Enum):
    IDLE = "IDLE"
    BROWSING_CATALOG = "BROWSING_CATALOG"
    VIEWING_PRODUCT = "VIEWING_PRODUCT"
    SELECTING_VARIANT = "SELECTING_VARIANT"
    CART_REVIEW = "CART_REVIEW"
    AWAITING_ADDRESS = "AWAITING_ADDRESS"
    AWAITING_PAYMENT_METHOD = "AWAITING_PAYMENT_METHOD"
    ORDER_CONFIRMED = "ORDER_CONFIRMED"
    SUPPORT_HANDOFF = "SUPPORT_HANDOFF"


# States that wait for free-form text rather than commands.
FREE_TEXT_STATES = {ConversationState.AWAITING_ADDRESS}


@dataclass(frozen=True)
class ActionInvocation:
    action: ActionName
    args: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Transition:
    to_state: ConversationState
    actions: tuple[ActionName, ...]


S = ConversationState
I = IntentType
A = ActionName

# Rows that apply in every state unless a state-specific row overrides them.
WILDCARD_TRANSITIONS: dict[IntentType, Transition] = {
    I.GREETING: Transition(S.IDLE, (A.SHOW_MAIN_MENU,)),
    I.SHOW_MENU: Transition(S.IDLE, (A.SHOW_MAIN_MENU,)),
    I.BROWSE_CATEGORY: Transition(S.BROWSING_CATALOG, (A.SHOW_CATEGORY,)),
    I.SEARCH: Transition(S.BROWSING_CATALOG, (A.SEARCH_PRODUCTS,)),
    I.VIEW_PRODUCT: Transition(S.VIEWING_PRODUCT, (A.SHOW_PRODUCT,)),
    I.VIEW_CART: Transition(S.CART_REVIEW, (A.SHOW_CART,)),
    I.CHECKOUT: Transition(S.AWAITING_ADDRESS, (A.REQUEST_ADDRESS,)),
    I.REQUEST_HUMAN: Transition(S.SUPPORT_HANDOFF, (A.REQUEST_HUMAN,)),
    I.CANCEL: Transition(S.IDLE, (A.CLEAR_CHECKOUT, A.SHOW_MAIN_MENU)),
}

STATE_TRANSITIONS: dict[tuple[ConversationState, IntentType], Transition] = {
    (S.VIEWING_PRODUCT, I.SELECT_VARIANT): Transition(S.SELECTING_VARIANT, (A.SELECT_VARIANT,)),
    (S.VIEWING_PRODUCT, I.ADD_TO_CART): Transition(S.CART_REVIEW, (A.ADD_TO_CART, A.SHOW_CART)),
    (S.SELECTING_VARIANT, I.SELECT_VARIANT): Transition(S.SELECTING_VARIANT, (A.SELECT_VARIANT,)),
    (S.SELECTING_VARIANT, I.ADD_TO_CART): Transition(S.CART_REVIEW, (A.ADD_TO_CART, A.SHOW_CART)),
    (S.BROWSING_CATALOG, I.ADD_TO_CART): Transition(S.CART_REVIEW, (A.ADD_TO_CART, A.SHOW_CART)),
    (S.CART_REVIEW, I.ADD_TO_CART): Transition(S.CART_REVIEW, (A.ADD_TO_CART, A.SHOW_CART)),
    (S.CART_REVIEW, I.REMOVE_FROM_CART): Transition(S.CART_REVIEW, (A.REMOVE_FROM_CART, A.SHOW_CART)),
    (S.CART_REVIEW, I.CHECKOUT): Transition(S.AWAITING_ADDRESS, (A.REQUEST_ADDRESS,)),
    (S.AWAITING_ADDRESS, I.FREE_TEXT): Transition(S.AWAITING_PAYMENT_METHOD, (A.SAVE_ADDRESS, A.REQUEST_PAYMENT_METHOD)),
    (S.AWAITING_ADDRESS, I.CANCEL): Transition(S.CART_REVIEW, (A.CLEAR_CHECKOUT, A.SHOW_CART)),
    (S.AWAITING_PAYMENT_METHOD, I.SELECT_PAYMENT): Transition(S.AWAITING_PAYMENT_METHOD, (A.SAVE_PAYMENT_METHOD,)),
    (S.AWAITING_PAYMENT_METHOD, I.CONFIRM_ORDER): Transition(S.ORDER_CONFIRMED, (A.CONFIRM_ORDER,)),
    (S.AWAITING_PAYMENT_METHOD, I.CHECKOUT): Transition(S.AWAITING_PAYMENT_METHOD, (A.REQUEST_PAYMENT_METHOD,)),
    (S.AWAITING_PAYMENT_METHOD, I.CANCEL): Transition(S.CART_REVIEW, (A.CLEAR_CHECKOUT, A.SHOW_CART)),
    (S.SUPPORT_HANDOFF, I.REQUEST_HUMAN): Transition(S.SUPPORT_HANDOFF, (A.SHOW_HANDOFF_STATUS,)),
}

# Unmatched (state, intent) pairs re-show the current state's prompt.
DEFAULT_TRANSITIONS: dict[ConversationState, Transition] = {
    S.IDLE: Transition(S.IDLE, (A.SHOW_MAIN_MENU,)),
    S.BROWSING_CATALOG: Transition(S.BROWSING_CATALOG, (A.SHOW_CATEGORY,)),
    S.VIEWING_PRODUCT: Transition(S.VIEWING_PRODUCT, (A.SHOW_PRODUCT,)),
    S.SELECTING_VARIANT: Transition(S.SELECTING_VARIANT, (A.SELECT_VARIANT,)),
    S.CART_REVIEW: Transition(S.CART_REVIEW, (A.SHOW_CART,)),
    S.AWAITING_ADDRESS: Transition(S.AWAITING_ADDRESS, (A.REQUEST_ADDRESS,)),
    S.AWAITING_PAYMENT_METHOD: Transition(S.AWAITING_PAYMENT_METHOD, (A.REQUEST_PAYMENT_METHOD,)),
    S.ORDER_CONFIRMED: Transition(S.IDLE, (A.SHOW_MAIN_MENU,)),
    S.SUPPORT_HANDOFF: Transition(S.SUPPORT_HANDOFF, (A.SHOW_HANDOFF_STATUS,)),
}

del S, I, A


def resolve_transition(state: ConversationState, intent_type: IntentType) -> tuple[Transition, bool]:
    """Table lookup. Returns (transition, is_fallback)."""
    transition = STATE_TRANSITIONS.get((state, intent_type))
    if transition is not None:
        return transition, False
    transition = WILDCARD_TRANSITIONS.get(intent_type)
    if transition is not None:
        return transition, False
    return DEFAULT_TRANSITIONS[state], True


def transition(
    state: ConversationState | str,
    intent: Intent,
    context: Optional[dict[str, Any]] = None,
) -> tuple[ConversationState, list[ActionInvocation]]:
    """Decide the next state and the ordered actions for one intent."""
    current = ConversationState(state)
    rule, _ = resolve_transition(current, intent.type)
    args = build_action_args(intent, context or {})
    return rule.to_state, [ActionInvocation(action=name, args=dict(args)) for name in rule.actions]


def build_action_args(intent: Intent, context: dict[str, Any]) -> dict[str, Any]:
    """Intent slots, completed from conversation context where a slot is missing."""
    args = dict(intent.slots)
    if intent.type in (IntentType.ADD_TO_CART, IntentType.SELECT_VARIANT):
        if "product_id" not in args and context.get("product_id"):
            args["product_id"] = context["product_id"]
    if intent.type == IntentType.ADD_TO_CART:
        if "variation_id" not in args and context.get("variation_id"):
            args["variation_id"] = context["variation_id"]
        args.setdefault("quantity", 1)
    return args


def expects_free_text(state: ConversationState | str) -> bool:
    return ConversationState(state) in FREE_TEXT_STATES
