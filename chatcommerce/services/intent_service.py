import json
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

import httpx

from chatcommerce.logging_config import get_logger
from chatcommerce.services.llm.base import LLMError, LLMProvider

logger = get_logger("intent_service")

DEFAULT_CONFIDENCE_THRESHOLD = 0.7
UNKNOWN_RULE_CONFIDENCE = 0.3
MAX_QUANTITY = 999


class IntentType(str, Enum):
    GREETING = "greeting"
    SHOW_MENU = "show_menu"
    BROWSE_CATEGORY = "browse_category"
    VIEW_PRODUCT = "view_product"
    SEARCH = "search"
    SELECT_VARIANT = "select_variant"
    ADD_TO_CART = "add_to_cart"
    REMOVE_FROM_CART = "remove_from_cart"
    VIEW_CART = "view_cart"
    CHECKOUT = "checkout"
    SELECT_PAYMENT = "select_payment"
    CONFIRM_ORDER = "confirm_order"
    CANCEL = "cancel"
    REQUEST_HUMAN = "request_human"
    FREE_TEXT = "free_text"
    UNKNOWN = "unknown"


# Declared slot set per intent type; anything else is dropped.
SLOT_SCHEMA: dict[IntentType, frozenset[str]] = {
    IntentType.BROWSE_CATEGORY: frozenset({"category_id"}),
    IntentType.VIEW_PRODUCT: frozenset({"product_id"}),
    IntentType.SEARCH: frozenset({"query"}),
    IntentType.SELECT_VARIANT: frozenset({"variation_id"}),
    IntentType.ADD_TO_CART: frozenset({"product_id", "variation_id", "quantity"}),
    IntentType.REMOVE_FROM_CART: frozenset({"product_id"}),
    IntentType.SELECT_PAYMENT: frozenset({"payment_method"}),
    IntentType.FREE_TEXT: frozenset({"text"}),
}

INTEGER_SLOTS = {"category_id", "product_id", "variation_id", "quantity"}

# Commands still honored while the conversation waits for free-form input.
FREE_TEXT_OVERRIDES = {
    IntentType.CANCEL,
    IntentType.REQUEST_HUMAN,
    IntentType.SHOW_MENU,
    IntentType.VIEW_CART,
}


@dataclass
class Intent:
    type: IntentType
    slots: dict[str, Any] = field(default_factory=dict)
    confidence: float = 0.0
    source: str = "rules"  # structured, rules, llm, fallback
    raw_text: Optional[str] = None

    @property
    def is_structured(self) -> bool:
        return self.source == "structured"

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "slots": dict(self.slots),
            "confidence": self.confidence,
            "source": self.source,
        }


def restrict_slots(intent_type: IntentType, slots: dict[str, Any]) -> dict[str, Any]:
    allowed = SLOT_SCHEMA.get(intent_type, frozenset())
    cleaned: dict[str, Any] = {}
    for name, value in slots.items():
        if name not in allowed or value is None or value == "":
            continue
        if name in INTEGER_SLOTS:
            try:
                value = int(value)
            except (TypeError, ValueError):
                continue
            if value <= 0:
                continue
            if name == "quantity" and value > MAX_QUANTITY:
                continue
        else:
            value = str(value).strip()
        cleaned[name] = value
    return cleaned


def normalize_for_matching(text: str | None) -> str:
    if not text:
        return ""
    normalized = text.casefold().strip()
    normalized = re.sub(r"\s+", " ", normalized)
    return normalized


# --- Structured reply ids -------------------------------------------------

_STRUCTURED_KEYWORDS = {
    "menu": IntentType.SHOW_MENU,
    "main_menu": IntentType.SHOW_MENU,
    "cart": IntentType.VIEW_CART,
    "view_cart": IntentType.VIEW_CART,
    "checkout": IntentType.CHECKOUT,
    "confirm": IntentType.CONFIRM_ORDER,
    "confirm_order": IntentType.CONFIRM_ORDER,
    "cancel": IntentType.CANCEL,
    "human": IntentType.REQUEST_HUMAN,
    "support": IntentType.REQUEST_HUMAN,
}

_STRUCTURED_PATTERNS: tuple[tuple[re.Pattern, IntentType, str], ...] = (
    (re.compile(r"^category_(\d+)$"), IntentType.BROWSE_CATEGORY, "category_id"),
    (re.compile(r"^product_(\d+)$"), IntentType.VIEW_PRODUCT, "product_id"),
    (re.compile(r"^variant_(\d+)$"), IntentType.SELECT_VARIANT, "variation_id"),
    (re.compile(r"^qty_(\d+)$"), IntentType.ADD_TO_CART, "quantity"),
    (re.compile(r"^add_(\d+)$"), IntentType.ADD_TO_CART, "product_id"),
    (re.compile(r"^remove_(\d+)$"), IntentType.REMOVE_FROM_CART, "product_id"),
    (re.compile(r"^pay_([a-z][a-z0-9_]{0,31})$"), IntentType.SELECT_PAYMENT, "payment_method"),
)


def decode_structured_reply(reply_id: str) -> Intent:
    """Decode a button/list reply id. Unparseable ids degrade to unknown."""
    normalized = (reply_id or "").strip().lower()

    keyword = _STRUCTURED_KEYWORDS.get(normalized)
    if keyword is not None:
        return Intent(type=keyword, confidence=1.0, source="structured", raw_text=reply_id)

    for pattern, intent_type, slot in _STRUCTURED_PATTERNS:
        match = pattern.match(normalized)
        if not match:
            continue
        slots = restrict_slots(intent_type, {slot: match.group(1)})
        if slot not in slots:
            break
        return Intent(type=intent_type, slots=slots, confidence=1.0, source="structured", raw_text=reply_id)

    logger.info("Unparseable structured reply id", extra={"context": {"reply_id": reply_id}})
    return Intent(type=IntentType.UNKNOWN, confidence=0.0, source="structured", raw_text=reply_id)


# --- Free-text rules ------------------------------------------------------

# Order matters: on equal confidence the earlier rule wins.
RULE_PATTERNS: tuple[tuple[IntentType, re.Pattern, float], ...] = (
    (IntentType.GREETING, re.compile(r"^(hi|hello|hey|good\s*(morning|afternoon|evening))\b"), 0.95),
    (IntentType.SHOW_MENU, re.compile(r"^(menu|main menu|start|restart)$"), 0.95),
    (IntentType.CONFIRM_ORDER, re.compile(r"^(confirm|yes,? confirm|place (my )?order)\b"), 0.9),
    (IntentType.ADD_TO_CART, re.compile(r"\badd\b.*\b(cart|basket|bag)\b"), 0.9),
    (IntentType.REQUEST_HUMAN, re.compile(r"\b(help|support|assist|human|agent|person)\b"), 0.9),
    (IntentType.BROWSE_CATEGORY, re.compile(r"\b(show|browse|see|view)\b.*\b(products?|catalog|items?|collection)\b"), 0.9),
    (IntentType.VIEW_CART, re.compile(r"\b(my )?(cart|basket|bag)\b"), 0.9),
    (IntentType.CHECKOUT, re.compile(r"\b(checkout|check out|buy|purchase|pay|order)\b"), 0.9),
    (IntentType.SEARCH, re.compile(r"\b(search|find|looking for|want|need)\s+(?P<query>.+)"), 0.85),
    (IntentType.CANCEL, re.compile(r"\b(cancel|remove|delete|stop)\b"), 0.8),
)

_QUANTITY_PATTERN = re.compile(r"\b(\d{1,3})\s*(pieces?|items?|units?|pcs?|x)?\b")


def extract_quantity(text: str) -> Optional[int]:
    for match in _QUANTITY_PATTERN.finditer(text):
        quantity = int(match.group(1))
        if 0 < quantity <= MAX_QUANTITY:
            return quantity
    return None


def classify_with_rules(text: str) -> Intent:
    normalized = normalize_for_matching(text)
    best_type = IntentType.UNKNOWN
    best_confidence = UNKNOWN_RULE_CONFIDENCE
    slots: dict[str, Any] = {}

    for intent_type, pattern, confidence in RULE_PATTERNS:
        match = pattern.search(normalized)
        if not match or confidence <= best_confidence:
            continue
        best_type = intent_type
        best_confidence = confidence
        slots = {}
        if intent_type == IntentType.SEARCH:
            slots["query"] = match.group("query")
        elif intent_type == IntentType.ADD_TO_CART:
            quantity = extract_quantity(normalized)
            if quantity:
                slots["quantity"] = quantity

    return Intent(
        type=best_type,
        slots=restrict_slots(best_type, slots),
        confidence=best_confidence,
        source="rules",
        raw_text=text,
    )


CLASSIFY_PROMPT = """You classify messages sent to a shop's WhatsApp assistant.
Allowed intents: {intents}.
Conversation state: {state}

Message: "{message}"

Reply with JSON only: {{"intent": "<intent>", "confidence": <0..1>, "slots": {{}}}}
Allowed slots per intent: {slots}"""


class IntentClassifier:
    """Maps raw input onto the closed intent vocabulary.

    Structured reply ids always win over free text. Free text goes through
    rule patterns first and only reaches the LLM when the rules are not
    confident enough. Any classifier failure degrades to the rule result,
    and anything still below the threshold becomes ``unknown``.
    """

    def __init__(
        self,
        llm: Optional[LLMProvider] = None,
        *,
        model: Optional[str] = None,
        timeout_seconds: float = 4.0,
        threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
    ):
        self.llm = llm
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.threshold = threshold

    def classify(
        self,
        raw_input: Optional[str],
        structured_reply_id: Optional[str] = None,
        *,
        state: Optional[str] = None,
        expecting_free_text: bool = False,
    ) -> Intent:
        if structured_reply_id:
            return decode_structured_reply(structured_reply_id)

        text = (raw_input or "").strip()
        if not text:
            return Intent(type=IntentType.UNKNOWN, confidence=0.0, source="fallback", raw_text=raw_input)

        intent = classify_with_rules(text)

        if expecting_free_text:
            if intent.type in FREE_TEXT_OVERRIDES and intent.confidence >= self.threshold:
                return intent
            return Intent(
                type=IntentType.FREE_TEXT,
                slots=restrict_slots(IntentType.FREE_TEXT, {"text": text}),
                confidence=1.0,
                source="rules",
                raw_text=text,
            )

        if intent.confidence < self.threshold and self.llm is not None:
            llm_intent = self._classify_with_llm(text, state)
            if llm_intent is not None and llm_intent.confidence > intent.confidence:
                intent = llm_intent

        if intent.confidence < self.threshold:
            return Intent(
                type=IntentType.UNKNOWN,
                confidence=intent.confidence,
                source=intent.source,
                raw_text=text,
            )
        return intent

    def _classify_with_llm(self, text: str, state: Optional[str]) -> Optional[Intent]:
        vocabulary = [t.value for t in IntentType if t not in (IntentType.FREE_TEXT, IntentType.UNKNOWN)]
        slots_hint = {t.value: sorted(s) for t, s in SLOT_SCHEMA.items() if t != IntentType.FREE_TEXT}
        prompt = CLASSIFY_PROMPT.format(
            intents=", ".join(vocabulary),
            state=state or "IDLE",
            message=text.replace('"', "'"),
            slots=json.dumps(slots_hint),
        )

        llm_start = time.monotonic()
        try:
            response = self.llm.generate(
                [{"role": "user", "content": prompt}],
                model=self.model,
                temperature=0.0,
                max_tokens=120,
                timeout_seconds=self.timeout_seconds,
            )
        except httpx.TimeoutException as exc:
            logger.warning(
                "Intent LLM timeout",
                extra={
                    "context": {
                        "elapsed_ms": round((time.monotonic() - llm_start) * 1000, 2),
                        "timeout_seconds": self.timeout_seconds,
                        "error": str(exc),
                    }
                },
            )
            return None
        except (httpx.HTTPError, LLMError) as exc:
            logger.warning(f"Intent LLM unavailable: {exc}")
            return None

        logger.info(
            "Timing",
            extra={
                "context": {
                    "stage": "intent_llm_ms",
                    "elapsed_ms": round((time.monotonic() - llm_start) * 1000, 2),
                    "model_name": response.model,
                }
            },
        )
        return parse_llm_intent(response.content, text)


def parse_llm_intent(content: str, text: str) -> Optional[Intent]:
    try:
        data = json.loads(content or "")
    except ValueError:
        logger.warning("Intent LLM returned non-JSON", extra={"context": {"content": (content or "")[:200]}})
        return None
    if not isinstance(data, dict):
        return None

    try:
        intent_type = IntentType(str(data.get("intent", "")).strip().lower())
        confidence = float(data.get("confidence", 0.0))
    except (ValueError, TypeError):
        return None
    if intent_type == IntentType.FREE_TEXT:
        return None

    confidence = min(max(confidence, 0.0), 1.0)
    raw_slots = data.get("slots") if isinstance(data.get("slots"), dict) else {}
    slots = restrict_slots(intent_type, raw_slots)
    if intent_type == IntentType.ADD_TO_CART and "quantity" not in slots:
        quantity = extract_quantity(normalize_for_matching(text))
        if quantity:
            slots["quantity"] = quantity

    return Intent(type=intent_type, slots=slots, confidence=confidence, source="llm", raw_text=text)
