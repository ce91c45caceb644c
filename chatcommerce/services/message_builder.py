"""Outbound message payloads.

Messages are plain dicts shaped like the body of a WhatsApp Cloud API send,
minus the recipient fields which the messaging client adds.
"""

from typing import Any, Iterable, Optional

MAX_BUTTONS = 3
MAX_LIST_ROWS = 10
MAX_BUTTON_TITLE = 20
MAX_ROW_TITLE = 24
MAX_ROW_DESCRIPTION = 72
MAX_BODY_TEXT = 4096


def _clip(value: Any, limit: int) -> str:
    text = str(value or "").strip()
    if len(text) <= limit:
        return text
    return text[: limit - 1].rstrip() + "…"


def text_message(body: str) -> dict[str, Any]:
    return {"type": "text", "text": {"body": _clip(body, MAX_BODY_TEXT)}}


def button_message(
    body: str,
    buttons: Iterable[tuple[str, str]],
    *,
    header: Optional[str] = None,
    footer: Optional[str] = None,
) -> dict[str, Any]:
    """Reply-button message. Extra buttons past the provider limit are dropped."""
    interactive: dict[str, Any] = {
        "type": "button",
        "body": {"text": _clip(body, 1024)},
        "action": {
            "buttons": [
                {"type": "reply", "reply": {"id": reply_id, "title": _clip(title, MAX_BUTTON_TITLE)}}
                for reply_id, title in list(buttons)[:MAX_BUTTONS]
            ]
        },
    }
    if header:
        interactive["header"] = {"type": "text", "text": _clip(header, 60)}
    if footer:
        interactive["footer"] = {"text": _clip(footer, 60)}
    return {"type": "interactive", "interactive": interactive}


def list_message(
    body: str,
    button_text: str,
    rows: Iterable[tuple[str, str, Optional[str]]],
    *,
    section_title: str = "Options",
    header: Optional[str] = None,
) -> dict[str, Any]:
    """Single-section list message with at most ten rows."""
    section_rows = []
    for reply_id, title, description in list(rows)[:MAX_LIST_ROWS]:
        row = {"id": reply_id, "title": _clip(title, MAX_ROW_TITLE)}
        if description:
            row["description"] = _clip(description, MAX_ROW_DESCRIPTION)
        section_rows.append(row)

    interactive: dict[str, Any] = {
        "type": "list",
        "body": {"text": _clip(body, 1024)},
        "action": {
            "button": _clip(button_text, MAX_BUTTON_TITLE),
            "sections": [{"title": _clip(section_title, MAX_ROW_TITLE), "rows": section_rows}],
        },
    }
    if header:
        interactive["header"] = {"type": "text", "text": _clip(header, 60)}
    return {"type": "interactive", "interactive": interactive}


def format_price(amount: Any, currency: str = "") -> str:
    try:
        value = f"{float(amount):.2f}"
    except (TypeError, ValueError):
        value = str(amount)
    return f"{value} {currency}".strip()
