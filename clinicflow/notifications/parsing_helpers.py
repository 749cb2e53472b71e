import datetime as dt
import re
from collections.abc import Mapping
from typing import Any

from clinicflow.domain.models import InboundMessage, ReplyAction

_NON_DIGITS = re.compile(r"\D")


def normalize_phone(raw: str, default_country_code: str = "1") -> str | None:
    """Normalise a phone number to ``+<digits>``.

    Numbers written with a ``+`` or ``00`` prefix keep their country code.
    Otherwise ``default_country_code`` is prepended unless the digits
    already start with it: ``"(555) 123-4567"`` → ``"+15551234567"``.
    Returns None when the input holds no digits.
    """
    stripped = raw.strip()
    digits = _NON_DIGITS.sub("", stripped)
    if not digits:
        return None
    if stripped.startswith("+"):
        return f"+{digits}"
    if stripped.startswith("00"):
        return f"+{digits[2:]}" if len(digits) > 2 else None
    if digits.startswith(default_country_code):
        return f"+{digits}"
    return f"+{default_country_code}{digits}"


def mask_phone(number: str) -> str:
    """Keep the last four digits for log lines: ``+15551234567`` → ``***4567``."""
    return f"***{number[-4:]}" if len(number) > 4 else "***"


def parse_action(raw: object) -> ReplyAction:
    """Map a button id to a reply action; unknown ids become ``other``."""
    if not isinstance(raw, str) or not raw.strip():
        return ReplyAction.NONE
    try:
        return ReplyAction(raw.strip().lower())
    except ValueError:
        return ReplyAction.OTHER


def _parse_timestamp(raw: object, fallback: dt.datetime) -> dt.datetime:
    if isinstance(raw, bool) or raw is None:
        return fallback
    try:
        return dt.datetime.fromtimestamp(float(raw), tz=dt.timezone.utc)  # type: ignore[arg-type]
    except (TypeError, ValueError, OverflowError, OSError):
        return fallback


def _object(value: object) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _objects(value: object) -> list[dict[str, Any]]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, dict)]


def extract_message_payloads(body: Mapping[str, Any]) -> list[dict[str, Any]]:
    """Flatten a webhook body into individual message payloads.

    Accepts both the flat ``{"from": ..., "type": ...}`` shape and the
    WhatsApp Business envelope (``entry[].changes[].value.messages[]``).
    """
    if "entry" not in body:
        return [dict(body)]

    messages: list[dict[str, Any]] = []
    for entry in _objects(body.get("entry")):
        for change in _objects(entry.get("changes")):
            value = _object(change.get("value"))
            messages.extend(_objects(value.get("messages")))
    return messages


def parse_inbound(payload: Mapping[str, Any], received_fallback: dt.datetime) -> InboundMessage | None:
    """Extract sender, id, time, content and reply action from a message payload.

    Returns None when the payload carries no sender.
    """
    sender = payload.get("from")
    if not isinstance(sender, str) or not sender.strip():
        return None

    kind = payload.get("type")
    action = ReplyAction.NONE
    interactive = _object(payload.get("interactive"))

    if kind == "text":
        text = _object(payload.get("text"))
        content = str(text.get("body", ""))
    elif kind == "interactive" and interactive.get("type") == "button_reply":
        reply = _object(interactive.get("button_reply"))
        content = str(reply.get("title", ""))
        action = parse_action(reply.get("id"))
    else:
        content = f"Message of type: {kind}"

    context = _object(payload.get("context"))
    external_id = payload.get("id")
    in_reply_to = context.get("id")

    return InboundMessage(
        sender=sender.strip(),
        external_id=str(external_id) if external_id else None,
        received_at=_parse_timestamp(payload.get("timestamp"), received_fallback),
        content=content,
        action=action,
        in_reply_to=str(in_reply_to) if in_reply_to else None,
    )
