from typing import Any

import httpx
from loguru import logger

from clinicflow.domain.exceptions import TransportError
from clinicflow.domain.models import Button
from clinicflow.notifications.parsing_helpers import mask_phone


class HTTPMessageTransport:
    """WhatsApp messaging through the provider's REST ``/messages`` endpoint."""

    def __init__(
        self,
        api_url: str,
        api_key: str,
        *,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._messages_url = f"{api_url.rstrip('/')}/messages"
        self._api_key = api_key
        self._client = client or httpx.AsyncClient(timeout=timeout)

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

    async def _post(self, number: str, body: dict[str, Any]) -> str:
        """Send one message and return the provider-assigned id."""
        try:
            resp = await self._client.post(
                self._messages_url,
                headers=self._headers(),
                json={"to": number, **body},
            )
            resp.raise_for_status()
            data: dict[str, Any] = resp.json()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "Messaging API rejected {} message to {}: status={}, body={}",
                body.get("type"),
                mask_phone(number),
                exc.response.status_code,
                exc.response.text,
            )
            raise TransportError(f"Messaging API request failed: {exc}") from exc
        except Exception as exc:
            raise TransportError(f"Messaging API request failed: {exc}") from exc

        message_id = data.get("id")
        if not message_id:
            # WhatsApp Cloud-style response: {"messages": [{"id": ...}]}
            messages: list[dict[str, Any]] = data.get("messages") or []
            message_id = messages[0].get("id") if messages else None
        if not message_id:
            raise TransportError("Messaging API returned no message id")

        logger.info("WhatsApp {} message sent to {}", body.get("type"), mask_phone(number))
        return str(message_id)

    async def send_templated(
        self, number: str, template_id: str, variables: dict[str, str]
    ) -> str:
        return await self._post(
            number,
            {"type": "template", "template": {"id": template_id, "variables": variables}},
        )

    async def send_text(self, number: str, text: str) -> str:
        return await self._post(number, {"type": "text", "text": {"body": text}})

    async def send_interactive(self, number: str, text: str, buttons: list[Button]) -> str:
        return await self._post(
            number,
            {
                "type": "interactive",
                "interactive": {
                    "type": "button",
                    "body": {"text": text},
                    "action": {"buttons": [b.model_dump() for b in buttons]},
                },
            },
        )

    async def close(self) -> None:
        await self._client.aclose()
        logger.info("Messaging API client closed")
