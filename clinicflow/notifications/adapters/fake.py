from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from clinicflow.domain.models import Button


@dataclass
class SentMessage:
    number: str
    kind: str
    payload: dict[str, Any] = field(default_factory=dict)
    external_id: str = ""


class FakeMessageTransport:
    """In-memory test double for ``MessageTransportProtocol``.

    Every send is appended to ``sent`` and answered with a sequential
    ``wamid-<n>`` id.  Set ``error`` to make every send raise it until it is
    cleared, or ``fail_next`` to make only the next send raise.

    Also backs the ``fake`` transport adapter, where it just logs.
    """

    def __init__(self) -> None:
        self.sent: list[SentMessage] = []
        self.closed: bool = False

        self.error: Exception | None = None
        self.fail_next: Exception | None = None

    def _record(self, number: str, kind: str, payload: dict[str, Any]) -> str:
        if self.fail_next:
            error, self.fail_next = self.fail_next, None
            raise error
        if self.error:
            raise self.error
        external_id = f"wamid-{len(self.sent) + 1}"
        self.sent.append(SentMessage(number=number, kind=kind, payload=payload, external_id=external_id))
        logger.debug("Fake transport: {} message {} to {}", kind, external_id, number)
        return external_id

    def of_kind(self, kind: str) -> list[SentMessage]:
        return [m for m in self.sent if m.kind == kind]

    async def send_templated(
        self, number: str, template_id: str, variables: dict[str, str]
    ) -> str:
        return self._record(number, "template", {"template_id": template_id, "variables": variables})

    async def send_text(self, number: str, text: str) -> str:
        return self._record(number, "text", {"text": text})

    async def send_interactive(self, number: str, text: str, buttons: list[Button]) -> str:
        return self._record(
            number, "interactive", {"text": text, "buttons": [b.id for b in buttons]}
        )

    async def close(self) -> None:
        self.closed = True
