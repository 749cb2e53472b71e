from typing import Protocol

from clinicflow.domain.models import Button


class MessageTransportProtocol(Protocol):
    """Client for the third-party messaging provider.

    Every send returns the provider-assigned message id or raises
    ``TransportError``.  Implementations do not retry.
    """

    async def send_templated(
        self, number: str, template_id: str, variables: dict[str, str]
    ) -> str:
        """Send a pre-approved template with its variables."""
        ...

    async def send_text(self, number: str, text: str) -> str:
        """Send a free-text message."""
        ...

    async def send_interactive(self, number: str, text: str, buttons: list[Button]) -> str:
        """Send a message with quick-reply buttons."""
        ...

    async def close(self) -> None:
        """Release resources."""
        ...
