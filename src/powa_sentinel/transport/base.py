from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from powa_sentinel.domain import Alert, Severity


@dataclass(frozen=True, slots=True)
class Message:
    """A formatted alert ready for a channel.

    ``parts_sent`` counts the leading parts a multi-part channel already
    delivered; retries resume after them.
    """

    title: str
    text: str
    severity: Severity
    alert: Alert
    parts_sent: int = 0


@runtime_checkable
class NotificationTransport(Protocol):
    """Protocol for notification channels.

    ``send`` raises ``TransportTransient`` for retry-eligible failures and
    ``TransportPermanent`` for failures that will not succeed on retry.
    """

    @property
    def name(self) -> str:
        ...

    async def send(self, channel: str, message: Message) -> None:
        ...
