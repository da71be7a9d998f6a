from powa_sentinel.transport.base import Message


class ConsoleTransport:
    """Console output adapter for alerts."""

    def __init__(self, prefix: str = "[ALERT]") -> None:
        self._prefix = prefix

    @property
    def name(self) -> str:
        return "console"

    async def send(self, channel: str, message: Message) -> None:
        print(f"{self._prefix} [{message.severity.name}] [{channel}] {message.title}")
        if message.text != message.title:
            for line in message.text.splitlines():
                print(f"  {line}")
