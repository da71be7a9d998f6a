from powa_sentinel.transport.base import Message, NotificationTransport
from powa_sentinel.transport.console import ConsoleTransport
from powa_sentinel.transport.factory import build_transports
from powa_sentinel.transport.sqs import SqsTransport
from powa_sentinel.transport.webhook import (
    DingTalkTransport,
    FeishuTransport,
    WebhookTransport,
    WeComTransport,
    split_message,
)

__all__ = [
    "Message",
    "NotificationTransport",
    "ConsoleTransport",
    "SqsTransport",
    "WebhookTransport",
    "WeComTransport",
    "FeishuTransport",
    "DingTalkTransport",
    "build_transports",
    "split_message",
]
