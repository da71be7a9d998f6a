from powa_sentinel.config import NotifierConfig
from powa_sentinel.transport.base import NotificationTransport
from powa_sentinel.transport.console import ConsoleTransport
from powa_sentinel.transport.sqs import SqsTransport
from powa_sentinel.transport.webhook import (
    DingTalkTransport,
    FeishuTransport,
    WebhookTransport,
    WeComTransport,
)

_WEBHOOKS: dict[str, type[WebhookTransport]] = {
    "webhook": WebhookTransport,
    "wecom": WeComTransport,
    "feishu": FeishuTransport,
    "dingtalk": DingTalkTransport,
}


def build_transports(config: NotifierConfig) -> dict[str, NotificationTransport]:
    """One transport per configured channel, keyed by channel name."""
    timeout = config.timeout.total_seconds()
    transports: dict[str, NotificationTransport] = {}
    for channel in config.channels:
        if channel.type == "console":
            transports[channel.name] = ConsoleTransport()
        elif channel.type == "sqs":
            transports[channel.name] = SqsTransport(queue_url=channel.queue_url or "", region=channel.region)
        else:
            transports[channel.name] = _WEBHOOKS[channel.type](webhook_url=channel.webhook_url or "", timeout=timeout)
    return transports
