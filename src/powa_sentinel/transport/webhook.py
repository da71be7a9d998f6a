import logging
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any

import httpx

from powa_sentinel.exceptions import TransportPermanent, TransportTransient
from powa_sentinel.transport.base import Message

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = (429, 500, 502, 503, 504)


def parse_retry_after(value: str | None) -> float | None:
    """Seconds to wait from a ``Retry-After`` header, in delay-seconds or HTTP-date form."""
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        logger.warning(f"Ignoring unparsable Retry-After header: {value!r}")
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=UTC)
    return max(0.0, (when - datetime.now(UTC)).total_seconds())


def split_message(text: str, limit: int) -> list[str]:
    """Split text on line boundaries into chunks of at most ``limit`` UTF-8 bytes."""
    if len(text.encode("utf-8")) <= limit:
        return [text]

    chunks: list[str] = []
    current: list[str] = []
    size = 0
    for line in text.split("\n"):
        encoded = line.encode("utf-8")
        while len(encoded) > limit:
            if current:
                chunks.append("\n".join(current))
                current, size = [], 0
            head = encoded[:limit].decode("utf-8", errors="ignore")
            chunks.append(head)
            encoded = encoded[len(head.encode("utf-8")):]
        line = encoded.decode("utf-8")
        added = len(encoded) + (1 if current else 0)
        if current and size + added > limit:
            chunks.append("\n".join(current))
            current, size = [], 0
            added = len(encoded)
        current.append(line)
        size += added
    if current:
        chunks.append("\n".join(current))
    return chunks


class WebhookTransport:
    """Generic JSON webhook. Subclasses adapt payload shape and vendor errors."""

    def __init__(self, webhook_url: str, timeout: float = 10.0) -> None:
        self.webhook_url = webhook_url
        self.timeout = timeout

    @property
    def name(self) -> str:
        return "webhook"

    def _payloads(self, message: Message) -> list[dict[str, Any]]:
        alert = message.alert
        return [
            {
                "title": message.title,
                "text": message.text,
                "severity": message.severity.name,
                "instance_id": alert.instance_id,
                "scenario": alert.finding.kind.value,
                "subject": alert.finding.subject,
                "fingerprint": alert.fingerprint,
                "emitted_at": alert.emitted_at.isoformat(),
            }
        ]

    def _check_body(self, body: Any) -> None:
        pass

    async def send(self, channel: str, message: Message) -> None:
        """Post each part of ``message``, starting after ``message.parts_sent``.

        A transient failure reports how many parts went out in
        ``TransportTransient.parts_sent`` so a retry resumes from there.
        """
        payloads = self._payloads(message)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            for index in range(message.parts_sent, len(payloads)):
                try:
                    await self._post(client, channel, payloads[index])
                except TransportTransient as exc:
                    exc.parts_sent = index
                    raise

    async def _post(self, client: httpx.AsyncClient, channel: str, payload: dict[str, Any]) -> None:
        try:
            response = await client.post(
                self.webhook_url,
                json=payload,
                headers={"Content-Type": "application/json"},
            )
        except httpx.TimeoutException as exc:
            raise TransportTransient(f"{channel}: request timed out") from exc
        except httpx.TransportError as exc:
            raise TransportTransient(f"{channel}: {exc}") from exc

        if response.status_code in RETRYABLE_STATUS:
            retry_after = response.headers.get("Retry-After")
            raise TransportTransient(
                f"{channel}: retryable status {response.status_code}",
                retry_after=parse_retry_after(retry_after),
            )
        if response.status_code >= 400:
            raise TransportPermanent(f"{channel}: status {response.status_code}")

        try:
            body = response.json()
        except ValueError:
            body = None
        self._check_body(body)


class WeComTransport(WebhookTransport):
    """WeCom (WeChat Work) group robot. Markdown content is limited to 4096 bytes."""

    MAX_BYTES = 4096
    SAFE_BYTES = 4000
    RATE_LIMITED = (45009,)

    @property
    def name(self) -> str:
        return "wecom"

    def _payloads(self, message: Message) -> list[dict[str, Any]]:
        chunks = split_message(message.text, self.SAFE_BYTES)
        if len(chunks) > 1:
            chunks = [f"{chunk}\n\n*(Part {i}/{len(chunks)})*" for i, chunk in enumerate(chunks, start=1)]
        return [{"msgtype": "markdown", "markdown": {"content": chunk}} for chunk in chunks]

    def _check_body(self, body: Any) -> None:
        if not isinstance(body, dict):
            raise TransportPermanent("wecom: unexpected response body")
        code = body.get("errcode", 0)
        if code == 0:
            return
        if code in self.RATE_LIMITED:
            raise TransportTransient(f"wecom error: {code} - {body.get('errmsg', '')}")
        raise TransportPermanent(f"wecom error: {code} - {body.get('errmsg', '')}")


class FeishuTransport(WebhookTransport):
    RATE_LIMITED = (9499, 11232)

    @property
    def name(self) -> str:
        return "feishu"

    def _payloads(self, message: Message) -> list[dict[str, Any]]:
        return [{"msg_type": "text", "content": {"text": message.text}}]

    def _check_body(self, body: Any) -> None:
        if not isinstance(body, dict):
            raise TransportPermanent("feishu: unexpected response body")
        code = body.get("code", body.get("StatusCode", 0))
        if code == 0:
            return
        if code in self.RATE_LIMITED:
            raise TransportTransient(f"feishu error: {code} - {body.get('msg', '')}")
        raise TransportPermanent(f"feishu error: {code} - {body.get('msg', '')}")


class DingTalkTransport(WebhookTransport):
    RATE_LIMITED = (130101,)

    @property
    def name(self) -> str:
        return "dingtalk"

    def _payloads(self, message: Message) -> list[dict[str, Any]]:
        return [{"msgtype": "markdown", "markdown": {"title": message.title, "text": message.text}}]

    def _check_body(self, body: Any) -> None:
        if not isinstance(body, dict):
            raise TransportPermanent("dingtalk: unexpected response body")
        code = body.get("errcode", 0)
        if code == 0:
            return
        if code in self.RATE_LIMITED:
            raise TransportTransient(f"dingtalk error: {code} - {body.get('errmsg', '')}")
        raise TransportPermanent(f"dingtalk error: {code} - {body.get('errmsg', '')}")
