import json
from dataclasses import asdict
from datetime import datetime
from typing import Any

from aiobotocore.session import get_session
from botocore.exceptions import BotoCoreError, ClientError

from powa_sentinel.exceptions import TransportPermanent, TransportTransient
from powa_sentinel.transport.base import Message

THROTTLING_CODES = ("Throttling", "ThrottlingException", "RequestThrottled", "ServiceUnavailable", "InternalError")


class SqsTransport:
    def __init__(self, queue_url: str, region: str = "us-east-1") -> None:
        self._queue_url = queue_url
        self._region = region
        self._session = get_session()

    @property
    def name(self) -> str:
        return "sqs"

    async def send(self, channel: str, message: Message) -> None:
        try:
            async with self._session.create_client("sqs", region_name=self._region) as client:
                await client.send_message(
                    QueueUrl=self._queue_url,
                    MessageBody=self._serialize(message),
                )
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code", "")
            if code in THROTTLING_CODES:
                raise TransportTransient(f"{channel}: sqs {code}") from exc
            raise TransportPermanent(f"{channel}: sqs {code or exc}") from exc
        except BotoCoreError as exc:
            raise TransportTransient(f"{channel}: {exc}") from exc

    def _serialize(self, message: Message) -> str:
        body = {
            "title": message.title,
            "text": message.text,
            "alert": asdict(message.alert),
        }
        return json.dumps(body, default=self._json_default)

    @staticmethod
    def _json_default(obj: Any) -> Any:
        if isinstance(obj, datetime):
            return obj.isoformat()
        raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")
