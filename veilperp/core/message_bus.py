from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Optional

from .models import EventEnvelope

from veilperp.contracts.streams import dlq_stream
from veilperp.contracts.validation import validate_envelope_dict


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReceivedMessage:
    stream: str
    message_id: str
    envelope: EventEnvelope
    fields: dict[str, str]


def envelope_to_wire_dict(event: EventEnvelope) -> dict:
    d = asdict(event)
    produced_at = event.produced_at
    if isinstance(produced_at, datetime):
        if produced_at.tzinfo is None:
            produced_at = produced_at.replace(tzinfo=timezone.utc)
        d["produced_at"] = produced_at.isoformat()
    validate_envelope_dict(d)
    return d


def wire_dict_to_envelope(d: dict) -> EventEnvelope:
    # validate first (strict)
    validate_envelope_dict(d)
    produced_at = datetime.fromisoformat(str(d["produced_at"]).replace("Z", "+00:00"))
    return EventEnvelope(
        event_id=d["event_id"],
        trace_id=d["trace_id"],
        produced_at=produced_at,
        schema=d["schema"],
        schema_version=int(d["schema_version"]),
        payload=d["payload"],
        source_service=d.get("source_service"),
    )


class RedisStreamBus:
    """Redis Streams transport for finalization records.

    Records that fail strict v1 validation never reach a consumer: they are
    copied to the DLQ stream and acked inside `poll`.
    """

    def __init__(
        self,
        redis_url: str,
        *,
        block_ms: int = 1000,
        read_count: int = 10,
        client=None,
    ):
        self.redis_url = redis_url
        self._client = client
        self.block_ms = block_ms
        self.read_count = read_count

    @property
    def client(self):
        return self._get_client()

    def _get_client(self):
        if self._client is None:
            import redis  # type: ignore

            self._client = redis.Redis.from_url(self.redis_url, decode_responses=True)
        return self._client

    def ensure_group(self, stream: str, group: str) -> None:
        client = self._get_client()
        try:
            client.xgroup_create(name=stream, groupname=group, id="$", mkstream=True)
        except Exception as e:
            # BUSYGROUP means it already exists.
            if "BUSYGROUP" not in str(e):
                raise

    def publish(self, stream: str, event: EventEnvelope) -> None:
        client = self._get_client()
        wire = envelope_to_wire_dict(event)
        body = json.dumps(wire, ensure_ascii=False)
        client.xadd(stream, {"event": body})

    def poll(
        self,
        *,
        stream: str,
        group: str,
        consumer: str,
        block_ms: Optional[int] = None,
    ) -> list[ReceivedMessage]:
        self.ensure_group(stream, group)
        client = self._get_client()
        resp = client.xreadgroup(
            groupname=group,
            consumername=consumer,
            streams={stream: ">"},
            count=self.read_count,
            block=self.block_ms if block_ms is None else block_ms,
        )
        out: list[ReceivedMessage] = []
        for (sname, items) in resp or []:
            for (msg_id, fields) in items:
                raw = dict(fields)
                body = raw.get("event") or ""
                try:
                    env = wire_dict_to_envelope(json.loads(body))
                except Exception as e:
                    logger.warning(
                        "finalization_record_invalid",
                        extra={"stream": sname, "message_id": msg_id, "error": str(e)},
                    )
                    self._dlq(base_stream=sname, event_json=body, error=f"contract_invalid: {e}", original_message_id=msg_id)
                    self.ack(stream=sname, group=group, message_id=msg_id)
                    continue
                out.append(ReceivedMessage(stream=sname, message_id=msg_id, envelope=env, fields=raw))
        return out

    def ack(self, *, stream: str, group: str, message_id: str) -> None:
        client = self._get_client()
        client.xack(stream, group, message_id)

    def _dlq(self, *, base_stream: str, event_json: str, error: str, original_message_id: str) -> None:
        client = self._get_client()
        client.xadd(
            dlq_stream(base_stream),
            {
                "event": event_json,
                "error": error,
                "failed_at": datetime.now(timezone.utc).isoformat(),
                "original_stream": base_stream,
                "original_message_id": original_message_id,
            },
        )
