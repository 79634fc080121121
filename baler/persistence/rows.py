"""Column layout shared by the SQL backends."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional

from ..models import Chain, Step

CHAIN_COLUMNS = (
    "id",
    "name",
    "status",
    "resume_at",
    "delay",
    "queue",
    "connection",
    "on_then",
    "on_catch",
    "on_finally",
    "on_paused",
    "global_middleware",
    "allow_failures",
    "data",
    "failure",
    "created_at",
    "started_at",
    "finished_at",
    "last_processed_at",
)

# ``order`` is reserved in SQL, so steps store it as ``position``.
STEP_COLUMNS = (
    "id",
    "chain_id",
    "position",
    "job",
    "delay",
    "queue",
    "connection",
    "attempts",
    "created_at",
)

_JSON_FIELDS = {"on_then", "on_catch", "on_finally", "on_paused", "global_middleware", "data"}
_TIMESTAMP_FIELDS = {"resume_at", "created_at", "started_at", "finished_at", "last_processed_at"}


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def iso_timestamp(value: Optional[datetime]) -> Optional[str]:
    return as_utc(value).isoformat() if value is not None else None


def parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    return datetime.fromisoformat(value)


def chain_values(chain: Chain, encode_ts: Callable[[Optional[datetime]], Any]) -> list[Any]:
    """Return column values for ``chain`` in ``CHAIN_COLUMNS`` order."""

    dumped = chain.model_dump(mode="json")
    values: list[Any] = []
    for column in CHAIN_COLUMNS:
        if column in _TIMESTAMP_FIELDS:
            values.append(encode_ts(getattr(chain, column)))
        elif column in _JSON_FIELDS:
            values.append(json.dumps(dumped[column]))
        elif column == "status":
            values.append(chain.status.value)
        else:
            values.append(getattr(chain, column))
    return values


def chain_from_row(row: Mapping[str, Any]) -> Chain:
    fields: dict[str, Any] = {}
    for column in CHAIN_COLUMNS:
        value = row[column]
        if column in _JSON_FIELDS:
            value = json.loads(value) if isinstance(value, str) else value
        elif column in _TIMESTAMP_FIELDS:
            value = parse_timestamp(value)
        elif column == "allow_failures":
            value = bool(value)
        fields[column] = value
    return Chain.model_validate(fields)


def step_values(step: Step, encode_ts: Callable[[Optional[datetime]], Any]) -> list[Any]:
    """Return column values for ``step`` in ``STEP_COLUMNS`` order, minus ``id``."""

    return [
        step.chain_id,
        step.order,
        step.job.model_dump_json(),
        step.delay,
        step.queue,
        step.connection,
        step.attempts,
        encode_ts(step.created_at),
    ]


def step_from_row(row: Mapping[str, Any]) -> Step:
    job = row["job"]
    return Step(
        id=row["id"],
        chain_id=row["chain_id"],
        order=row["position"],
        job=json.loads(job) if isinstance(job, str) else job,
        delay=row["delay"],
        queue=row["queue"],
        connection=row["connection"],
        attempts=row["attempts"],
        created_at=parse_timestamp(row["created_at"]),
    )
