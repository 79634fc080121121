"""Core data models for baler chains and their steps."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, model_validator

from .errors import InvalidTransitionError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ChainStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    FINISHED = "finished"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ChainStatus.FINISHED, ChainStatus.FAILED)


class SerializedObject(BaseModel):
    """Importable description of a job or middleware instance."""

    data: Optional[dict] = Field(default=None, description="Serialized values")
    type: Optional[str] = Field(default=None, description="Class name")
    module: Optional[str] = Field(default=None, description="Module path")


class CallbackRef(BaseModel):
    """Reference to a registered callback plus its captured arguments."""

    name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)


class Chain(BaseModel):
    """Persisted orchestration state of a chain of steps."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: Optional[str] = None
    status: ChainStatus = ChainStatus.PENDING
    resume_at: Optional[datetime] = None
    delay: Optional[int] = None
    queue: Optional[str] = None
    connection: Optional[str] = None
    on_then: List[CallbackRef] = Field(default_factory=list)
    on_catch: List[CallbackRef] = Field(default_factory=list)
    on_finally: List[CallbackRef] = Field(default_factory=list)
    on_paused: List[CallbackRef] = Field(default_factory=list)
    global_middleware: List[SerializedObject] = Field(default_factory=list)
    allow_failures: bool = False
    data: Dict[str, Any] = Field(default_factory=dict)
    failure: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    last_processed_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _resume_at_only_while_paused(self) -> "Chain":
        if (self.status == ChainStatus.PAUSED) != (self.resume_at is not None):
            raise ValueError("resume_at must be set if and only if the chain is paused")
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def _ensure_not_terminal(self, target: ChainStatus) -> None:
        if self.is_terminal:
            raise InvalidTransitionError(
                f"Chain {self.id} is {self.status.value} and cannot become {target.value}"
            )

    def mark_running(self) -> None:
        self._ensure_not_terminal(ChainStatus.RUNNING)
        self.status = ChainStatus.RUNNING
        self.resume_at = None
        if self.started_at is None:
            self.started_at = utcnow()

    def mark_paused(self, resume_at: datetime) -> None:
        self._ensure_not_terminal(ChainStatus.PAUSED)
        if self.status != ChainStatus.RUNNING:
            raise InvalidTransitionError(
                f"Only running chains can pause, chain {self.id} is {self.status.value}"
            )
        self.status = ChainStatus.PAUSED
        self.resume_at = resume_at

    def mark_finished(self) -> None:
        self._ensure_not_terminal(ChainStatus.FINISHED)
        self.status = ChainStatus.FINISHED
        self.resume_at = None
        self.finished_at = utcnow()

    def mark_failed(self, detail: Optional[str] = None) -> None:
        self._ensure_not_terminal(ChainStatus.FAILED)
        self.status = ChainStatus.FAILED
        self.resume_at = None
        self.failure = detail
        self.finished_at = utcnow()


class Step(BaseModel):
    """One persisted unit of work belonging to a chain."""

    id: Optional[int] = None
    chain_id: str
    order: int
    job: SerializedObject
    delay: Optional[int] = None
    queue: Optional[str] = None
    connection: Optional[str] = None
    attempts: int = 0
    created_at: datetime = Field(default_factory=utcnow)

    def effective_delay(self, chain: Chain) -> int:
        if self.delay is not None:
            return self.delay
        return chain.delay or 0

    def effective_queue(self, chain: Chain) -> Optional[str]:
        return self.queue if self.queue is not None else chain.queue

    def effective_connection(self, chain: Chain) -> Optional[str]:
        return self.connection if self.connection is not None else chain.connection


class StepMessage(BaseModel):
    """
    Envelope submitted to the work queue. Carries exactly one step.
    """

    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    chain_id: str
    step_id: int
    order: int
    job: SerializedObject
    middleware: List[SerializedObject] = Field(default_factory=list)
    queue: str
    connection: Optional[str] = None
    delay: int = 0
    timestamp: datetime = Field(default_factory=utcnow)

    @property
    def available_at(self) -> datetime:
        return self.timestamp + timedelta(seconds=self.delay)

    def to_json(self) -> str:
        """Serialize message to JSON."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "StepMessage":
        """Deserialize message from JSON."""
        return cls.model_validate_json(data)
