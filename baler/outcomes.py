"""Signals accepted by :meth:`baler.engine.ChainEngine.advance`."""

from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional, Union

from pydantic import BaseModel

from .models import SerializedObject


class Started(BaseModel):
    kind: Literal["started"] = "started"


class Completed(BaseModel):
    kind: Literal["completed"] = "completed"
    step_id: int


class Failed(BaseModel):
    kind: Literal["failed"] = "failed"
    step_id: Optional[int] = None
    error: Optional[str] = None


class Paused(BaseModel):
    """Park the chain until ``resume_at``.

    With ``advance=False`` the signalling step stays at the head and runs
    again on resume. With ``advance=True`` it is deleted first, so the
    following step runs on resume.
    """

    kind: Literal["paused"] = "paused"
    step_id: int
    resume_at: datetime
    advance: bool = False


class Appended(BaseModel):
    kind: Literal["appended"] = "appended"
    job: SerializedObject
    delay: Optional[int] = None
    queue: Optional[str] = None
    connection: Optional[str] = None


class Resumed(BaseModel):
    """Re-dispatch the head of a paused chain.

    The chain must be due at ``now`` (defaults to the current time) unless
    ``force`` is set, which lets an explicit resume ignore ``resume_at``.
    """

    kind: Literal["resumed"] = "resumed"
    force: bool = False
    now: Optional[datetime] = None


Outcome = Union[Started, Completed, Failed, Paused, Appended, Resumed]

