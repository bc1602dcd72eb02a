"""Typed domain events extracted from the OpenClaw log and gateway stream."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union


@dataclass(frozen=True)
class ToolStarted:
    agent: str
    tool: str
    target: str = 'active pulse'


@dataclass(frozen=True)
class ToolEnded:
    agent: str


@dataclass(frozen=True)
class UserMessage:
    text: str = ''
    agent: Optional[str] = None


@dataclass(frozen=True)
class RunFinished:
    pass


@dataclass(frozen=True)
class ApprovalRequested:
    # id is None for free-text approval lines that carry no identifier
    id: Optional[str]
    command: str = ''


@dataclass(frozen=True)
class ApprovalResolved:
    id: str
    decision: str = 'allow-once'

    @property
    def allowed(self) -> bool:
        return self.decision.startswith('allow') or self.decision in {'approve', 'approved'}


DomainEvent = Union[ToolStarted, ToolEnded, UserMessage, RunFinished, ApprovalRequested, ApprovalResolved]
