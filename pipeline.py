"""Mission pipeline projection.

The projector is a finite-state machine over mission stages. It is driven by
domain events and schedules its own dwell timers: an execution stage without a
matching tool end relaxes into reflection, reflection and delivery relax into
idle. Every stage change cancels the outstanding timer and bumps a generation
counter; a timer only applies when the generation and stage it captured are
still current.

The projector does no locking of its own. ``Observatory`` serializes calls
into it and wraps ``defer`` so timer callbacks run under the same lock.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from enum import Enum
from typing import Any, Callable, Optional

from approvals import ApprovalLedger, ApprovalRequest
from events import (
    ApprovalRequested,
    ApprovalResolved,
    RunFinished,
    ToolEnded,
    ToolStarted,
    UserMessage,
)

ROSTER = {
    'celebrimbor': {'model': 'minimax-m2.5:cloud', 'color': 'var(--accent-cyan)'},
    'samwise': {'model': 'gemini-3-flash', 'color': '#00ff88'},
    'legolas': {'model': 'gemini-3-flash', 'color': 'var(--accent-red)'},
    'elrond': {'model': 'mxbai-embed-large', 'color': 'var(--accent-gold)'},
}
DEFAULT_AGENT = 'celebrimbor'

ACTIVITY_LIMIT = 10
EXECUTION_DWELL_SEC = 3.0
REFLECTION_DWELL_SEC = 4.0
DELIVERY_DWELL_SEC = 5.0

IDLE_TASK = 'Idle'
DEFAULT_COMMAND = 'Monitoring system pulse...'
DEFAULT_ASSIGNMENT = 'Observing the council'


class Stage(str, Enum):
    IDLE = 'idle'
    CONSULTATION = 'consultation'
    ASSIGNMENT = 'assignment'
    EXECUTION = 'execution'
    REFLECTION = 'reflection'
    DELIVERY = 'delivery'


def coerce_agent(name):
    """Map an agent identifier onto the roster, falling back to the default agent."""
    key = str(name or '').strip().lower()
    return key if key in ROSTER else DEFAULT_AGENT


def thread_timer(delay, callback):
    timer = threading.Timer(delay, callback)
    timer.daemon = True
    timer.start()
    return timer


class PipelineProjector:
    def __init__(
        self,
        ledger: ApprovalLedger,
        defer: Optional[Callable[[float, Callable[[], bool]], Any]] = None,
        execution_dwell: float = EXECUTION_DWELL_SEC,
        reflection_dwell: float = REFLECTION_DWELL_SEC,
        delivery_dwell: float = DELIVERY_DWELL_SEC,
    ):
        self.ledger = ledger
        self._defer = defer or thread_timer
        self.execution_dwell = execution_dwell
        self.reflection_dwell = reflection_dwell
        self.delivery_dwell = delivery_dwell

        self.stage = Stage.IDLE
        self.generation = 0
        self._timer = None
        self._executing = None
        self.workforce = {
            agent: {'task': IDLE_TASK, 'active': False, 'model': meta['model'], 'color': meta['color']}
            for agent, meta in ROSTER.items()
        }
        self.narrative = {
            'command': DEFAULT_COMMAND,
            'assignment': DEFAULT_ASSIGNMENT,
            'attention': False,
        }
        self.activity = deque(maxlen=ACTIVITY_LIMIT)

    # -- stage bookkeeping -------------------------------------------------

    def _cancel_timer(self):
        if self._timer is not None:
            try:
                self._timer.cancel()
            except Exception as e:
                print(f'[PIPELINE] Failed to cancel dwell timer: {e}')
            self._timer = None

    def _release_executing(self):
        """Return the agent busy in the outgoing execution stage to idle."""
        if self._executing is None:
            return
        status = self.workforce[self._executing]
        status['task'] = IDLE_TASK
        status['active'] = False
        self._executing = None

    def _enter(self, stage):
        # leaving execution by any path must not strand its agent as active
        self._release_executing()
        self._cancel_timer()
        self.generation += 1
        self.stage = stage

    def _schedule(self, delay, expected, on_expire):
        """Arm a dwell timer that only fires while ``expected`` is still the live stage."""
        generation = self.generation

        def fire():
            if self.generation != generation or self.stage is not expected:
                return False
            self._timer = None
            on_expire()
            return True

        self._timer = self._defer(delay, fire)

    def _settle_idle(self):
        self._enter(Stage.IDLE)
        for status in self.workforce.values():
            status['task'] = IDLE_TASK
            status['active'] = False
        self.narrative['assignment'] = DEFAULT_ASSIGNMENT
        self.narrative['attention'] = len(self.ledger) > 0

    def _reflect(self, agent):
        self.workforce[agent]['active'] = False
        self._enter(Stage.REFLECTION)
        self._schedule(self.reflection_dwell, Stage.REFLECTION, self._settle_idle)

    # -- event handlers ----------------------------------------------------

    def apply(self, event) -> bool:
        """Project one domain event. Returns True when the state changed."""
        if isinstance(event, ToolStarted):
            self._on_tool_started(event)
        elif isinstance(event, ToolEnded):
            self._reflect(coerce_agent(event.agent))
        elif isinstance(event, UserMessage):
            self._enter(Stage.CONSULTATION)
            self.narrative['command'] = 'Operator has spoken. Consulting the council...'
        elif isinstance(event, RunFinished):
            self._on_run_finished()
        elif isinstance(event, ApprovalRequested):
            self._on_approval_requested(event)
        elif isinstance(event, ApprovalResolved):
            self._on_approval_resolved(event)
        else:
            return False
        return True

    def submit_mission(self, agent_id, command):
        agent = coerce_agent(agent_id)
        self._enter(Stage.CONSULTATION)
        self.narrative['command'] = str(command or '').strip() or DEFAULT_COMMAND
        self.narrative['assignment'] = f'Mission routed to {agent.upper()}.'

    def _on_tool_started(self, event):
        agent = coerce_agent(event.agent)
        self._enter(Stage.EXECUTION)
        status = self.workforce[agent]
        status['task'] = f'Executing {event.tool}...'
        status['active'] = True
        self._executing = agent
        self.narrative['assignment'] = f'{agent.upper()} is busy at the forge.'
        self.activity.appendleft({
            'user': agent,
            'skill': event.tool,
            'target': event.target,
            'summary': f'System action: {event.tool}',
            'model': status['model'],
            'time': time.strftime('%H:%M:%S'),
            'color': status['color'],
        })
        self._schedule(self.execution_dwell, Stage.EXECUTION, lambda: self._reflect(agent))

    def _on_run_finished(self):
        self._enter(Stage.DELIVERY)
        self.ledger.clear()
        self.narrative['attention'] = False
        self._schedule(self.delivery_dwell, Stage.DELIVERY, self._settle_idle)

    def _on_approval_requested(self, event):
        if event.id:
            self.ledger.upsert(ApprovalRequest(id=event.id, command=event.command or 'Restricted system action'))
            self.narrative['assignment'] = 'Gate closed: waiting for the operator mark...'
        else:
            self.narrative['assignment'] = 'Gate closed: pending operator approval...'
        self._enter(Stage.ASSIGNMENT)
        self.narrative['attention'] = True

    def _on_approval_resolved(self, event):
        self.ledger.remove(event.id)
        if event.allowed:
            self.narrative['assignment'] = 'Operator mark received. Proceeding.'
        else:
            self.narrative['assignment'] = 'Entry denied. Task aborted.'
        self.narrative['attention'] = len(self.ledger) > 0

    def snapshot(self) -> dict[str, Any]:
        return {
            'pipeline': {'stage': self.stage.value, 'generation': self.generation},
            'workforce': {agent: dict(status) for agent, status in self.workforce.items()},
            'narrative': dict(self.narrative),
            'activity': [dict(entry) for entry in self.activity],
        }
