"""Log line to domain event extraction.

Each raw line goes through two tiers:

1. a structured parse of a single JSON object, pulling out the message text,
   the subsystem tag, the record kind and an agent hint;
2. the ordered ``RULES`` table, evaluated top to bottom. The first rule that
   produces an event wins and later rules are never consulted for that line.

Rule order (this is the tie-break contract for lines that match several):

    1. exec-approval        structured gateway/exec-approvals record with an id
    2. approval-required    "Approval required" / "Permission requested"
    3. approval-resolved    "Approval granted|denied|resolved" with an id, kind=approval_resolved
    4. tool-start           "Calling tool X", "[tools] X", kind=tool_start
    5. tool-end             "Tool finished|completed", "tool_end", kind=tool_end
    6. user-message         "Received message", "user_message", kind=user_message
    7. run-finished         "Run completed", "run_finish", kind=run_finish

Malformed JSON never raises; the raw line simply goes through tier 2 as text.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from events import (
    ApprovalRequested,
    ApprovalResolved,
    RunFinished,
    ToolEnded,
    ToolStarted,
    UserMessage,
)
from pipeline import DEFAULT_AGENT, ROSTER

EXEC_APPROVALS_SUBSYSTEM = 'gateway/exec-approvals'

# checked in order; auditor wins over main when both appear in one hint
AGENT_ALIASES = (
    ('auditor', 'celebrimbor'),
    ('main', 'samwise'),
)

APPROVAL_REQUIRED_RE = re.compile(r'Approval required|Permission requested')
APPROVAL_RESOLVED_RE = re.compile(r'Approval (granted|denied|resolved)', re.I)
APPROVAL_ID_RE = re.compile(r'(?:ID|id): ([\w-]+)')
DECISION_RE = re.compile(r'decision[=:]\s*([\w-]+)', re.I)
CALLING_TOOL_RE = re.compile(r'Calling tool (\w+)')
TOOLS_TAG_RE = re.compile(r'\[tools\] (\w+)')
TOOL_END_RE = re.compile(r'Tool (?:finished|completed)|tool_end')

TARGET_PREVIEW_LEN = 40


@dataclass
class LogRecord:
    raw: str
    message: str = ''
    subsystem: str = ''
    kind: str = ''
    agent: str = DEFAULT_AGENT
    structured: bool = False
    fields: dict = field(default_factory=dict)

    @property
    def text(self) -> str:
        """Text used for pattern rules: the extracted message, else the raw line."""
        return self.message or self.raw


@dataclass(frozen=True)
class Rule:
    name: str
    build: Callable[[LogRecord], Optional[Any]]


def _as_text(value):
    if value is None:
        return ''
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, ensure_ascii=False)
    except (TypeError, ValueError):
        return str(value)


def _match_agent(hint):
    low = str(hint or '').lower()
    if not low:
        return None
    for name in ROSTER:
        if re.search(rf'(?<![a-z0-9]){re.escape(name)}(?![a-z0-9])', low):
            return name
    for alias, agent in AGENT_ALIASES:
        if re.search(rf'(?<![a-z0-9]){re.escape(alias)}(?![a-z0-9])', low):
            return agent
    return None


def resolve_agent(identity_hint, message):
    """Resolve an agent: explicit identity field, then message keywords, then the default."""
    return _match_agent(identity_hint) or _match_agent(message) or DEFAULT_AGENT


def parse_record(raw_line) -> LogRecord:
    """Tier 1: structured parse with a text fallback for anything that is not a JSON object."""
    line = str(raw_line or '').strip()
    try:
        payload = json.loads(line)
    except ValueError:
        payload = None
    if not isinstance(payload, dict):
        return LogRecord(raw=line, message=line, agent=resolve_agent('', line))

    message = ''
    for key in ('0', '2', 'msg', 'message'):
        message = _as_text(payload.get(key))
        if message:
            break

    meta = payload.get('_meta') if isinstance(payload.get('_meta'), dict) else {}
    identity = ' '.join(
        _as_text(value)
        for value in (meta.get('name'), payload.get('agentId'), payload.get('agent'), payload.get('sessionKey'))
        if value
    )
    return LogRecord(
        raw=line,
        message=message,
        subsystem=_as_text(payload.get('subsystem')),
        kind=_as_text(payload.get('kind')),
        agent=resolve_agent(identity, message),
        structured=True,
        fields=payload,
    )


# -- tier 2 rules ------------------------------------------------------------

def _exec_approval(record):
    if not record.structured or record.subsystem != EXEC_APPROVALS_SUBSYSTEM:
        return None
    request_id = record.fields.get('id') or record.fields.get('requestId')
    if not request_id:
        return None
    command = _as_text(record.fields.get('command')) or record.message or 'Restricted system action'
    return ApprovalRequested(id=str(request_id), command=command)


def _approval_required(record):
    text = record.text
    if not APPROVAL_REQUIRED_RE.search(text):
        return None
    match = APPROVAL_ID_RE.search(text)
    return ApprovalRequested(id=match.group(1) if match else None, command=text)


def _approval_resolved(record):
    if record.kind == 'approval_resolved':
        request_id = record.fields.get('id') or record.fields.get('requestId')
        if request_id:
            decision = _as_text(record.fields.get('decision')) or 'allow-once'
            return ApprovalResolved(id=str(request_id), decision=decision)
        return None
    text = record.text
    verdict = APPROVAL_RESOLVED_RE.search(text)
    if not verdict:
        return None
    match = APPROVAL_ID_RE.search(text)
    if not match:
        return None
    explicit = DECISION_RE.search(text)
    if explicit:
        decision = explicit.group(1).lower()
    else:
        decision = 'deny' if verdict.group(1).lower() == 'denied' else 'allow-once'
    return ApprovalResolved(id=match.group(1), decision=decision)


def _tool_target(record):
    value = record.fields.get('1') if record.structured else None
    if not value:
        return 'active pulse'
    return _as_text(value)[:TARGET_PREVIEW_LEN]


def _tool_start(record):
    text = record.text
    tool = None
    if 'Calling tool' in text:
        match = CALLING_TOOL_RE.search(text)
        tool = match.group(1) if match else 'tool'
    elif '[tools]' in text:
        match = TOOLS_TAG_RE.search(text)
        tool = match.group(1) if match else 'tool'
    elif record.kind == 'tool_start':
        tool = _as_text(record.fields.get('tool')) or 'process'
    if tool is None:
        return None
    return ToolStarted(agent=record.agent, tool=tool, target=_tool_target(record))


def _tool_end(record):
    if record.kind == 'tool_end' or TOOL_END_RE.search(record.text):
        return ToolEnded(agent=record.agent)
    return None


def _user_message(record):
    text = record.text
    if 'Received message' in text or 'user_message' in text or record.kind == 'user_message':
        return UserMessage(text=record.message, agent=record.agent)
    return None


def _run_finished(record):
    text = record.text
    if 'Run completed' in text or 'run_finish' in text or record.kind == 'run_finish':
        return RunFinished()
    return None


RULES = (
    Rule('exec-approval', _exec_approval),
    Rule('approval-required', _approval_required),
    Rule('approval-resolved', _approval_resolved),
    Rule('tool-start', _tool_start),
    Rule('tool-end', _tool_end),
    Rule('user-message', _user_message),
    Rule('run-finished', _run_finished),
)


class EventExtractor:
    def __init__(self, rules=RULES):
        self.rules = tuple(rules)

    def match(self, raw_line):
        """Return ``(rule_name, event)`` for the first matching rule, or ``(None, None)``."""
        if not str(raw_line or '').strip():
            return None, None
        record = parse_record(raw_line)
        for rule in self.rules:
            event = rule.build(record)
            if event is not None:
                return rule.name, event
        return None, None

    def extract(self, raw_line):
        return self.match(raw_line)[1]


def event_from_gateway(name, data):
    """Translate an unsolicited gateway event envelope into a domain event."""
    if not isinstance(data, dict):
        return None
    request_id = data.get('id') or data.get('requestId')
    if not request_id:
        return None
    if name == 'exec.approval.requested':
        request = data.get('request') if isinstance(data.get('request'), dict) else {}
        command = _as_text(request.get('command') or data.get('command')) or 'Restricted system action'
        return ApprovalRequested(id=str(request_id), command=command)
    if name == 'exec.approval.resolved':
        return ApprovalResolved(id=str(request_id), decision=_as_text(data.get('decision')) or 'allow-once')
    return None
