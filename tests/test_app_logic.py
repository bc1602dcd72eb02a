import io
import json
from types import SimpleNamespace
from urllib.error import HTTPError, URLError

import pytest

import app as dashboard_app
import mcp_server
import reader
from events import ApprovalRequested, ToolStarted
from gateway import GatewayTimeout
from observatory import Observatory


class FakeGateway:
    def __init__(self, error=None, connected=True):
        self.calls = []
        self.error = error
        self.connected = connected

    def call(self, method, params=None, timeout=None):
        self.calls.append((method, params))
        if self.error is not None:
            raise self.error
        return {'ok': True}


@pytest.fixture
def observatory(monkeypatch, scheduler):
    fresh = Observatory(on_change=dashboard_app.hub.publish, scheduler=scheduler)
    monkeypatch.setattr(dashboard_app, 'observatory', fresh)
    return fresh


def test_ready_endpoint_reports_log_and_gateway(monkeypatch, tmp_path):
    monkeypatch.setattr(dashboard_app.tailer, 'directory', str(tmp_path))
    monkeypatch.setattr(dashboard_app, 'gateway', FakeGateway(connected=False))
    client = dashboard_app.app.test_client()

    payload = client.get('/ready').get_json()
    assert payload['ready'] is True
    assert payload['log_present'] is False
    assert payload['gateway_connected'] is False
    assert payload['log_path'].startswith(str(tmp_path))

    with open(payload['log_path'], 'w', encoding='utf-8') as f:
        f.write('')
    assert client.get('/ready').get_json()['log_present'] is True


def test_state_endpoint_returns_full_snapshot(observatory):
    observatory.dispatch(ToolStarted(agent='samwise', tool='exec'))
    client = dashboard_app.app.test_client()

    response = client.get('/state')
    assert response.status_code == 200
    payload = response.get_json()
    for key in ('pipeline', 'workforce', 'narrative', 'activity', 'approvals', 'approval_pending', 'usage', 'vitals'):
        assert key in payload
    assert payload['pipeline']['stage'] == 'execution'
    assert payload['workforce']['samwise']['active'] is True


def test_approvals_endpoint_lists_most_recent_first(observatory):
    observatory.dispatch(ApprovalRequested(id='a', command='one'))
    observatory.dispatch(ApprovalRequested(id='b', command='two'))

    payload = dashboard_app.app.test_client().get('/approvals').get_json()
    assert [row['id'] for row in payload['pending']] == ['b', 'a']
    assert payload['most_recent']['id'] == 'b'


def test_compute_token_usage_accepts_both_status_shapes():
    assert dashboard_app.compute_token_usage({'sessions': [{'tokens': {'total': 1200}}, {'tokens': {'total': 300}}, 'bad']}) == 1500
    assert dashboard_app.compute_token_usage({'sessions': {'recent': [{'totalTokens': 50}, {'totalTokens': 'x'}, {}]}}) == 50
    assert dashboard_app.compute_token_usage({'sessions': None}) == 0
    assert dashboard_app.compute_token_usage(None) == 0


def test_refresh_usage_updates_corruption_level(monkeypatch, observatory):
    monkeypatch.setattr(dashboard_app, 'run_openclaw_json', lambda _args: {'sessions': [{'tokens': {'total': 250000}}]})
    assert dashboard_app.refresh_usage() is True
    usage = observatory.snapshot()['usage']
    assert usage['total_tokens'] == 250000
    assert usage['corruption_level'] == 25.0

    monkeypatch.setattr(dashboard_app, 'run_openclaw_json', lambda _args: None)
    assert dashboard_app.refresh_usage() is False
    assert observatory.snapshot()['usage']['total_tokens'] == 250000

    observatory.update_usage(5000000)
    assert observatory.snapshot()['usage']['corruption_level'] == 100.0


def test_sample_host_load_scales_by_cpu_and_tolerates_errors(monkeypatch):
    monkeypatch.setattr(dashboard_app.os, 'getloadavg', lambda: (2.0, 1.0, 0.5))
    monkeypatch.setattr(dashboard_app.os, 'cpu_count', lambda: 4)
    assert dashboard_app.sample_host_load() == 50

    monkeypatch.setattr(dashboard_app.os, 'getloadavg', lambda: (64.0, 1.0, 0.5))
    assert dashboard_app.sample_host_load() == 100

    def unavailable():
        raise OSError('no load average')

    monkeypatch.setattr(dashboard_app.os, 'getloadavg', unavailable)
    assert dashboard_app.sample_host_load() == 0


def test_resolve_approval_removes_entry_only_after_gateway_ack(monkeypatch, observatory):
    fake = FakeGateway()
    monkeypatch.setattr(dashboard_app, 'gateway', fake)
    observatory.dispatch(ApprovalRequested(id='req-9', command='ls'))

    ok, error = dashboard_app.resolve_approval('req-9', True)

    assert (ok, error) == (True, None)
    assert fake.calls == [('exec.approval.resolve', {'id': 'req-9', 'decision': 'allow-once'})]
    snap = observatory.snapshot()
    assert snap['approvals'] == []
    assert snap['narrative']['assignment'] == 'Operator mark received. Proceeding.'


def test_resolve_approval_failure_keeps_entry_pending(monkeypatch, observatory):
    monkeypatch.setattr(dashboard_app, 'gateway', FakeGateway(error=GatewayTimeout('exec.approval.resolve timed out')))
    observatory.dispatch(ApprovalRequested(id='req-9', command='ls'))

    ok, error = dashboard_app.resolve_approval('req-9', False)

    assert ok is False
    assert 'timed out' in error
    assert [row['id'] for row in observatory.snapshot()['approvals']] == ['req-9']


def test_resolve_handler_reports_failure_to_requesting_observer(monkeypatch, observatory):
    emitted = []
    monkeypatch.setattr(dashboard_app, 'gateway', FakeGateway(error=GatewayTimeout('timed out')))
    monkeypatch.setattr(dashboard_app, 'request', SimpleNamespace(sid='sid-1'))
    monkeypatch.setattr(dashboard_app.socketio, 'emit', lambda event, payload, to=None: emitted.append((event, payload, to)))

    dashboard_app.handle_resolve_approval({'id': 'req-1', 'allow': True})
    dashboard_app.handle_resolve_approval({'allow': True})
    dashboard_app.handle_resolve_approval('garbage')

    assert emitted == [('approval-error', {'id': 'req-1', 'error': 'timed out'}, 'sid-1')]


def test_resolve_handler_sends_deny_decision(monkeypatch, observatory):
    fake = FakeGateway()
    monkeypatch.setattr(dashboard_app, 'gateway', fake)

    dashboard_app.handle_resolve_approval({'id': 7, 'allow': False})

    assert fake.calls == [('exec.approval.resolve', {'id': '7', 'decision': 'deny'})]


def test_submit_mission_handler_injects_consultation(observatory):
    dashboard_app.handle_submit_mission({'agentId': 'legolas', 'command': 'Look for KEV additions'})
    dashboard_app.handle_submit_mission({'agentId': 'legolas', 'command': '   '})
    dashboard_app.handle_submit_mission(None)

    snap = observatory.snapshot()
    assert snap['pipeline']['stage'] == 'consultation'
    assert snap['narrative']['command'] == 'Look for KEV additions'


def test_new_observer_receives_snapshot_on_connect(observatory):
    observatory.dispatch(ApprovalRequested(id='req-3', command='rm'))
    client = dashboard_app.socketio.test_client(dashboard_app.app)
    try:
        received = client.get_received()
    finally:
        client.disconnect()

    telemetry = [packet for packet in received if packet['name'] == 'telemetry']
    assert len(telemetry) == 1
    assert telemetry[0]['args'][0]['approval_pending']['id'] == 'req-3'


def test_log_lines_flow_through_to_published_snapshot(observatory):
    dashboard_app.hub._take()
    observatory.ingest_line(json.dumps({'0': 'Calling tool exec', '_meta': {'name': 'main'}}))

    published = dashboard_app.hub._take()
    assert published['pipeline']['stage'] == 'execution'
    assert published['activity'][0]['user'] == 'samwise'

    assert observatory.ingest_line('nothing to see') is False
    assert dashboard_app.hub._take() is None


def test_gateway_events_feed_the_ledger(observatory):
    observatory.ingest_gateway_event('exec.approval.requested', {'id': 'g1', 'request': {'command': 'ls'}})
    assert observatory.approvals()['most_recent']['id'] == 'g1'

    observatory.ingest_gateway_event('exec.approval.resolved', {'id': 'g1', 'decision': 'deny'})
    assert observatory.approvals() == {'pending': [], 'most_recent': None}


class FakeResponse(io.BytesIO):
    status = 200

    class headers:
        @staticmethod
        def get_content_charset():
            return 'utf-8'

    def __enter__(self):
        return self

    def __exit__(self, *_args):
        self.close()


def test_mcp_tools_wrap_http_endpoints(monkeypatch):
    bodies = {
        '/approvals': {'pending': [{'id': 'a'}], 'most_recent': {'id': 'a'}},
        '/state': {
            'pipeline': {'stage': 'execution'},
            'activity': [{'user': 'samwise', 'skill': 'exec'}, {'user': 'legolas', 'skill': 'web'}],
        },
    }
    requested = []

    def fake_urlopen(request, timeout=None):
        path = request.full_url[len(mcp_server.BASE_URL):]
        requested.append(path)
        return FakeResponse(json.dumps(bodies[path]).encode('utf-8'))

    monkeypatch.setattr(mcp_server, 'urlopen', fake_urlopen)

    approvals = mcp_server.pending_approvals()
    assert approvals['ok'] is True
    assert approvals['data']['most_recent'] == {'id': 'a'}

    activity = mcp_server.activity_log(agent='Legolas')
    assert activity['data'] == {'activity': [{'user': 'legolas', 'skill': 'web'}], 'stage': 'execution'}

    state = mcp_server.observatory_state(include_activity=False)
    assert 'activity' not in state['data']
    assert requested == ['/approvals', '/state', '/state']


def test_mcp_tools_report_connection_errors(monkeypatch):
    def refuse(_request, timeout=None):
        raise URLError('connection refused')

    monkeypatch.setattr(mcp_server, 'urlopen', refuse)

    payload = mcp_server.observatory_ready()
    assert payload['ok'] is False
    assert payload['error'] == 'Connection error'
    assert mcp_server.activity_log()['ok'] is False


def test_reader_describes_matching_lines_only():
    assert reader.describe_line('Run completed').startswith('run-finished')
    assert 'ToolStarted' in reader.describe_line('[tools] exec')
    assert reader.describe_line('heartbeat') is None


def test_mcp_http_errors_carry_response_body(monkeypatch):
    def unavailable(request, timeout=None):
        raise HTTPError(request.full_url, 503, 'Service Unavailable', None, io.BytesIO(b'gateway warming up'))

    monkeypatch.setattr(mcp_server, 'urlopen', unavailable)

    payload = mcp_server.pending_approvals()
    assert payload['ok'] is False
    assert payload['status_code'] == 503
    assert payload['error'] == 'HTTP error 503'
    assert payload['details'] == 'gateway warming up'


class ExplodingGateway(FakeGateway):
    def expire_overdue(self):
        raise RuntimeError('call table corrupted')


def test_reaper_survives_expiry_errors(monkeypatch):
    monkeypatch.setattr(dashboard_app, 'gateway', ExplodingGateway())
    assert dashboard_app.reap_overdue_calls() == 0


def test_reaper_reports_expired_calls(monkeypatch):
    fake = FakeGateway()
    fake.expire_overdue = lambda: 2
    monkeypatch.setattr(dashboard_app, 'gateway', fake)
    assert dashboard_app.reap_overdue_calls() == 2
