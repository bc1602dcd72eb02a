"""OpenClaw Mission Control backend.

Projects the OpenClaw gateway log into a live "current activity" view and relays
operator approval decisions back to the gateway. It combines incremental log
tailing, a timed mission pipeline, a bounded approval ledger and a reconnecting
control-channel client, and fans the resulting state out to Socket.IO observers.
"""

from flask import Flask, request
from flask_socketio import SocketIO
import threading
import json
import os
import shutil
import subprocess

from events import ApprovalResolved
from gateway import GatewayError, GatewayRpcClient
from hub import ObserverHub
from observatory import Observatory
from tailer import LogTailer

app = Flask(__name__)
socketio = SocketIO(app, cors_allowed_origins="*")


def _env_float(name, default):
    try:
        return float(os.environ.get(name, default))
    except (TypeError, ValueError):
        return float(default)


LOG_DIR = os.environ.get('OPENCLAW_LOG_DIR', '/tmp/openclaw')
LOG_PREFIX = os.environ.get('OPENCLAW_LOG_PREFIX', 'openclaw')
GATEWAY_URL = os.environ.get(
    'OPENCLAW_GATEWAY_URL',
    f"ws://127.0.0.1:{os.environ.get('OPENCLAW_GATEWAY_PORT', '18789')}",
)
GATEWAY_TOKEN = os.environ.get('OPENCLAW_GATEWAY_TOKEN', '')
PORT = int(_env_float('MISSION_CONTROL_PORT', 8888))
TAIL_POLL_SEC = max(0.1, _env_float('MISSION_CONTROL_TAIL_POLL_SEC', 0.5))
VITALS_POLL_SEC = max(1.0, _env_float('MISSION_CONTROL_VITALS_SEC', 5))
USAGE_POLL_SEC = max(5.0, _env_float('MISSION_CONTROL_USAGE_SEC', 60))
RPC_TIMEOUT_SEC = max(0.5, _env_float('MISSION_CONTROL_RPC_TIMEOUT_SEC', 10))
RECONNECT_DELAY_SEC = max(0.5, _env_float('MISSION_CONTROL_RECONNECT_SEC', 3))
REPLAY_LOG = os.environ.get('MISSION_CONTROL_REPLAY_LOG', '0').strip() == '1'

APPROVAL_RESOLVE_METHOD = 'exec.approval.resolve'
APPROVAL_ERROR_EVENT = 'approval-error'

hub = ObserverHub(socketio)
observatory = Observatory(on_change=hub.publish)
tailer = LogTailer(LOG_DIR, LOG_PREFIX, observatory.ingest_line, from_end=not REPLAY_LOG)
gateway = GatewayRpcClient(
    GATEWAY_URL,
    token=GATEWAY_TOKEN,
    on_event=observatory.ingest_gateway_event,
    call_timeout=RPC_TIMEOUT_SEC,
    reconnect_delay=RECONNECT_DELAY_SEC,
)

workers_started = False
bootstrap_lock = threading.Lock()
stop_workers = threading.Event()


@app.route('/ready')
def ready():
    """Report log availability and control-channel connectivity."""
    log_path = tailer.resolve_path()
    return {
        'ready': True,
        'log_path': log_path,
        'log_present': os.path.exists(log_path),
        'gateway_connected': gateway.connected,
    }


@app.route('/state')
def state():
    """Return the full observatory snapshot, as broadcast to observers."""
    return observatory.snapshot()


@app.route('/approvals')
def approvals():
    """Return the pending approval ledger, most recent first."""
    return observatory.approvals()


def sample_host_load():
    """Return the 1-minute load average as a percentage of available CPUs."""
    try:
        load = os.getloadavg()[0]
    except (AttributeError, OSError):
        return 0
    cpu_count = os.cpu_count() or 1
    return min(100, round((load / cpu_count) * 100))


def run_openclaw_json(args):  # pragma: no cover
    """Execute OpenClaw CLI command and parse JSON output safely."""
    if shutil.which('openclaw') is None:
        return None
    try:
        cmd = ['openclaw'] + args + ['--json']
        res = subprocess.run(cmd, capture_output=True, text=True, timeout=8)
        if res.returncode != 0:
            return None
        payload = (res.stdout or '').strip()
        if not payload:
            return None
        return json.loads(payload)
    except (OSError, subprocess.SubprocessError, ValueError) as e:
        print(f'[USAGE] openclaw {" ".join(args)} failed: {e}')
        return None


def compute_token_usage(status_payload):
    """Sum session token totals from an ``openclaw status --json`` payload."""
    if not isinstance(status_payload, dict):
        return 0
    sessions = status_payload.get('sessions')
    if isinstance(sessions, dict):
        sessions = sessions.get('recent')
    if not isinstance(sessions, list):
        return 0

    total = 0
    for session in sessions:
        if not isinstance(session, dict):
            continue
        tokens = session.get('tokens')
        if isinstance(tokens, dict) and isinstance(tokens.get('total'), (int, float)):
            total += tokens['total']
        elif isinstance(session.get('totalTokens'), (int, float)):
            total += session['totalTokens']
    return int(total)


def refresh_usage():
    payload = run_openclaw_json(['status'])
    if payload is None:
        return False
    observatory.update_usage(compute_token_usage(payload))
    return True


def resolve_approval(approval_id, allow):
    """Forward an operator decision to the gateway.

    The ledger entry is only removed once the gateway acknowledges the
    resolution. Returns ``(ok, error_text)``.
    """
    decision = 'allow-once' if allow else 'deny'
    try:
        gateway.call(APPROVAL_RESOLVE_METHOD, {'id': approval_id, 'decision': decision})
    except GatewayError as e:
        print(f'[GATEWAY] Approval {approval_id} not resolved: {e}')
        return False, str(e)
    print(f'[GATEWAY] Approval {approval_id} resolved: {decision}')
    observatory.dispatch(ApprovalResolved(id=approval_id, decision=decision))
    return True, None


@socketio.on('connect')
def handle_connect():
    """Push one full snapshot to the newly connected observer."""
    print('Client connected to mission control')
    hub.send_to(request.sid, observatory.snapshot())


@socketio.on('disconnect')
def handle_disconnect(*_args):
    print('Client disconnected')


@socketio.on('submit-mission')
def handle_submit_mission(data):
    """Inject a free-text mission from an observer as a user message."""
    if not isinstance(data, dict):
        return
    command = str(data.get('command') or '').strip()
    if not command:
        print('[HUB] Ignoring empty mission')
        return
    print(f"[HUB] Mission for {data.get('agentId') or 'default agent'}: {command[:80]}")
    observatory.submit_mission(data.get('agentId'), command)


@socketio.on('resolve-approval')
def handle_resolve_approval(data):
    """Relay an allow/deny decision for one approval id to the gateway."""
    if not isinstance(data, dict) or not data.get('id'):
        print(f'[HUB] Ignoring malformed approval decision: {data!r}')
        return
    approval_id = str(data.get('id'))
    ok, error = resolve_approval(approval_id, bool(data.get('allow')))
    if not ok:
        socketio.emit(APPROVAL_ERROR_EVENT, {'id': approval_id, 'error': error}, to=request.sid)


def vitals_monitor():  # pragma: no cover
    print('[VITALS] Host load sampler started')
    while not stop_workers.is_set():
        try:
            observatory.update_vitals(sample_host_load())
        except Exception as e:
            print(f'[VITALS] sampler error: {e}')
        stop_workers.wait(VITALS_POLL_SEC)


def usage_monitor():  # pragma: no cover
    print('[USAGE] Token usage refresher started')
    while not stop_workers.is_set():
        try:
            refresh_usage()
        except Exception as e:
            print(f'[USAGE] refresh error: {e}')
        stop_workers.wait(USAGE_POLL_SEC)


def reap_overdue_calls():
    try:
        expired = gateway.expire_overdue()
    except Exception as e:
        print(f'[GATEWAY] reaper error: {e}')
        return 0
    if expired:
        print(f'[GATEWAY] Expired {expired} overdue call(s)')
    return expired


def rpc_reaper():  # pragma: no cover
    while not stop_workers.is_set():
        reap_overdue_calls()
        stop_workers.wait(0.5)


def start_background_workers():  # pragma: no cover
    """Start tailer, samplers, gateway client and hub relay once per process."""
    global workers_started
    with bootstrap_lock:
        if workers_started:
            print('[BOOT] Workers already started in this process, skipping')
            return
        workers_started = True

    print(f'[BOOT] Starting workers (pid={os.getpid()}), log dir {LOG_DIR}, gateway {GATEWAY_URL}')
    threading.Thread(target=tailer.run, args=(stop_workers, TAIL_POLL_SEC), daemon=True).start()
    threading.Thread(target=vitals_monitor, daemon=True).start()
    threading.Thread(target=usage_monitor, daemon=True).start()
    threading.Thread(target=rpc_reaper, daemon=True).start()
    gateway.start()
    socketio.start_background_task(hub.run)


if __name__ == '__main__':  # pragma: no cover
    start_background_workers()
    print(f'Mission control running at: http://localhost:{PORT}')
    socketio.run(app, host='0.0.0.0', port=PORT, allow_unsafe_werkzeug=True)
