"""Optional CloudWatch Logs tracing for sandbox operations.

Spans are JSON log events keyed by trace_id ("<user>/<project>"), so one
sandbox's history can be pulled out with CloudWatch Insights:

    filter trace_id = "alice/thesis" | sort @timestamp asc

Span types: sandbox (create, restart, removed, reaped), command (argv0 and exit
code), assistant (turns and forwarded tool calls), auth (wizard milestones),
stage (CLI stage timings).

Active only when `cloudwatch_log_group` is configured and boto3 is installed
(`pip install -e ".[aws]"`).
"""

import json
import socket
import threading
import time
from datetime import datetime, timezone

_client = None
_log_group = None
_log_stream = None
_lock = threading.Lock()


def default_stream():
    return f"{datetime.now().strftime('%Y/%m/%d')}/{socket.gethostname()}"


def init(log_group, log_stream=None):
    """Point this process at a log group. No-op without a group or without boto3."""
    global _client, _log_group, _log_stream
    if not log_group:
        return False
    try:
        import boto3
        client = boto3.client("logs")
    except Exception:
        return False
    _client, _log_group, _log_stream = client, log_group, log_stream or default_stream()
    _create_destination()
    return True


def shutdown():
    global _client
    _client = None


def enabled():
    return _client is not None


def span(trace_id, span_type, name, elapsed_ms=None, **meta):
    event = {
        "trace_id": trace_id,
        "span_type": span_type,
        "name": name,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        **meta,
    }
    if elapsed_ms is not None:
        event["elapsed_ms"] = round(elapsed_ms)
    return event


def emit(trace_id, span_type, name, elapsed_ms=None, **meta):
    """Send one span. Never raises."""
    client = _client
    if client is None:
        return
    message = json.dumps(span(trace_id, span_type, name, elapsed_ms, **meta), default=str)
    with _lock:
        try:
            client.put_log_events(
                logGroupName=_log_group,
                logStreamName=_log_stream,
                logEvents=[{"timestamp": int(time.time() * 1000), "message": message}],
            )
        except Exception:
            pass  # tracing must not break the operation being traced


def _create_destination():
    try:
        _client.create_log_group(logGroupName=_log_group)
    except Exception:
        pass  # already exists, or the role may only write
    try:
        _client.create_log_stream(logGroupName=_log_group, logStreamName=_log_stream)
    except Exception:
        pass
