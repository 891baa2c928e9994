"""Console session routes: lifecycle verbs, history and the live stream."""
import json

from flask import Response, request, stream_with_context

from mchost.core.response_helpers import json_body, ok_response
from mchost.services.session_channel import dispatch_session_event


def _sse_event(event):
    return f"event: {event['type']}\ndata: {json.dumps(event['data'])}\n\n"


def register_session_routes(app, state):
    """Register start/stop/kill/command/status and console stream routes."""

    def _require_tenant(server_id):
        return state.tenant_store.get(server_id)

    # Route: /servers/<server_id>/<verb>
    @app.route("/servers/<server_id>/<any(start, stop, kill, command):verb>", methods=["POST"])
    def session_verb(server_id, verb):
        _require_tenant(server_id)
        payload = json_body() if verb == "command" else None
        dispatch_session_event(state.supervisor, server_id, verb, payload)
        return ok_response(state.supervisor.get_status(server_id))

    # Route: /servers/<server_id>/status
    @app.route("/servers/<server_id>/status")
    def session_status(server_id):
        _require_tenant(server_id)
        return ok_response(state.supervisor.get_status(server_id))

    # Route: /servers/<server_id>/console-history
    @app.route("/servers/<server_id>/console-history")
    def console_history(server_id):
        _require_tenant(server_id)
        limit = request.args.get("limit", type=int) or state.CONSOLE_HISTORY_LINES
        limit = max(1, min(limit, state.CONSOLE_HISTORY_LINES))
        return ok_response({"lines": state.supervisor.read_history(server_id, limit)})

    # Route: /servers/<server_id>/console-stream
    @app.route("/servers/<server_id>/console-stream")
    def console_stream(server_id):
        _require_tenant(server_id)
        status = state.supervisor.get_status(server_id)
        subscription = state.broadcast_hub.subscribe(server_id)

        def generate():
            try:
                yield _sse_event({"type": "status", "data": status["running"]})
                while not subscription.closed:
                    events = subscription.wait(timeout=state.CONSOLE_STREAM_HEARTBEAT_SECONDS)
                    if events:
                        for event in events:
                            yield _sse_event(event)
                    else:
                        yield ": keepalive\n\n"
            finally:
                subscription.close()

        return Response(
            stream_with_context(generate()),
            mimetype="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "X-Accel-Buffering": "no",
            },
        )
