"""Inbound console events from a live viewer connection."""


def dispatch_session_event(supervisor, tenant_id, event, payload=None):
    """Map ``command|start|stop|kill`` onto the supervisor verbs."""
    name = str(event or "").strip().lower()
    if name == "command":
        text = payload.get("command") if isinstance(payload, dict) else payload
        return supervisor.send_command(tenant_id, text or "")
    if name == "start":
        return supervisor.start_server(tenant_id)
    if name == "stop":
        return supervisor.stop_server(tenant_id)
    if name == "kill":
        return supervisor.kill_server(tenant_id)
    raise ValueError(f"Unknown session event: {event}")
