"""Flask error hooks and the boot runner."""
from flask import has_request_context, request
from werkzeug.exceptions import HTTPException

from mchost.core.errors import MCHostError
from mchost.core.response_helpers import internal_error_response, mchost_error_response


def install_flask_hooks(app, *, log_action, log_exception):
    """Install request error hooks using explicit runtime callbacks."""

    @app.errorhandler(MCHostError)
    def _mchost_error_handler(exc):
        path = request.path if has_request_context() else "unknown-path"
        tenant_id = (request.view_args or {}).get("server_id") if has_request_context() else None
        log_action("reject", command=path, rejection_message=f"{exc.code}: {exc.message}", tenant_id=tenant_id)
        return mchost_error_response(exc)

    @app.errorhandler(Exception)
    def _unhandled_exception_handler(exc):
        if isinstance(exc, HTTPException):
            return exc
        path = request.path if has_request_context() else "unknown-path"
        log_exception(f"unhandled_exception path={path}", exc)
        return internal_error_response()


def run_server(app, cfg_get_str, cfg_get_int, log_system, log_exception, boot_steps):
    """Run startup steps, then start the Flask server."""
    host = cfg_get_str("WEB_HOST", "0.0.0.0")
    port = cfg_get_int("WEB_PORT", 8080, minimum=1)
    log_system("boot-start", command=f"host={host} port={port}")

    for step_name, step_func in boot_steps:
        try:
            step_func()
        except Exception as exc:
            log_exception(f"boot_step/{step_name}", exc)
            log_system("boot-failed", command=step_name, rejection_message=str(exc)[:500] or "startup step failed")
            raise

    log_system("boot-ready", command=f"host={host} port={port}")
    try:
        app.run(host=host, port=port, threaded=True)
    except Exception as exc:
        log_exception("boot_step/app.run", exc)
        log_system("boot-failed", command="app.run", rejection_message=str(exc)[:500] or "web server startup failed")
        raise
