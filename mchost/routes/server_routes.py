"""Tenant server management routes."""
from flask import request

from mchost.core.response_helpers import json_body, ok_response


def register_server_routes(app, state):
    """Register create/list/delete/update and startup-flag routes."""

    # Route: /servers
    @app.route("/servers", methods=["POST"])
    def create_server():
        body = json_body()
        record = state.provisioner.create_server(
            name=body.get("name"),
            memory_gb=body.get("memory"),
            port=body.get("port"),
            version=body.get("version"),
            server_type=body.get("serverType", "fabric"),
            startup_flags=body.get("startupFlags", ""),
            view_distance=body.get("renderDistance", 10),
        )
        return ok_response({"server": record.public_view()}, status=201)

    @app.route("/servers", methods=["GET"])
    def list_servers():
        return ok_response({"servers": state.provisioner.list_servers()})

    # Route: /servers/<server_id>
    @app.route("/servers/<server_id>", methods=["GET"])
    def get_server(server_id):
        record = state.tenant_store.get(server_id)
        return ok_response({"server": record.public_view()})

    @app.route("/servers/<server_id>", methods=["DELETE"])
    def delete_server(server_id):
        state.provisioner.delete_server(server_id)
        return ok_response()

    # Route: /servers/<server_id>/update
    @app.route("/servers/<server_id>/update", methods=["POST"])
    def update_server(server_id):
        record = state.provisioner.update_server_jar(server_id, json_body().get("version"))
        return ok_response({"server": record.public_view()})

    # Route: /servers/<server_id>/startup-flags
    @app.route("/servers/<server_id>/startup-flags", methods=["GET", "PUT"])
    def startup_flags(server_id):
        if request.method == "PUT":
            payload = state.provisioner.update_startup_flags(server_id, json_body().get("flags", ""))
        else:
            payload = state.provisioner.get_startup_config(server_id)
        return ok_response(payload)
