"""Error taxonomy shared by the supervisor, archive engine, and routes."""


class MCHostError(Exception):
    """Base class for errors surfaced to callers with a stable code."""

    code = "internal_error"
    http_status = 500

    def __init__(self, message=None):
        super().__init__(message or self.default_message())

    @classmethod
    def default_message(cls):
        return cls.__name__

    @property
    def message(self):
        return str(self)


class InvalidPath(MCHostError):
    code = "invalid_path"
    http_status = 400

    @classmethod
    def default_message(cls):
        return "Invalid path."


class InvalidStartupFlags(MCHostError):
    code = "invalid_startup_flags"
    http_status = 400


class AlreadyRunning(MCHostError):
    code = "already_running"
    http_status = 409

    @classmethod
    def default_message(cls):
        return "Server is already running."


class NotRunning(MCHostError):
    code = "not_running"
    http_status = 409

    @classmethod
    def default_message(cls):
        return "Server is not running."


class SessionNotFound(MCHostError):
    code = "session_not_found"
    http_status = 404

    @classmethod
    def default_message(cls):
        return "No console session for this server."


class TenantNotFound(MCHostError):
    code = "server_not_found"
    http_status = 404

    @classmethod
    def default_message(cls):
        return "Server not found."


class TenantConflict(MCHostError):
    code = "server_conflict"
    http_status = 409


class TaskNotFound(MCHostError):
    code = "task_not_found"
    http_status = 404

    @classmethod
    def default_message(cls):
        return "Task not found."


class NotReady(MCHostError):
    code = "not_ready"
    http_status = 409

    @classmethod
    def default_message(cls):
        return "Archive not ready."


class ArchiveIOError(MCHostError):
    """Recorded as the failure kind of a zip/unzip task."""

    code = "archive_io_error"
    http_status = 500


class DownloadFailure(MCHostError):
    code = "download_failed"
    http_status = 502

    @classmethod
    def default_message(cls):
        return "Failed to download server files."


class SpawnFailure(MCHostError):
    code = "spawn_failed"
    http_status = 500

    @classmethod
    def default_message(cls):
        return "Failed to start the console shell."


class InvalidRequest(MCHostError):
    code = "invalid_request"
    http_status = 400

    @classmethod
    def default_message(cls):
        return "Invalid request."
