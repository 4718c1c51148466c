class LifecycleError(Exception):
    """Base class for every failure the tool lifecycle engine reports to its caller."""

    code = "lifecycle_error"
    status_code = 400

    def __init__(self, message: str | None = None):
        super().__init__(message or self.code.replace("_", " "))
        self.message = message or self.code.replace("_", " ")


class InvalidTransition(LifecycleError):
    code = "invalid_transition"
    status_code = 409


class ToolUnavailable(LifecycleError):
    code = "tool_unavailable"
    status_code = 409


class InvalidTarget(LifecycleError):
    code = "invalid_target"
    status_code = 400


class NotesRequired(LifecycleError):
    code = "notes_required"
    status_code = 400


class InvalidState(LifecycleError):
    code = "invalid_state"
    status_code = 409


class NoDestination(LifecycleError):
    code = "no_destination"
    status_code = 400


class NotFound(LifecycleError):
    code = "not_found"
    status_code = 404


class PermissionDenied(LifecycleError):
    code = "permission_denied"
    status_code = 403
