"""
Error taxonomy for the canary router

Control-plane errors (InvalidInput, InvalidTransition, InvalidState) are
raised to the operator synchronously and leave rollout state unchanged.
StoreUnavailable never leaves the request path; the router degrades it to
"no sticky assignment".
"""


class RouterError(Exception):
    """Base class for canary router errors"""
    pass


class InvalidInput(RouterError, ValueError):
    """Malformed client identifier or control-plane argument"""
    pass


class InvalidTransition(RouterError):
    """Illegal rollout state change"""

    def __init__(self, operation: str, current_status):
        self.operation = operation
        self.current_status = current_status
        status_value = getattr(current_status, "value", current_status)
        super().__init__(f"Cannot {operation} while rollout is {status_value}")


class InvalidState(RouterError):
    """A rollout is already active"""
    pass


class StoreUnavailable(RouterError):
    """Assignment store backend is unreachable, timed out or circuit-open"""
    pass
