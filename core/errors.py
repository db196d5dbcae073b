"""
Error taxonomy of the dispatch core.

Components raise these; DispatchCoordinator converts them into outcome records
so that none of them unwinds across an actor boundary.
"""


class DispatchError(Exception):
    """Base class for recoverable dispatch errors."""
    code = "dispatch_error"

    def __init__(self, message: str = "", order_id: str | None = None):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.order_id = order_id


class OrderNotFound(DispatchError):
    code = "order_not_found"


class InvalidTransition(DispatchError):
    """The action is not legal from the current status for this actor."""
    code = "invalid_transition"


class AlreadyAssigned(DispatchError):
    """Another partner won the assignment race."""
    code = "already_assigned"


class StaleOrderError(DispatchError):
    """Location ping for an order that is unknown or already terminal."""
    code = "stale_order"


class NotAssignedError(DispatchError):
    """Location ping from a partner who does not hold the order."""
    code = "not_assigned"


class NoCandidatesFound(DispatchError):
    """No online, unassigned partner within the delivery radius."""
    code = "no_candidates"
