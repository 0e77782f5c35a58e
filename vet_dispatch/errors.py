"""
errors.py
=========
Exception types raised by the dispatch engine.
Token problems and lost races are turned into result codes by claims.py;
only selection failures, missing cases and invariant breaks escape as errors.
"""


class DispatchError(Exception):
    """Base class for every dispatch engine error."""


class SelectionUnavailable(DispatchError):
    """The candidate source could not be reached or failed."""


class TokenNotFound(DispatchError):
    """No token matches, or it does not belong to the link it came in on."""


class TokenAlreadyConsumed(DispatchError):
    """
    The token for this (case, vet, action) has already been redeemed.
    Raised by redeem() with the binding attached, so callers can still
    report the outcome of the first redemption.
    """

    def __init__(self, message: str, binding=None):
        super().__init__(message)
        self.binding = binding


class DuplicateActiveToken(DispatchError):
    """An unconsumed token already exists for this (case, vet, action)."""

    def __init__(self, message: str, token: str):
        super().__init__(message)
        self.token = token


class CaseNotFound(DispatchError):
    def __init__(self, case_id: int):
        super().__init__(f"Case {case_id} not found")
        self.case_id = case_id


class InvariantViolation(DispatchError):
    """A state the conditional writes are meant to make impossible."""
