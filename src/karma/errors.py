"""
Error taxonomy for the commitment core.

Every failure is scoped to one record and one user interaction. The dispatch
layer turns these into a notice for the acting user; nothing here is fatal to
the process.
"""
from __future__ import annotations

from typing import Optional


class KarmaError(Exception):
    category = "error"
    code = "Error"
    default_message = "Something went wrong. Please try again."

    def __init__(self, message: Optional[str] = None, **context) -> None:
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        self.context = context


# ---- NotFound: plain notice, no retry ----

class NotFound(KarmaError):
    category = "not_found"
    code = "NotFound"
    default_message = "That item could not be found."


class UserNotFound(NotFound):
    code = "UserNotFound"
    default_message = "User not found. Please register first."


class CounterpartNotFound(NotFound):
    code = "CounterpartNotFound"
    default_message = "That user is not registered."


class RequestNotFound(NotFound):
    code = "RequestNotFound"
    default_message = "Request not found."


class UnknownCommitment(NotFound):
    code = "UnknownCommitment"
    default_message = "Commitment not found."


# ---- InvalidState: benign no-op, user informed politely ----

class InvalidState(KarmaError):
    category = "invalid_state"
    code = "InvalidState"
    default_message = "That action is not available right now."


class AlreadyResolved(InvalidState):
    code = "AlreadyResolved"
    default_message = "This request has already been resolved."


class NotAuthorized(InvalidState):
    code = "NotAuthorized"
    default_message = "You are not allowed to do that."


class DurationNotChosen(InvalidState):
    code = "DurationNotChosen"
    default_message = "Please choose a meeting duration first."


class TimezoneNotSet(InvalidState):
    code = "TimezoneNotSet"
    default_message = "Both parties need a time zone before scheduling."


# ---- ValidationError: request stays where it is, user corrects ----

class ValidationError(KarmaError):
    category = "validation"
    code = "ValidationError"
    default_message = "That value is not valid."


class SlotLimitReached(ValidationError):
    code = "SlotLimitReached"
    default_message = "You have already selected the maximum number of time slots."


class NoSlotsSelected(ValidationError):
    code = "NoSlotsSelected"
    default_message = "Please choose at least one date and one time slot before submitting."


class InvalidSlot(ValidationError):
    code = "InvalidSlot"
    default_message = "Invalid time slot selected."


class InvalidDuration(ValidationError):
    code = "InvalidDuration"
    default_message = "That meeting duration is not offered."


class InvalidRange(ValidationError):
    code = "InvalidRange"
    default_message = "That number of days is out of range."


class InvalidOutcome(ValidationError):
    code = "InvalidOutcome"
    default_message = "That outcome does not apply to this commitment."


class InvalidZone(ValidationError):
    code = "InvalidZone"
    default_message = "Unknown time zone."


class InvalidDateTime(ValidationError):
    code = "InvalidDateTime"
    default_message = "That date and time does not exist in your time zone."


class InvalidIntent(ValidationError):
    code = "InvalidIntent"
    default_message = "Unrecognized action."


# ---- EntitlementDenied: upsell/renewal prompt, action aborted ----

class EntitlementDenied(KarmaError):
    category = "entitlement"
    code = "EntitlementDenied"
    default_message = "Your subscription does not allow this action. Please subscribe to continue."


class EntitlementExpired(EntitlementDenied):
    code = "EntitlementExpired"
    default_message = "Your subscription has expired. Please subscribe to continue using the service."


# ---- TransientStoreError: retry the whole operation ----

class TransientStoreError(KarmaError):
    category = "transient"
    code = "TransientStoreError"
    default_message = "There was an error processing your request. Please try again."
