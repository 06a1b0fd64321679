from __future__ import annotations

from typing import Optional

from .models import CommitmentKind, Outcome, Role, User


def duration_label(minutes: Optional[int]) -> str:
    if not minutes:
        return "unknown"
    if minutes < 60:
        return f"{minutes} minutes"
    hours = minutes / 60
    if hours == 1:
        return "1 hour"
    return f"{hours:g} hours"


# ---- users ----

def registered_text(handle: str) -> str:
    return (
        f"Welcome, {handle}! You are registered as a job seeker.\n\n"
        "Please set your time zone so meetings show up at the right local time."
    )


def timezone_set_text(zone: str) -> str:
    return f"Your time zone has been set to {zone}."


def role_changed_text(role: Role, company_name: Optional[str] = None) -> str:
    if role == Role.RECRUITER:
        who = f"a company recruiter for {company_name}" if company_name else "an individual recruiter"
        return (
            f"You are now registered as {who}.\n"
            "It is time to schedule your first meeting!"
        )
    return (
        "Your role has been updated to job seeker.\n\n"
        "Your recruiter subscription status remains unchanged until its expiration date."
    )


def trial_activated_text(days: int, expiry_str: str) -> str:
    return f"Your trial subscription is now active for {days} days, expiring on {expiry_str}."


def trial_expired_text() -> str:
    return "Your trial period has expired.\n\nPlease subscribe to continue using the service."


def profile_text(user: User, member_since: str, expiry: str) -> str:
    """`member_since` and `expiry` come already rendered in the user's zone."""
    return "\n".join([
        f"Username: {user.handle}",
        f"Member since: {member_since}",
        f"User type: {user.role.value}",
        f"Recruiter type: {user.recruiter_type or 'N/A'}",
        f"Subscription status: {user.subscription_status.value}",
        f"Subscription expiry: {expiry}",
        f"Reliability score: {user.reliability_score}",
        f"Company name: {user.company_name or 'N/A'}",
        f"Time zone: {user.timezone or 'UTC'}",
    ])


# ---- meeting negotiation ----

def choose_duration_text() -> str:
    return "Please choose the duration for the meeting:"


def choose_date_text() -> str:
    return "Please choose the date for the meeting:"


def choose_times_text(date_label: str, max_slots: int) -> str:
    return f"Please choose up to {max_slots} available time slots for {date_label}:"


def slot_added_text(slot: str) -> str:
    return f"Added time slot: {slot}\n\nDo you want to submit the meeting request now?"


def meeting_request_text(recruiter_name: str, description: str, duration: str) -> str:
    return (
        f"You have a meeting request from @{recruiter_name}\n"
        f"Description: {description}\n"
        f"Meeting duration: {duration}\n\n"
        "Please choose one of the available time slots (shown in your time zone):"
    )


def request_sent_text(counterpart_name: str) -> str:
    return f"Meeting request sent to @{counterpart_name}."


def meeting_accepted_recruiter_text(counterpart_name: str, when: str) -> str:
    return f"Your meeting request has been accepted by @{counterpart_name}.\n\nMeeting is scheduled at {when}."


def meeting_accepted_counterpart_text(recruiter_name: str, when: str) -> str:
    return f"You have accepted the meeting request from @{recruiter_name}.\n\nMeeting is scheduled at {when}."


def meeting_declined_recruiter_text(counterpart_name: str) -> str:
    return f"Your meeting request has been declined by @{counterpart_name}."


def meeting_declined_counterpart_text() -> str:
    return "You have declined the meeting request."


def meeting_cancelled_text() -> str:
    return "Meeting request cancelled."


# ---- feedback negotiation ----

def choose_feedback_days_text(description: str) -> str:
    return f'Please specify the number of days you will take to provide feedback for the meeting "{description}":'


def feedback_request_text(recruiter_name: str, description: str, days: int) -> str:
    return (
        f"You have a feedback request from @{recruiter_name}\n"
        f"Meeting: {description}\n"
        f"Feedback due in: {days} day(s)\n\n"
        "Please approve or decline the feedback request:"
    )


def feedback_request_sent_text(counterpart_name: str) -> str:
    return f"Feedback request sent to @{counterpart_name}."


def feedback_approved_recruiter_text(due: str) -> str:
    return f"The feedback commitment has been created and is due on {due}."


def feedback_approved_counterpart_text(due: str) -> str:
    return f"Feedback request approved. Feedback is due on {due}."


def feedback_declined_text() -> str:
    return "The feedback request was declined."


def feedback_cancelled_text() -> str:
    return "The feedback request was cancelled."


# ---- reminders ----

def meeting_reminder_text(description: str, other_name: str, when: str, hours: int) -> str:
    if hours == 1:
        lead = "in 1 hour"
    else:
        lead = f"in {hours} hours"
    return f'Reminder: your meeting "{description}" with {other_name} is {lead}, at {when}.'


def feedback_reminder_text(description: str, other_name: str, when: str, hours: int) -> str:
    lead = "in 1 hour" if hours == 1 else f"in {hours} hours"
    return f'Reminder: feedback for your meeting "{description}" with {other_name} is due {lead}, at {when}.'


# ---- outcomes ----

def outcome_prompt_text(kind: CommitmentKind, description: str) -> str:
    if kind == CommitmentKind.MEETING:
        return f'Please update your attendance status for the meeting "{description}":'
    return f'Please update your status for the feedback commitment "{description}":'


def outcome_label(outcome: Outcome) -> str:
    return {
        Outcome.ATTENDED: "Attended",
        Outcome.FULFILLED: "Fulfilled",
        Outcome.MISSED: "Missed",
    }.get(outcome, outcome.value)


def outcome_recorded_text(kind: CommitmentKind, description: str, outcome: Outcome, score: int) -> str:
    return (
        f'Your status for the {kind.value} commitment "{description}" has been updated to {outcome.value}.\n\n'
        f"Your new reliability score is {score}."
    )


# ---- status ----

def status_list_text(title: str, views) -> str:
    if not views:
        return f"{title}: nothing to show."
    lines = [f"{title}:"]
    for v in views:
        line = f'- {v.when} "{v.description}" with @{v.other_party}'
        if v.your_outcome != Outcome.PENDING:
            line += f" ({v.your_outcome.value})"
        lines.append(line)
    return "\n".join(lines)
