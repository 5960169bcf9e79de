"""
Message templates for send_email actions.

A rule picks a canned template via action_config["template"], or supplies
its own action_config["subject"] / ["body"]. Placeholders are bare
{field} names; anything else in braces, known or not, is left in place.
"""

import re
from typing import Any

from cohortwatch.monitoring.schemas import Student

TEMPLATES: dict[str, dict[str, str]] = {
    "check_in": {
        "subject": "Checking in, {name}",
        "body": (
            "Hi {name},\n\n"
            "We noticed you haven't been active recently. Your advisor would "
            "love to hear how things are going. Reply to this email or book a "
            "time to talk.\n"
        ),
    },
    "engagement_boost": {
        "subject": "{name}, here is what's coming up",
        "body": (
            "Hi {name},\n\n"
            "There are study groups and campus events this week that other "
            "students have found useful. Take a look and join one that fits "
            "your schedule.\n"
        ),
    },
    "documents_reminder": {
        "subject": "Action needed: documents pending",
        "body": (
            "Hi {name},\n\n"
            "Some of your documents are still pending. Please upload them so "
            "your enrollment can continue without delays.\n"
        ),
    },
    "support": {
        "subject": "We're Here to Help - Student Support",
        "body": (
            "Hi {name},\n\n"
            "We noticed you might need some support. Our team is here to help "
            "you succeed.\n\n"
            "Please don't hesitate to reach out if you need anything, whether "
            "it's academic assistance, advice, or just someone to talk to.\n\n"
            "Best regards,\nStudent Success Team\n"
        ),
    },
    "mentorship": {
        "subject": "Peer Mentorship Program - You've Been Enrolled",
        "body": (
            "Hi {name},\n\n"
            "You have been enrolled in our Peer Mentorship Program. You will be "
            "connected with a peer mentor who will provide academic support and "
            "guidance throughout your journey.\n\n"
            "Best regards,\nStudent Success Team\n"
        ),
    },
    "welcome": {
        "subject": "Welcome aboard, {name}",
        "body": "Hi {name},\n\nWelcome! Your counselor will be in touch shortly.\n",
    },
}

DEFAULT_TEMPLATE = "check_in"

PLACEHOLDER = re.compile(r"\{(\w+)\}")


def render(text: str, values: dict[str, Any]) -> str:
    """Substitute {field} placeholders, leaving unknown ones untouched."""

    def substitute(m: re.Match) -> str:
        key = m.group(1)
        return str(values[key]) if key in values else m.group(0)

    return PLACEHOLDER.sub(substitute, text)


def render_message(action_config: dict[str, Any], student: Student) -> tuple[str, str]:
    """Resolve (subject, body) for a student from a send_email config."""
    template = TEMPLATES.get(
        str(action_config.get("template", DEFAULT_TEMPLATE)), TEMPLATES[DEFAULT_TEMPLATE]
    )
    subject = action_config.get("subject") or template["subject"]
    body = action_config.get("body") or template["body"]

    values = {
        "name": student.name or "there",
        "email": student.email,
        "stage": student.stage.value,
    }
    return render(str(subject), values), render(str(body), values)
