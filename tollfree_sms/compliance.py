"""
SMS compliance rules: mandatory opt-out footer and STOP/HELP keywords.

Keyword matching is an exact match on the whole trimmed, lowercased body.
A message such as "please stop by tomorrow" is conversation, not an
opt-out request.
"""

from __future__ import annotations

FOOTER = "Reply STOP to opt out, HELP for help."

# Either marker means the body already carries the disclosure
_FOOTER_MARKERS: tuple[str, ...] = ("reply stop", "help for help")

STOP_KEYWORDS: frozenset[str] = frozenset(
    {
        "stop",
        "stopall",
        "unsubscribe",
        "cancel",
        "end",
        "quit",
    }
)

HELP_KEYWORDS: frozenset[str] = frozenset(
    {
        "help",
        "info",
    }
)

STOP_CONFIRMATION = "You're opted out and won't receive SMS from our business. Reply START to opt in."


def has_footer(text: str) -> bool:
    lowered = (text or "").lower()
    return any(marker in lowered for marker in _FOOTER_MARKERS)


def ensure_footer(text: str) -> str:
    """Append the opt-out footer unless the message already discloses STOP/HELP.

    Idempotent: ``ensure_footer(ensure_footer(x)) == ensure_footer(x)``.
    """
    if has_footer(text):
        return text
    body = (text or "").rstrip()
    if not body:
        return FOOTER
    return f"{body} {FOOTER}"


def _normalize(body: str | None) -> str:
    return (body or "").strip().lower()


def matches_stop_keyword(body: str | None) -> bool:
    return _normalize(body) in STOP_KEYWORDS


def matches_help_keyword(body: str | None) -> bool:
    return _normalize(body) in HELP_KEYWORDS


def help_message(support_email: str) -> str:
    """Reply sent to a HELP keyword, footer included."""
    return ensure_footer(
        f"Thanks for reaching out. For assistance, reply here or email {support_email}."
    )
