"""Default domain blacklist, email-type classifiers and domain matching helpers."""

from __future__ import annotations

import fnmatch
import re
from dataclasses import dataclass

# Marketing, promotional and automated senders
DEFAULT_BLACKLISTED_DOMAINS: tuple[str, ...] = (
    # Generic marketing/promotional
    "no-reply.com",
    "noreply.com",
    "mailer-daemon.com",
    "do-not-reply.com",
    "donotreply.com",
    "marketing.com",
    "newsletter.com",
    "promo.com",
    "updates.com",
    "notifications.com",
    # Social media notifications
    "facebookmail.com",
    "mail.twitter.com",
    "linkedin.com",
    "instagram.com",
    "tiktok.com",
    "snapchat.com",
    # E-commerce and services
    "amazon.com",
    "amazonses.com",
    "ebay.com",
    "paypal.com",
    "stripe.com",
    "shopify.com",
    "mailchimp.com",
    "constantcontact.com",
    # Newsletter services
    "substack.com",
    "medium.com",
    "beehiiv.com",
    "convertkit.com",
    "mailerlite.com",
    # Common automated services
    "github.com",
    "gitlab.com",
    "bitbucket.org",
    "atlassian.com",
    "slack.com",
    "discord.com",
    "zoom.us",
    "calendly.com",
)

MARKETING_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"unsubscribe",
        r"marketing",
        r"promotional",
        r"newsletter",
        r"campaign",
        r"offer",
        r"deal",
        r"sale",
        r"discount",
    )
)

NOTIFICATION_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"notification",
        r"alert",
        r"reminder",
        r"update",
        r"digest",
        r"summary",
    )
)

AUTOMATED_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"do.*not.*reply",
        r"no.*reply",
        r"automated",
        r"system",
        r"daemon",
        r"postmaster",
    )
)

_DOMAIN_RE = re.compile(r"@([^>]+)")


@dataclass(frozen=True)
class PatternLibrary:
    """Blacklisted domains and regex classifiers used by DomainFilter."""

    blacklisted_domains: tuple[str, ...] = DEFAULT_BLACKLISTED_DOMAINS
    marketing: tuple[re.Pattern[str], ...] = MARKETING_PATTERNS
    notifications: tuple[re.Pattern[str], ...] = NOTIFICATION_PATTERNS
    automated: tuple[re.Pattern[str], ...] = AUTOMATED_PATTERNS

    @staticmethod
    def count_matches(patterns: tuple[re.Pattern[str], ...], content: str) -> int:
        return sum(1 for pattern in patterns if pattern.search(content))

    @staticmethod
    def any_match(patterns: tuple[re.Pattern[str], ...], content: str) -> bool:
        return any(pattern.search(content) for pattern in patterns)


def extract_domain(address: str) -> str:
    """Return the lower-cased domain of an address, or '' when there is none.

    Handles both ``user@host`` and ``Name <user@host>`` forms.
    """
    match = _DOMAIN_RE.search(address or "")
    return match.group(1).lower().strip() if match else ""


def domain_matches(domain: str, pattern: str) -> bool:
    """Check a domain against a rule pattern.

    Patterns containing ``*`` are shell-style wildcards (``*.example.com``).
    Plain patterns match the domain itself and any of its subdomains.
    """
    domain = domain.lower().strip()
    pattern = pattern.lower().strip()
    if not domain or not pattern:
        return False
    if "*" in pattern or "?" in pattern:
        return fnmatch.fnmatchcase(domain, pattern)
    return domain == pattern or domain.endswith("." + pattern)
