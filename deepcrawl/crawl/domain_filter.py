from __future__ import annotations

from urllib.parse import urlparse

from deepcrawl.config import DomainFilterConfig

# App stores, social networks, shops and account/help portals rarely carry
# citable content and often sit behind login walls.
BUILTIN_BLOCKED_DOMAINS = (
    "apps.apple.com",
    "play.google.com",
    "twitter.com",
    "x.com",
    "facebook.com",
    "linkedin.com",
    "instagram.com",
    "youtube.com",
    "amazon.com",
    "amazon.co.jp",
    "policy.medium.com",
    "help.medium.com",
    "support.google.com",
    "accounts.google.com",
    "about.google.com",
    "policies.google.com",
)

BLOCKED_PATHS = (
    "/login",
    "/signin",
    "/sign_in",
    "/sign-in",
    "/signup",
    "/sign_up",
    "/sign-up",
    "/register",
    "/privacy",
    "/terms",
    "/tos",
    "/cart",
    "/checkout",
    "/buy",
    "/share",
    "/tweet",
)

DEFAULT_DOMAIN_FILTER = DomainFilterConfig()


def is_allowed(url: str, config: DomainFilterConfig = DEFAULT_DOMAIN_FILTER) -> bool:
    """Decide whether a candidate URL may be crawled. First rejection wins."""
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    host = (parsed.hostname or "").lower()
    if not host:
        return False

    if any(blocked in host for blocked in BUILTIN_BLOCKED_DOMAINS):
        return False

    if any(blocked in host for blocked in config.blocked_domains):
        return False

    path = parsed.path.lower()
    if any(blocked in path for blocked in BLOCKED_PATHS):
        return False

    if config.allowed_domains is not None:
        return any(allowed in host for allowed in config.allowed_domains)

    return True


def filter_allowed(urls: list[str], config: DomainFilterConfig = DEFAULT_DOMAIN_FILTER) -> list[str]:
    return [url for url in urls if is_allowed(url, config)]
