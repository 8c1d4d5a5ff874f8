"""Platform subdomain allocation."""

from collections.abc import Awaitable, Callable
import random
import re
import string

MAX_LABEL_LENGTH = 63
SUFFIX_LENGTH = 4
FALLBACK_SLUG = "app"

_NON_ALNUM = re.compile(r"[^a-z0-9]+")
_SUFFIX_ALPHABET = string.ascii_lowercase + string.digits


def slugify(name: str) -> str:
    """Turn a project name into a DNS label: ``"My Cool App!"`` -> ``"my-cool-app"``."""
    slug = _NON_ALNUM.sub("-", (name or "").lower()).strip("-")[:MAX_LABEL_LENGTH]
    return slug or FALLBACK_SLUG


def random_suffix(rng: random.Random | None = None) -> str:
    rng = rng or random.SystemRandom()
    return "".join(rng.choice(_SUFFIX_ALPHABET) for _ in range(SUFFIX_LENGTH))


def suffixed_slug(slug: str, suffix: Callable[[], str] = random_suffix) -> str:
    """``slug`` plus a random suffix, kept within 63 characters."""
    return f"{slug[: MAX_LABEL_LENGTH - SUFFIX_LENGTH - 1]}-{suffix()}"


async def ensure_unique_slug(
    slug: str,
    exists: Callable[[str], Awaitable[bool]],
    suffix: Callable[[], str] = random_suffix,
) -> str:
    """Return ``slug``, or a suffixed form when it is already taken.

    This is only a first guess. Two jobs can pick the same free slug at once,
    so callers reserve it through the unique constraint on
    ``project_domains.slug`` and draw a new suffix when the insert loses.
    """
    if not await exists(slug):
        return slug
    return suffixed_slug(slug, suffix)


def platform_domain_for(slug: str, platform_domain: str) -> str:
    return f"{slug}.{platform_domain}"
