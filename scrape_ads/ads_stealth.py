"""
Browser identity rotation for ad library scraping.

This module provides:
- Device/user-agent identity selection (drawn with replacement)
- Playwright context parameters for an identity
- Resource blocking so heavy media is never fetched
- Jittered delays
"""

import random
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Mapping, Optional, Sequence


@dataclass(frozen=True)
class SessionIdentity:
    """Fingerprint of one browser context."""

    device_name: Optional[str]
    user_agent: Optional[str]

    def describe(self) -> str:
        ua = f"{self.user_agent[:60]}..." if self.user_agent else "n/a"
        return f"{self.device_name or 'custom'} / UA={ua}"


def pick_identity(
    device_names: Sequence[str],
    user_agents: Sequence[str],
    rng: Optional[random.Random] = None,
) -> SessionIdentity:
    """
    Draw a random device and user agent.

    Args:
        device_names: Playwright device descriptor names
        user_agents: User agent strings

    Returns:
        SessionIdentity (fields may be None when a pool is empty)
    """
    rng = rng or random
    device = rng.choice(list(device_names)) if device_names else None
    ua = rng.choice(list(user_agents)) if user_agents else None
    return SessionIdentity(device_name=device, user_agent=ua)


def get_context_params(
    identity: SessionIdentity,
    device_registry: Optional[Mapping[str, Dict[str, Any]]] = None,
) -> Dict[str, Any]:
    """
    Build browser.new_context() keyword arguments for an identity.

    Unknown device names fall back to a plain context with only the
    user agent overridden.

    Args:
        identity: Identity to emulate
        device_registry: Playwright's devices mapping

    Returns:
        Dict of context options
    """
    params: Dict[str, Any] = {}
    if identity.device_name and device_registry and identity.device_name in device_registry:
        params.update(device_registry[identity.device_name])
    if identity.user_agent:
        params["user_agent"] = identity.user_agent
    return params


def make_resource_blocker(blocked_types: Iterable[str]):
    """
    Create a Playwright route handler aborting the given resource types.

    Args:
        blocked_types: Resource types to abort (image, stylesheet, font, media)

    Returns:
        Async route handler for context.route("**/*", handler)
    """
    blocked = frozenset(blocked_types)

    async def _handle_route(route):
        if route.request.resource_type in blocked:
            await route.abort()
        else:
            await route.continue_()

    return _handle_route


def jitter_ms(max_ms: int, rng: Optional[random.Random] = None) -> int:
    """Random integer in [0, max_ms)."""
    if max_ms <= 0:
        return 0
    rng = rng or random
    return rng.randrange(max_ms)


def random_delay_seconds(min_ms: int, max_ms: int, rng: Optional[random.Random] = None) -> float:
    """Random delay between min_ms and max_ms, in seconds."""
    rng = rng or random
    if max_ms <= min_ms:
        return max(0, min_ms) / 1000.0
    return rng.uniform(min_ms, max_ms) / 1000.0
