"""Retry profiles and backoff computation for node retries."""

from __future__ import annotations

import asyncio
import math
import random
from typing import Any, Callable, Mapping, Optional, Union

from pydantic import ValidationError

from ..contracts import RetryOverrides, RetryPolicy, WorkflowDefinition, WorkflowNode
from ..errors import RetryProfileError

DEFAULT_PROFILE = "balanced"

RETRY_PROFILES: dict[str, RetryPolicy] = {
    "fast_safe": RetryPolicy(max_attempts=2, backoff_ms=300, max_backoff_ms=2000, jitter_ratio=0.05),
    "balanced": RetryPolicy(max_attempts=3, backoff_ms=1000, max_backoff_ms=20000, jitter_ratio=0.2),
    "strict_enterprise": RetryPolicy(
        max_attempts=5, backoff_ms=2000, max_backoff_ms=60000, jitter_ratio=0.1
    ),
}

Overrides = Union[RetryOverrides, Mapping[str, Any], None]


def get_profile(name: str) -> RetryPolicy:
    """Return a copy of the named baseline policy."""
    try:
        return RETRY_PROFILES[name].model_copy()
    except KeyError:
        known = ", ".join(sorted(RETRY_PROFILES))
        raise RetryProfileError(f"Unknown retry profile {name!r} (expected one of: {known})") from None


def merge_overrides(base: RetryPolicy, overrides: Overrides = None) -> RetryPolicy:
    """Merge ``overrides`` field by field onto ``base``; overrides win."""
    if overrides is None:
        return base.model_copy()
    if isinstance(overrides, RetryOverrides):
        changes = overrides.model_dump(exclude_none=True)
    else:
        changes = {k: v for k, v in overrides.items() if v is not None}
    try:
        return RetryPolicy.model_validate({**base.model_dump(), **changes})
    except ValidationError as e:
        reasons = "; ".join(err["msg"] for err in e.errors())
        raise RetryProfileError(f"Invalid retry policy overrides {changes}: {reasons}") from e


def resolve_policy(profile_name: str, overrides: Overrides = None) -> RetryPolicy:
    """Resolve a named profile plus optional overrides into a concrete policy."""
    return merge_overrides(get_profile(profile_name), overrides)


def resolve_node_policy(definition: WorkflowDefinition, node: WorkflowNode) -> RetryPolicy:
    """Resolve the effective retry policy of ``node`` within ``definition``.

    The base is the node's profile, else the default profile, else the
    default policy, else ``balanced``. The node's ``retry`` overrides are
    merged on top.

    Raises:
        RetryProfileError: On an unknown profile or an invalid merged policy.
    """
    defaults = definition.defaults
    profile = node.retry_profile or defaults.retry_profile
    if profile:
        base = get_profile(profile)
    elif defaults.retry is not None:
        base = defaults.retry
    else:
        base = get_profile(DEFAULT_PROFILE)
    return merge_overrides(base, node.retry)


def compute_retry_delay(
    policy: RetryPolicy,
    attempt: int,
    random_source: Optional[Callable[[], float]] = None,
) -> int:
    """Compute the delay in milliseconds before retrying after ``attempt``.

    The base delay doubles per attempt and is capped at ``max_backoff_ms``.
    With a positive ``jitter_ratio`` the delay moves by up to
    ``delay * jitter_ratio`` in either direction, with ``random_source()``
    mapped linearly from ``[0, 1)`` onto ``[-1, +1)``.
    """
    exponent = max(attempt, 1) - 1
    delay = min(policy.backoff_ms * (2**exponent), policy.max_backoff_ms)
    if policy.jitter_ratio <= 0:
        return int(delay)

    source = random_source or random.random
    spread = delay * policy.jitter_ratio
    jittered = delay + (source() * 2 - 1) * spread
    # half-up rounding, not banker's rounding
    return max(0, math.floor(jittered + 0.5))


async def sleep_ms(delay_ms: float) -> None:
    """Sleep for ``delay_ms`` milliseconds."""
    await asyncio.sleep(max(0.0, delay_ms) / 1000)
