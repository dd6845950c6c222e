"""Per-form-type rate limiting for the email API.

Three independent fixed-window limiters guard outgoing mail:

* ``general``        default 10 requests / 60 s
* ``auth``           login / registration / verification mail, 5 / 60 s
* ``password_reset`` password-reset mail, 3 / 15 min

Each limiter counts requests per ``apiKey:ip`` identity in its own store, so
exhausting one never affects the others. Callers whose IP or API key is on
the configured allow-list skip counting entirely.

State lives in memory on the limiter instance; every application instance
builds its own set through ``EmailRateLimiters.from_settings``.
"""

import logging
import math
import time
from dataclasses import dataclass, field
from threading import Lock
from typing import Callable

logger = logging.getLogger(__name__)

GENERAL = "general"
AUTH = "auth"
PASSWORD_RESET = "password_reset"

_PRUNE_THRESHOLD = 10_000

_AUTH_MARKERS = ("login", "register", "registration", "signup", "sign-up", "verify", "verification", "auth")


def classify_form_type(form_type: str | None) -> str:
    """Map a caller-supplied form type to a limiter name.

    Case-insensitive substring match; password-reset markers are tested
    before auth markers so ``auth-password-reset`` lands on the stricter
    limiter.
    """
    value = (form_type or "").lower()
    if ("password" in value and "reset" in value) or "forgot" in value:
        return PASSWORD_RESET
    if any(marker in value for marker in _AUTH_MARKERS):
        return AUTH
    return GENERAL


@dataclass(frozen=True)
class RateLimitPolicy:
    name: str
    max_requests: int
    window_ms: int
    whitelist_ips: frozenset[str] = field(default_factory=frozenset)
    whitelist_keys: frozenset[str] = field(default_factory=frozenset)

    @property
    def window_seconds(self) -> float:
        return self.window_ms / 1000

    def key_for(self, api_key: str | None, client_ip: str | None) -> str:
        return f"{api_key or 'anonymous'}:{client_ip or 'unknown'}"

    def is_whitelisted(self, api_key: str | None, client_ip: str | None) -> bool:
        return bool(
            (client_ip and client_ip in self.whitelist_ips)
            or (api_key and api_key in self.whitelist_keys)
        )


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_after: float
    window_seconds: float
    whitelisted: bool = False

    @property
    def retry_after(self) -> int:
        """Whole seconds until the window resets, within ``[1, window]``."""
        ceiling = max(1, math.ceil(self.window_seconds))
        return min(ceiling, max(1, math.ceil(self.reset_after)))


class FixedWindowLimiter:
    """Counts requests per identity in fixed windows starting at first hit."""

    def __init__(self, policy: RateLimitPolicy, clock: Callable[[], float] = time.monotonic) -> None:
        self.policy = policy
        self._clock = clock
        self._windows: dict[str, tuple[float, int]] = {}
        self._lock = Lock()
        self._next_prune = float("-inf")

    @property
    def name(self) -> str:
        return self.policy.name

    def hit(self, api_key: str | None, client_ip: str | None) -> RateLimitDecision:
        """Record one request and say whether it may proceed."""
        policy = self.policy
        window = policy.window_seconds

        # Allow-listed callers never touch the counters.
        if policy.is_whitelisted(api_key, client_ip):
            return RateLimitDecision(
                allowed=True,
                limit=policy.max_requests,
                remaining=policy.max_requests,
                reset_after=0.0,
                window_seconds=window,
                whitelisted=True,
            )

        identity = policy.key_for(api_key, client_ip)
        now = self._clock()
        # Large maps are swept at most once per window.
        if len(self._windows) >= _PRUNE_THRESHOLD and now >= self._next_prune:
            self._next_prune = now + window
            self.prune()

        with self._lock:
            start, count = self._windows.get(identity, (now, 0))
            if now - start >= window:
                start, count = now, 0
            reset_after = max(0.0, start + window - now)

            if count >= policy.max_requests:
                logger.warning(
                    "Email rate limit exceeded",
                    extra={
                        "limiter": policy.name,
                        "client_ip": client_ip,
                        "limit": policy.max_requests,
                        "window_ms": policy.window_ms,
                    },
                )
                return RateLimitDecision(
                    allowed=False,
                    limit=policy.max_requests,
                    remaining=0,
                    reset_after=reset_after,
                    window_seconds=window,
                )

            count += 1
            self._windows[identity] = (start, count)

        return RateLimitDecision(
            allowed=True,
            limit=policy.max_requests,
            remaining=policy.max_requests - count,
            reset_after=reset_after,
            window_seconds=window,
        )

    def prune(self) -> int:
        """Drop expired windows. Returns how many were removed."""
        now = self._clock()
        window = self.policy.window_seconds
        with self._lock:
            expired = [k for k, (start, _) in self._windows.items() if now - start >= window]
            for key in expired:
                del self._windows[key]
        return len(expired)

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()

    def __len__(self) -> int:
        return len(self._windows)


class EmailRateLimiters:
    """The three email limiters plus the form-type selector."""

    def __init__(
        self,
        general: FixedWindowLimiter,
        auth: FixedWindowLimiter,
        password_reset: FixedWindowLimiter,
    ) -> None:
        self._by_name = {
            GENERAL: general,
            AUTH: auth,
            PASSWORD_RESET: password_reset,
        }

    @classmethod
    def from_settings(cls, settings, clock: Callable[[], float] = time.monotonic) -> "EmailRateLimiters":
        ips = settings.whitelist_ips
        keys = settings.whitelist_api_keys

        def _limiter(name: str, max_requests: int, window_ms: int) -> FixedWindowLimiter:
            policy = RateLimitPolicy(name, max_requests, window_ms, ips, keys)
            return FixedWindowLimiter(policy, clock=clock)

        return cls(
            general=_limiter(GENERAL, settings.email_rate_limit_general, settings.email_rate_limit_window_ms),
            auth=_limiter(AUTH, settings.email_rate_limit_auth, settings.email_rate_limit_window_ms),
            password_reset=_limiter(
                PASSWORD_RESET,
                settings.email_rate_limit_password_reset,
                settings.email_rate_limit_password_reset_window_ms,
            ),
        )

    @property
    def general(self) -> FixedWindowLimiter:
        return self._by_name[GENERAL]

    @property
    def auth(self) -> FixedWindowLimiter:
        return self._by_name[AUTH]

    @property
    def password_reset(self) -> FixedWindowLimiter:
        return self._by_name[PASSWORD_RESET]

    def select(self, form_type: str | None) -> FixedWindowLimiter:
        return self._by_name[classify_form_type(form_type)]

    def prune(self) -> int:
        return sum(limiter.prune() for limiter in self._by_name.values())

    def reset(self) -> None:
        for limiter in self._by_name.values():
            limiter.reset()

    def describe(self) -> dict[str, dict]:
        return {
            name: {"maxRequests": lim.policy.max_requests, "windowMs": lim.policy.window_ms}
            for name, lim in self._by_name.items()
        }
