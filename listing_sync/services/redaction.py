from __future__ import annotations
from typing import Any

# Upstream envelopes and records carry the auth token and per-property Token
SENSITIVE_KEYS = {
    "token", "authtoken", "auth_token", "authorization",
    "secret", "webhook_secret", "x-webhook-secret",
    "password", "api_key",
}

REDACTED = "**********"


def redact_payload(value: Any, *, extra_keys: set[str] | None = None) -> Any:
    """Copy of `value` with sensitive keys masked, at any depth. Used before anything lands in sync_sessions."""
    sensitive = set(SENSITIVE_KEYS)
    if extra_keys:
        sensitive |= {k.lower() for k in extra_keys}

    def _walk(v: Any) -> Any:
        if isinstance(v, dict):
            return {
                k: REDACTED if isinstance(k, str) and k.lower() in sensitive else _walk(vv)
                for k, vv in v.items()
            }
        if isinstance(v, (list, tuple)):
            return [_walk(x) for x in v]
        return v

    return _walk(value)
