"""
config.py - runtime settings for the planboard server and live clients.

Every field can be overridden from the environment with a PLANBOARD_ prefix,
e.g. PLANBOARD_THROTTLE_INTERVAL=1.5.
"""

import os
from dataclasses import dataclass, fields


ENV_PREFIX = "PLANBOARD_"


@dataclass
class Settings:
    db_path: str = os.path.join(os.getcwd(), "data.db")
    port: int = 8080
    secret: str = "planboard_secret"
    log_level: str = "INFO"
    seed_demo_data: bool = True

    # Duplicate suppression
    dedup_ttl: float = 60.0
    fingerprint_bucket: int = 60
    fingerprint_payload_chars: int = 200

    # Throttle gate: minimum seconds between accepted updates of one order
    throttle_interval: float = 3.0

    # Producer-side "same notification recently" window
    notification_dedup_window: float = 60.0

    # Polling fallback
    poll_interval: float = 5.0
    poll_max_interval: float = 60.0
    recovery_grace: float = 2.0

    sweep_interval: float = 5.0
    notification_limit: int = 50

    # Transport
    reconnect_delay: float = 3.0
    max_reconnect_delay: float = 30.0
    heartbeat_interval: float = 15.0

    @classmethod
    def from_env(cls, environ=None):
        environ = os.environ if environ is None else environ
        values = {}
        for f in fields(cls):
            key = ENV_PREFIX + f.name.upper()
            raw = environ.get(key)
            if raw is None and f.name == "port":
                raw = environ.get("PORT")
            if raw is None:
                continue
            values[f.name] = _coerce(key, raw, f.default)
        return cls(**values)


def _coerce(key, raw, default):
    if isinstance(default, bool):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    try:
        if isinstance(default, int):
            return int(raw)
        if isinstance(default, float):
            return float(raw)
    except ValueError:
        raise ValueError(f"{key} must be a number, got {raw!r}") from None
    return raw
