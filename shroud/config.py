"""
Configuration
Runtime settings for a Shroud client, with environment overrides.

Every field has a default that works against the public relay the
project started on. Override in code, or with ``SHROUD_*`` variables:

  SHROUD_RELAYS=wss://a.example,wss://b.example
  SHROUD_QUERY_TIMEOUT=8
  SHROUD_NOTIFICATION_MAX_DELAY=0
  SHROUD_LEGACY_KEY_DERIVATION=false
"""

import os
from dataclasses import asdict, dataclass, field, fields

from shroud.errors import ValidationFailure
from shroud.validation import validate_relay_url


DEFAULT_RELAYS = ["wss://nostr-relay.online"]
GROUP_TAG = "bitcoin-group"
INTEREST_TAG = "bitcoin-interest"
WHITELIST_D_TAG = "bitcoin-group-whitelist"
GROUP_CONFIG_D_TAG = "bitcoin-group-config"
USER_CONFIG_D_TAG = "bitcoin-swap-user-config"

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


@dataclass
class ShroudConfig:
    """
    Settings for one client.

    Args:
        relays: Relay URLs to publish to and query.
        group_tag: Topic tag carried by group-scoped events.
        interest_tag: Topic tag carried by interest signals.
        query_timeout: Per-relay seconds for a query.
        publish_timeout: Per-relay seconds for a publish.
        padding_target: Serialized size every notification is padded to.
        notification_max_delay: Upper bound of the random send delay, seconds.
        offer_ttl_hours: Default offer lifetime.
        rejection_ttl_hours: Lifetime of rejection notices.
        rate_limit_requests: Publishes per author per window (0 disables).
        rate_limit_window: Window length in seconds.
        legacy_key_derivation: Group key and channel id share one hash.
        log_level: Level for ``shroud`` loggers.
    """

    relays: list[str] = field(default_factory=lambda: list(DEFAULT_RELAYS))
    group_tag: str = GROUP_TAG
    interest_tag: str = INTEREST_TAG
    query_timeout: float = 5.0
    publish_timeout: float = 5.0
    padding_target: int = 500
    notification_max_delay: float = 30.0
    offer_ttl_hours: int = 24
    rejection_ttl_hours: int = 24
    rate_limit_requests: int = 20
    rate_limit_window: float = 60.0
    legacy_key_derivation: bool = True
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, prefix: str = "SHROUD_", environ: dict | None = None) -> "ShroudConfig":
        """
        Build a config from defaults plus ``{prefix}{FIELD}`` variables.

        Raises:
            ValidationFailure: a variable cannot be parsed for its field.
        """
        environ = os.environ if environ is None else environ
        values = {}
        for f in fields(cls):
            raw = environ.get(f"{prefix}{f.name.upper()}")
            if raw is None:
                continue
            values[f.name] = _coerce(f.name, raw, f.default)
        config = cls(**values)
        config.validate()
        return config

    def validate(self) -> "ShroudConfig":
        """Check relay URLs and numeric ranges."""
        if not self.relays:
            raise ValidationFailure("At least one relay is required", field="relays")
        self.relays = [validate_relay_url(url) for url in self.relays]
        for name in ("query_timeout", "publish_timeout", "rate_limit_window"):
            if getattr(self, name) <= 0:
                raise ValidationFailure(f"{name} must be positive", field=name, value=getattr(self, name))
        for name in ("padding_target", "notification_max_delay", "offer_ttl_hours",
                     "rejection_ttl_hours", "rate_limit_requests"):
            if getattr(self, name) < 0:
                raise ValidationFailure(f"{name} must not be negative", field=name, value=getattr(self, name))
        return self

    def to_dict(self) -> dict:
        return asdict(self)


def _coerce(name: str, raw: str, default):
    if name == "relays":
        return [url.strip() for url in raw.split(",") if url.strip()]
    try:
        if isinstance(default, bool):
            lowered = raw.strip().lower()
            if lowered in _TRUE:
                return True
            if lowered in _FALSE:
                return False
            raise ValueError(raw)
        if isinstance(default, int):
            return int(raw)
        if isinstance(default, float):
            return float(raw)
    except ValueError as e:
        raise ValidationFailure(f"Cannot parse {name} from environment", field=name, value=raw) from e
    return raw
