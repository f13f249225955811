"""
Payment Configuration
=====================
Per-environment gateway keys and checkout settings.

A single flag (ENV) selects between the production and sandbox key sets.
Secrets are read at call time so a process can be reconfigured (and tested)
without re-importing modules.
"""

import os
from datetime import timedelta
from typing import List, Mapping, Optional
from urllib.parse import urlsplit

from pydantic import BaseModel, Field

from pipeline.errors import ConfigurationError


PRODUCTION = "production"
SANDBOX = "sandbox"


class GatewayKeys(BaseModel):
    """Key material for one gateway environment"""
    environment: str
    public_key: Optional[str] = None
    integrity_secret: Optional[str] = None
    events_secret: Optional[str] = None

    def require_checkout_keys(self) -> "GatewayKeys":
        if not self.public_key or not self.integrity_secret:
            raise ConfigurationError(
                f"Gateway public key or integrity secret missing for {self.environment}",
                environment=self.environment,
            )
        return self

    def require_events_secret(self) -> str:
        if not self.events_secret:
            raise ConfigurationError(
                f"Gateway events secret missing for {self.environment}",
                environment=self.environment,
            )
        return self.events_secret


class PaymentSettings(BaseModel):
    """Checkout settings from environment"""

    environment: str = SANDBOX
    keys: GatewayKeys
    gateway_name: str = "wompi"
    checkout_url: str = "https://checkout.wompi.co/p/"
    currency: str = "COP"
    transaction_event: str = "transaction.updated"
    approved_status: str = "APPROVED"
    default_redirect_url: str = "http://localhost:5500/profile.html#orders"
    redirect_allowlist: List[str] = Field(default_factory=list)
    session_ttl_hours: int = 24

    @property
    def session_ttl(self) -> timedelta:
        return timedelta(hours=self.session_ttl_hours)

    @property
    def is_production(self) -> bool:
        return self.environment == PRODUCTION

    def resolve_redirect(self, requested: Optional[str]) -> str:
        """Client redirect targets are honoured only for allowlisted origins."""
        if not requested:
            return self.default_redirect_url
        parts = urlsplit(requested)
        origin = f"{parts.scheme}://{parts.netloc}"
        if parts.scheme in ("http", "https") and origin in self.redirect_allowlist:
            return requested
        return self.default_redirect_url

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "PaymentSettings":
        env = os.environ if environ is None else environ
        environment = PRODUCTION if env.get("ENV", "development").lower() == PRODUCTION else SANDBOX
        suffix = "" if environment == PRODUCTION else "_TEST"

        keys = GatewayKeys(
            environment=environment,
            public_key=env.get(f"GATEWAY_PUBLIC_KEY{suffix}"),
            integrity_secret=env.get(f"GATEWAY_INTEGRITY_SECRET{suffix}"),
            events_secret=env.get(f"GATEWAY_EVENTS_SECRET{suffix}"),
        )

        frontend_url = env.get("FRONTEND_URL", "http://localhost:5500").rstrip("/")
        allowlist = [
            origin.strip().rstrip("/")
            for origin in env.get("PAYMENT_REDIRECT_ALLOWLIST", frontend_url).split(",")
            if origin.strip()
        ]

        return cls(
            environment=environment,
            keys=keys,
            gateway_name=env.get("GATEWAY_NAME", "wompi"),
            checkout_url=env.get("GATEWAY_CHECKOUT_URL", "https://checkout.wompi.co/p/"),
            currency=env.get("STORE_CURRENCY", "COP"),
            default_redirect_url=env.get(
                "PAYMENT_REDIRECT_URL", f"{frontend_url}/profile.html#orders"
            ),
            redirect_allowlist=allowlist,
            session_ttl_hours=int(env.get("PAYMENT_SESSION_TTL_HOURS", "24")),
        )
