"""Settlement configuration objects.

Explicit, immutable configuration handed to the settlement wiring.

Pattern:
    config = SettlementConfig(
        subscription_period_days=30,
        timeout_seconds=10.0,
        providers=(
            ProviderConfig(name="stripe", webhook_secret="whsec_...", api_key="sk_..."),
            ProviderConfig(name="razorpay", webhook_secret="...", api_key="rzp_...", api_secret="..."),
        ),
    )

Rules:
    1. Frozen dataclasses, validated on construction.
    2. Built once at startup (see SettlementConfig.from_settings).
    3. A provider without a webhook secret gets no webhook adapter.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

from settlement_engine.config import Settings

SUPPORTED_PROVIDERS = ("stripe", "razorpay")


@dataclass(frozen=True)
class ProviderConfig:
    """
    Payment provider configuration.

    Attributes:
        name: Provider name as used in webhook routes ("stripe", "razorpay").
        webhook_secret: Secret for verifying incoming webhooks.
        api_key: Stripe secret key, or Razorpay key id.
        api_secret: Razorpay key secret. Unused for Stripe.
        sandbox: If True, the account is a test-mode account. Default True.
        signature_tolerance_seconds: Maximum age of a signed Stripe
            payload. Default 300.
    """

    name: str
    webhook_secret: str | None = None
    api_key: str | None = None
    api_secret: str | None = None
    sandbox: bool = True
    signature_tolerance_seconds: int = 300

    def __post_init__(self) -> None:
        """Validate configuration."""
        if self.name not in SUPPORTED_PROVIDERS:
            raise ValueError(f"name must be one of {SUPPORTED_PROVIDERS}")
        if self.signature_tolerance_seconds < 1:
            raise ValueError("signature_tolerance_seconds must be at least 1")

    @property
    def accepts_webhooks(self) -> bool:
        return bool(self.webhook_secret)

    @property
    def can_refund(self) -> bool:
        if self.name == "razorpay":
            return bool(self.api_key and self.api_secret)
        return bool(self.api_key)


@dataclass(frozen=True)
class SettlementConfig:
    """
    Complete settlement configuration.

    Attributes:
        subscription_period_days: Access granted for a subscription payment
            whose event carries no billing period end. Default 30.
        timeout_seconds: Deadline for one settlement unit of work.
            Default 10.
        providers: Configured payment providers.
    """

    subscription_period_days: int = 30
    timeout_seconds: float = 10.0
    providers: tuple[ProviderConfig, ...] = ()

    def __post_init__(self) -> None:
        """Validate configuration."""
        if not 1 <= self.subscription_period_days <= 366:
            raise ValueError("subscription_period_days must be between 1 and 366")
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        names = [p.name for p in self.providers]
        if len(names) != len(set(names)):
            raise ValueError("provider names must be unique")

    @property
    def subscription_period(self) -> timedelta:
        return timedelta(days=self.subscription_period_days)

    def provider(self, name: str) -> ProviderConfig | None:
        for p in self.providers:
            if p.name == name:
                return p
        return None

    @classmethod
    def from_settings(cls, settings: Settings) -> SettlementConfig:
        """Build from environment-backed application settings."""
        providers = []
        if settings.stripe_webhook_secret or settings.stripe_secret_key:
            providers.append(
                ProviderConfig(
                    name="stripe",
                    webhook_secret=settings.stripe_webhook_secret,
                    api_key=settings.stripe_secret_key,
                    sandbox=(settings.stripe_secret_key or "").startswith("sk_test_"),
                    signature_tolerance_seconds=settings.stripe_webhook_tolerance_seconds,
                )
            )
        if settings.razorpay_webhook_secret or settings.razorpay_key_id:
            providers.append(
                ProviderConfig(
                    name="razorpay",
                    webhook_secret=settings.razorpay_webhook_secret,
                    api_key=settings.razorpay_key_id,
                    api_secret=settings.razorpay_key_secret,
                    sandbox=(settings.razorpay_key_id or "").startswith("rzp_test_"),
                )
            )
        return cls(
            subscription_period_days=settings.default_subscription_days,
            timeout_seconds=settings.settlement_timeout_seconds,
            providers=tuple(providers),
        )


def validate_config(config: SettlementConfig) -> list[str]:
    """
    Validate configuration and return list of issues.

    Returns empty list if configuration is valid.
    Returns list of warning/error messages if issues found.
    """
    issues: list[str] = []

    if not config.providers:
        issues.append("No payment providers configured")

    for provider in config.providers:
        if not provider.accepts_webhooks:
            if provider.sandbox:
                issues.append(
                    f"WARNING: Provider '{provider.name}' has no webhook secret; "
                    "its webhooks will be rejected"
                )
            else:
                issues.append(
                    f"CRITICAL: Live provider '{provider.name}' has no webhook secret"
                )
        if not provider.can_refund:
            issues.append(
                f"WARNING: Provider '{provider.name}' has no API credentials; "
                "refund requests will fail"
            )

    if config.subscription_period_days != 30:
        issues.append(
            f"NOTE: Subscription period default is {config.subscription_period_days} days"
        )

    return issues
