"""Domain models for provider billing."""

from billing_core.models.account import AccountSnapshot, DisputeStatus, SubscriptionStatus, Tier
from billing_core.models.charge import (
    ChargeResult,
    ChargeStatus,
    LeadChargeOutcome,
    LeadChargeStatus,
    LeadFeeQuote,
    OutcomeKind,
)
from billing_core.models.dispute import (
    TERMINAL_DISPUTE_STATUSES,
    DisputeDetails,
    DisputeLedgerResult,
    DisputeOutcome,
)
from billing_core.models.dunning import DunningAction, DunningPolicy, DunningState, GracePeriodStatus
from billing_core.models.webhook import (
    FailedWebhookEvent,
    IngressResult,
    IngressStatus,
    WebhookEvent,
    WebhookEventKind,
    WebhookEventStatus,
)

__all__ = [
    "AccountSnapshot",
    "ChargeResult",
    "ChargeStatus",
    "DisputeDetails",
    "DisputeLedgerResult",
    "DisputeOutcome",
    "DisputeStatus",
    "DunningAction",
    "DunningPolicy",
    "DunningState",
    "FailedWebhookEvent",
    "GracePeriodStatus",
    "IngressResult",
    "IngressStatus",
    "LeadChargeOutcome",
    "LeadChargeStatus",
    "LeadFeeQuote",
    "OutcomeKind",
    "SubscriptionStatus",
    "TERMINAL_DISPUTE_STATUSES",
    "Tier",
    "WebhookEvent",
    "WebhookEventKind",
    "WebhookEventStatus",
]
