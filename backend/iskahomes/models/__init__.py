from iskahomes.models.user import User
from iskahomes.models.taxonomy import PropertyPurpose, PropertyType
from iskahomes.models.listing import Listing
from iskahomes.models.commission_rate import CommissionRate
from iskahomes.models.messaging import Conversation, Message
from iskahomes.models.lead import Lead
from iskahomes.models.subscription import (
    BillingInformation,
    Invoice,
    Subscription,
    SubscriptionHistory,
    SubscriptionPackage,
    SubscriptionRequest,
)
from iskahomes.models.platform_event import PlatformEvent
from iskahomes.models.job_run import JobRun

__all__ = [
    "User",
    "PropertyPurpose",
    "PropertyType",
    "Listing",
    "CommissionRate",
    "Conversation",
    "Message",
    "Lead",
    "SubscriptionPackage",
    "Subscription",
    "SubscriptionHistory",
    "Invoice",
    "SubscriptionRequest",
    "BillingInformation",
    "PlatformEvent",
    "JobRun",
]
