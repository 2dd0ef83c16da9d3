"""Database models."""
from leadmarket.models.credits import CreditGrant, CreditTopUp, WorkspaceCredits
from leadmarket.models.lead import CanonicalLead
from leadmarket.models.partner import Partner, PartnerEarning, PayoutRequest
from leadmarket.models.purchase import DownloadAudit, MarketplacePurchase, PurchaseItem
from leadmarket.models.upload_batch import UploadBatch
from leadmarket.models.webhook import Webhook

__all__ = [
    "CanonicalLead",
    "CreditGrant",
    "CreditTopUp",
    "DownloadAudit",
    "MarketplacePurchase",
    "Partner",
    "PartnerEarning",
    "PayoutRequest",
    "PurchaseItem",
    "UploadBatch",
    "Webhook",
    "WorkspaceCredits",
]
