from creditledger.models.credit_transaction import CreditTransactionDocument
from creditledger.models.generation import Generation
from creditledger.models.plan import Plan
from creditledger.models.subscription import Subscription
from creditledger.models.workspace import Workspace

__all__ = [
    "Workspace",
    "CreditTransactionDocument",
    "Plan",
    "Subscription",
    "Generation",
]
