"""Import every model so ``Base.metadata`` and relationship lookups see all tables."""

from server.db.base_class import Base  # noqa: F401
from server.models.cache_entry import CacheEntry  # noqa: F401
from server.models.email_log import EmailLog  # noqa: F401
from server.models.merchant import Merchant  # noqa: F401
from server.models.payment_link import PaymentLink  # noqa: F401
from server.models.subscription import Subscription, SubscriptionInvoice  # noqa: F401
from server.models.transaction import Transaction  # noqa: F401
from server.models.webhook_log import WebhookLog  # noqa: F401
