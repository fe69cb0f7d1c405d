from .tenancy import TenantScoped, Organization, Member
from .currency import Balance, CurrencyTransaction
from .catalog import Item, ItemVariant
from .orders import Order, OrderLine
from .webhooks import WebhookEndpoint, WebhookDelivery, Integration
from .security import ApiKey, SecurityEvent

__all__ = [
    'TenantScoped', 'Organization', 'Member',
    'Balance', 'CurrencyTransaction',
    'Item', 'ItemVariant',
    'Order', 'OrderLine',
    'WebhookEndpoint', 'WebhookDelivery', 'Integration',
    'ApiKey', 'SecurityEvent',
]
