"""Product marketplace: keyed store, catalog and purchase saga"""

from .product_store import Product, TrackingState, ProductStore, DOCUMENTATION_CURRENT, DOCUMENTATION_PENDING
from .catalog import ProductCatalog, ProductImage, CreatedProduct, ProductOwnershipError
from .purchase import (
    PurchaseOrchestrator,
    PurchaseOutcome,
    PurchaseState,
    PurchaseValidationError,
    ProductNotFoundError,
    RegistryNotApprovedError,
    DocumentationPendingError,
    RetryPolicy,
)

__all__ = [
    'Product',
    'TrackingState',
    'ProductStore',
    'DOCUMENTATION_CURRENT',
    'DOCUMENTATION_PENDING',
    'ProductCatalog',
    'ProductImage',
    'CreatedProduct',
    'ProductOwnershipError',
    'PurchaseOrchestrator',
    'PurchaseOutcome',
    'PurchaseState',
    'PurchaseValidationError',
    'ProductNotFoundError',
    'RegistryNotApprovedError',
    'DocumentationPendingError',
    'RetryPolicy',
]
