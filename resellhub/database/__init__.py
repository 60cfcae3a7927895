"""Database package for resellhub."""
from .connection import Database, UnitOfWork
from .models import (
    Base,
    Category,
    Deposit,
    DepositStatus,
    Order,
    OrderItem,
    OrderStatus,
    PaymentGatewayConfig,
    Product,
    ProductVariant,
    ProviderConfig,
    User,
    VariantProvider,
    WalletTransaction,
    WalletTransactionType,
)

__all__ = [
    "Base",
    "Category",
    "Database",
    "Deposit",
    "DepositStatus",
    "Order",
    "OrderItem",
    "OrderStatus",
    "PaymentGatewayConfig",
    "Product",
    "ProductVariant",
    "ProviderConfig",
    "UnitOfWork",
    "User",
    "VariantProvider",
    "WalletTransaction",
    "WalletTransactionType",
]
