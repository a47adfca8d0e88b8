"""Infrastructure models package exports."""
from .base import Base, metadata
from .transaction import TransactionModel, TransactionCorrelationModel

__all__ = [
    "Base",
    "metadata",
    "TransactionModel",
    "TransactionCorrelationModel",
]
