"""
Transaction Ledger

Domain rules for ledger transactions on top of a LocalCollection.

DESIGN DECISION: A transfer is stored as two transactions.
The debit leg (negative amount, source account) is created before the
credit leg (positive amount, destination account), and each leg is its
own pending change, so replay can never apply the credit alone first.
"""

from decimal import Decimal
from enum import Enum
from typing import Any, Optional, Union

from ledgersync.domain.collection import LocalCollection
from ledgersync.models.cache import CacheNamespace, Record


class TransactionType(str, Enum):
    INCOME = "income"
    EXPENSE = "expense"
    TRANSFER = "transfer"


Amount = Union[int, float, Decimal]


class TransactionLedger:
    """
    Transactions for the current user.

    Usage:
        ledger = TransactionLedger(transactions_collection)
        debit, credit = await ledger.create_transaction({
            "type": "transfer", "amount": 50,
            "account_id": "checking", "to_account_id": "savings",
        })
    """

    def __init__(self, collection: LocalCollection):
        if collection.namespace != CacheNamespace.TRANSACTIONS:
            raise ValueError(
                f"TransactionLedger needs the transactions collection, got {collection.namespace.value}"
            )
        self._collection = collection

    @property
    def transactions(self) -> list[Record]:
        return self._collection.items

    @staticmethod
    def transfer_legs(transaction: dict[str, Any]) -> list[Record]:
        """
        Split a transfer into its debit and credit legs.

        Raises:
            ValueError: If the destination account is missing or equals the source
        """
        source = transaction.get("account_id")
        destination = transaction.get("to_account_id")
        if not source or not destination:
            raise ValueError("A transfer needs both account_id and to_account_id")
        if source == destination:
            raise ValueError("A transfer needs two different accounts")

        # Each leg is its own row and gets its own id
        shared = {k: v for k, v in transaction.items() if k != "id"}
        amount = abs(transaction["amount"])
        debit = {
            **shared,
            "amount": -amount,
            "account_id": source,
            "description": f"Transfer to {destination}",
        }
        credit = {
            **shared,
            "amount": amount,
            "account_id": destination,
            "description": f"Transfer from {source}",
        }
        return [debit, credit]

    async def create_transaction(self, transaction: dict[str, Any]) -> list[Record]:
        """
        Record a transaction optimistically.

        Returns:
            The created records: one for income/expense, two for a transfer

        Raises:
            ValueError: If the type or amount is missing or invalid
        """
        kind = TransactionType(transaction.get("type"))
        if transaction.get("amount") is None:
            raise ValueError("A transaction needs an amount")

        if kind == TransactionType.TRANSFER:
            return await self._collection.create_many(self.transfer_legs(transaction))
        return [await self._collection.create(transaction)]

    async def update_transaction(self, transaction_id: str, updates: dict[str, Any]) -> Record:
        return await self._collection.update(transaction_id, updates)

    async def delete_transaction(self, transaction_id: str) -> Optional[Record]:
        return await self._collection.delete(transaction_id)

    def balance(self, account_id: str) -> Amount:
        """Sum of the loaded transactions' signed amounts for one account."""
        total: Amount = 0
        for tx in self.transactions:
            if tx.get("account_id") != account_id:
                continue
            amount = tx.get("amount") or 0
            if tx.get("type") == TransactionType.EXPENSE.value:
                amount = -abs(amount)
            total += amount
        return total
