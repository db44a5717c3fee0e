"""
Single-record operations on users and transactions.

Unlike bulk ingestion, these raise typed failures to the caller.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from usage_analytics.errors import NotFound, ValidationFailure

from .models import Transaction, TransactionFilter, User, UserFilter
from .repository import TransactionRepository, UserRepository

TOKEN_TYPES = {"prompt", "completion"}

USER_UPDATABLE_FIELDS = {
    "user_name", "company_name", "department", "region", "is_active_sub", "signup_date",
}
TRANSACTION_UPDATABLE_FIELDS = {
    "conversation_id", "model_name", "token_type", "token_count",
    "rate_per_1k", "calculated_cost", "timestamp",
}


def _check_fields(changes: Dict[str, Any], allowed: set, entity: str) -> None:
    unknown = set(changes) - allowed
    if unknown:
        raise ValidationFailure(f"Cannot update {entity} fields: {sorted(unknown)}")


def _check_user_values(values: Dict[str, Any]) -> None:
    for name, value in values.items():
        if name == "is_active_sub":
            if not isinstance(value, bool):
                raise ValidationFailure("is_active_sub must be a boolean")
        elif value is not None and not isinstance(value, str):
            raise ValidationFailure(f"{name} must be a string")


def _check_transaction_values(values: Dict[str, Any]) -> None:
    token_type = values.get("token_type")
    if token_type is not None and token_type not in TOKEN_TYPES:
        raise ValidationFailure(f"token_type must be one of {sorted(TOKEN_TYPES)}")
    if "token_count" in values:
        count = values["token_count"]
        if isinstance(count, bool) or not isinstance(count, int) or count < 0:
            raise ValidationFailure("token_count must be a non-negative integer")
    for name in ("rate_per_1k", "calculated_cost"):
        if name in values:
            number = values[name]
            if isinstance(number, bool) or not isinstance(number, (int, float)) or number < 0:
                raise ValidationFailure(f"{name} must be a non-negative number")
    if values.get("timestamp") is not None and not isinstance(values["timestamp"], datetime):
        raise ValidationFailure("timestamp must be a datetime")


class UserService:
    """Create, read, update and delete individual users."""

    def __init__(self, repository: UserRepository):
        self.repository = repository

    def create(self, user: User) -> User:
        """Create a user.

        Raises:
            ValidationFailure: If user_id is blank or already taken, or a
                field has the wrong type
        """
        if not user.user_id or not user.user_id.strip():
            raise ValidationFailure("user_id is required")
        _check_user_values({name: getattr(user, name) for name in USER_UPDATABLE_FIELDS})
        if self.repository.find_by_user_id(user.user_id) is not None:
            raise ValidationFailure(f"User already exists: {user.user_id}")
        return self.repository.create(user)

    def get_by_id(self, id: int) -> User:
        user = self.repository.find_by_id(id)
        if user is None:
            raise NotFound(f"User not found: {id}")
        return user

    def get_by_user_id(self, user_id: str) -> User:
        user = self.repository.find_by_user_id(user_id)
        if user is None:
            raise NotFound(f"User not found: {user_id}")
        return user

    def list(self, query: Optional[UserFilter] = None) -> Tuple[List[User], int]:
        """Page of users plus the total matching the filter."""
        query = query or UserFilter()
        unpaged = UserFilter(
            region=query.region, department=query.department, is_active_sub=query.is_active_sub
        )
        return self.repository.find_all(query), self.repository.count(unpaged)

    def update(self, id: int, changes: Dict[str, Any]) -> User:
        """Change mutable fields of a user. user_id can never change.

        Raises:
            NotFound: If no user has this id
            ValidationFailure: If changes name an unknown or immutable field,
                or a value has the wrong type
        """
        _check_fields(changes, USER_UPDATABLE_FIELDS, "user")
        _check_user_values(changes)
        self.get_by_id(id)
        updated = self.repository.update(id, changes)
        if updated is None:
            raise NotFound(f"User not found: {id}")
        return updated

    def delete(self, id: int) -> None:
        self.get_by_id(id)
        if not self.repository.delete(id):
            raise NotFound(f"User not found: {id}")

    def regions(self) -> List[str]:
        return self.repository.distinct_values("region")

    def departments(self) -> List[str]:
        return self.repository.distinct_values("department")


class TransactionService:
    """Create, read, update and delete individual transactions."""

    def __init__(self, repository: TransactionRepository):
        self.repository = repository

    def create(self, transaction: Transaction) -> Transaction:
        """Create a transaction.

        Raises:
            ValidationFailure: If row_id/user_id is blank, row_id is taken,
                or a value is out of range
        """
        if not transaction.row_id or not transaction.user_id:
            raise ValidationFailure("row_id and user_id are required")
        _check_transaction_values({
            "token_type": transaction.token_type,
            "token_count": transaction.token_count,
            "rate_per_1k": transaction.rate_per_1k,
            "calculated_cost": transaction.calculated_cost,
            "timestamp": transaction.timestamp,
        })
        if self.repository.find_by_row_id(transaction.row_id) is not None:
            raise ValidationFailure(f"Transaction already exists: {transaction.row_id}")
        return self.repository.create(transaction)

    def get_by_id(self, id: int) -> Transaction:
        transaction = self.repository.find_by_id(id)
        if transaction is None:
            raise NotFound(f"Transaction not found: {id}")
        return transaction

    def get_by_row_id(self, row_id: str) -> Transaction:
        transaction = self.repository.find_by_row_id(row_id)
        if transaction is None:
            raise NotFound(f"Transaction not found: {row_id}")
        return transaction

    def list(self, query: Optional[TransactionFilter] = None) -> Tuple[List[Transaction], int]:
        query = query or TransactionFilter()
        unpaged = TransactionFilter(
            user_id=query.user_id,
            conversation_id=query.conversation_id,
            model_name=query.model_name,
            token_type=query.token_type,
            start_date=query.start_date,
            end_date=query.end_date,
            region=query.region,
        )
        return self.repository.find_all(query), self.repository.count(unpaged)

    def list_by_user(self, user_id: str) -> Tuple[List[Transaction], int]:
        return self.list(TransactionFilter(user_id=user_id))

    def list_by_conversation(self, conversation_id: str) -> Tuple[List[Transaction], int]:
        return self.list(TransactionFilter(conversation_id=conversation_id))

    def update(self, id: int, changes: Dict[str, Any]) -> Transaction:
        """Change mutable fields. row_id and user_id can never change.

        Raises:
            NotFound: If no transaction has this id
            ValidationFailure: If a field is unknown/immutable or a value is invalid
        """
        _check_fields(changes, TRANSACTION_UPDATABLE_FIELDS, "transaction")
        _check_transaction_values(changes)
        self.get_by_id(id)
        updated = self.repository.update(id, changes)
        if updated is None:
            raise NotFound(f"Transaction not found: {id}")
        return updated

    def delete(self, id: int) -> None:
        self.get_by_id(id)
        if not self.repository.delete(id):
            raise NotFound(f"Transaction not found: {id}")
