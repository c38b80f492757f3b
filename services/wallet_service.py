import logging
import uuid
from typing import List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models.mysql_models import (
    MAX_PAISE,
    TRANSACTION_TYPES,
    SystemWallet,
    User,
    WalletAccount,
    WalletTransaction,
)
from services.errors import (
    BillingError,
    ConflictError,
    InsufficientFundsError,
    NotFoundError,
    ValidationError,
)
from services.query_utils import normalize_paging, pagination, parse_date_bound

logger = logging.getLogger(__name__)

# (balance sign, suspense sign) applied to the transaction amount.
# ADJUSTMENT carries its own sign in amount_paise.
BALANCE_EFFECTS = {
    "RECHARGE": (1, 0),
    "REFUND": (1, 0),
    "DEBIT": (-1, 0),
    "SUSPENSE_DEBIT": (-1, 1),
    "SUSPENSE_REFUND": (1, -1),
    "ADJUSTMENT": (1, 0),
}


class WalletService:
    """Wallet ledger.

    Every balance change is an append to ``wallet_transactions`` made in the
    same database transaction as the update of the locked ``wallet_accounts``
    row, so ``balance_after_paise`` always equals the running total.
    ``transaction_id`` doubles as the caller's idempotency key.
    """

    def __init__(self, mysql_session: Session):
        self.mysql_session = mysql_session

    def _generate_tx_id(self, prefix: str) -> str:
        return f"{prefix}-{uuid.uuid4().hex[:16]}"

    def _tx_id(self, prefix: str, idempotency_key: Optional[str]) -> str:
        if idempotency_key:
            return f"{prefix}-{idempotency_key}"
        return self._generate_tx_id(prefix)

    def _validate(self, tx_type: str, amount_paise: int, transaction_id: str):
        if tx_type not in TRANSACTION_TYPES:
            raise ValidationError(f"Invalid transaction type: {tx_type}")
        if not isinstance(amount_paise, int) or isinstance(amount_paise, bool):
            raise ValidationError("amount_paise must be an integer")
        if tx_type == "ADJUSTMENT":
            if amount_paise == 0:
                raise ValidationError("Adjustment amount must not be zero")
        elif amount_paise <= 0:
            raise ValidationError("amount_paise must be positive")
        if abs(amount_paise) > MAX_PAISE:
            raise ValidationError(f"amount_paise must not exceed {MAX_PAISE}")
        if not transaction_id or len(transaction_id) > 64:
            raise ValidationError("transaction_id must be 1-64 characters")

    def _find_transaction(self, transaction_id: str) -> Optional[WalletTransaction]:
        return self.mysql_session.query(WalletTransaction).filter(
            WalletTransaction.transaction_id == transaction_id
        ).first()

    def _replay(
        self,
        existing: WalletTransaction,
        user_id: int,
        tx_type: str,
        amount_paise: int
    ) -> WalletTransaction:
        if (existing.user_id, existing.type, existing.amount_paise) != (user_id, tx_type, amount_paise):
            logger.warning(f"Transaction id {existing.transaction_id} reused with different content")
            raise ConflictError("Transaction id already used for a different transaction")
        logger.info(f"Replayed wallet transaction {existing.transaction_id}")
        return existing

    def _lock_account(self, user_id: int, currency: str = "INR") -> WalletAccount:
        account = self.mysql_session.query(WalletAccount).filter(
            WalletAccount.user_id == user_id
        ).with_for_update().first()
        if account:
            return account

        if not self.mysql_session.query(User.id).filter(User.id == user_id).first():
            raise NotFoundError("User not found")

        account = WalletAccount(
            user_id=user_id,
            currency=currency,
            balance_paise=0,
            suspense_balance_paise=0
        )
        self.mysql_session.add(account)
        self.mysql_session.flush()
        return account

    def apply_transaction(
        self,
        user_id: int,
        tx_type: str,
        amount_paise: int,
        transaction_id: str,
        currency: str = "INR",
        details: Optional[str] = None,
        from_label: Optional[str] = None,
        to_label: Optional[str] = None
    ) -> WalletTransaction:
        """Apply a ledger entry inside the caller's open transaction. Does not commit."""
        self._validate(tx_type, amount_paise, transaction_id)

        existing = self._find_transaction(transaction_id)
        if existing:
            return self._replay(existing, user_id, tx_type, amount_paise)

        account = self._lock_account(user_id, currency)
        balance_sign, suspense_sign = BALANCE_EFFECTS[tx_type]
        new_balance = account.balance_paise + balance_sign * amount_paise
        new_suspense = account.suspense_balance_paise + suspense_sign * amount_paise

        if new_balance < 0 or new_suspense < 0:
            logger.warning(
                f"Insufficient funds for {tx_type} {amount_paise} on user {user_id} "
                f"(balance {account.balance_paise}, suspense {account.suspense_balance_paise})"
            )
            if new_suspense < 0:
                raise InsufficientFundsError("Insufficient suspense balance")
            raise InsufficientFundsError()
        if new_balance > MAX_PAISE or new_suspense > MAX_PAISE:
            raise ValidationError("Resulting balance exceeds the wallet limit")

        account.balance_paise = new_balance
        account.suspense_balance_paise = new_suspense

        tx = WalletTransaction(
            user_id=user_id,
            transaction_id=transaction_id,
            type=tx_type,
            status="completed",
            amount_paise=amount_paise,
            currency=currency,
            details=details,
            from_label=from_label,
            to_label=to_label,
            balance_after_paise=new_balance,
            suspense_balance_after_paise=new_suspense
        )
        self.mysql_session.add(tx)
        self.mysql_session.flush()

        logger.info(
            f"Wallet transaction {transaction_id} {tx_type} {amount_paise} for user {user_id}; "
            f"balance {new_balance}, suspense {new_suspense}"
        )
        return tx

    def post_transaction(
        self,
        user_id: int,
        tx_type: str,
        amount_paise: int,
        transaction_id: str,
        currency: str = "INR",
        details: Optional[str] = None,
        from_label: Optional[str] = None,
        to_label: Optional[str] = None
    ) -> WalletTransaction:
        try:
            tx = self.apply_transaction(
                user_id, tx_type, amount_paise, transaction_id,
                currency, details, from_label, to_label
            )
            self.mysql_session.commit()
        except BillingError:
            self.mysql_session.rollback()
            raise
        except IntegrityError:
            # A concurrent request inserted the same transaction id first.
            self.mysql_session.rollback()
            existing = self._find_transaction(transaction_id)
            if not existing:
                raise
            return self._replay(existing, user_id, tx_type, amount_paise)

        self.mysql_session.refresh(tx)
        return tx

    # Flows

    def recharge(
        self,
        user_id: int,
        amount_paise: int,
        currency: str = "INR",
        reference: Optional[str] = None,
        idempotency_key: Optional[str] = None
    ) -> WalletTransaction:
        return self.post_transaction(
            user_id,
            "RECHARGE",
            amount_paise,
            self._tx_id("RC", idempotency_key),
            currency=currency,
            details=reference or "Wallet recharge",
            from_label="self",
            to_label=f"user:{user_id}"
        )

    def adjust(
        self,
        user_id: int,
        delta_paise: int,
        currency: str = "INR",
        details: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        actor_id: Optional[int] = None
    ) -> WalletTransaction:
        return self.post_transaction(
            user_id,
            "ADJUSTMENT",
            delta_paise,
            self._tx_id("AD", idempotency_key),
            currency=currency,
            details=details or "Manual adjustment",
            from_label=f"admin:{actor_id}" if actor_id else "admin",
            to_label=f"user:{user_id}"
        )

    def transfer(
        self,
        from_user_id: int,
        to_user_id: int,
        amount_paise: int,
        details: Optional[str] = None,
        idempotency_key: Optional[str] = None
    ) -> Tuple[WalletTransaction, WalletTransaction]:
        if from_user_id == to_user_id:
            raise ValidationError("Cannot transfer to the same wallet")

        base_id = self._tx_id("TR", idempotency_key)
        note = details or "Wallet transfer"
        try:
            # Lock both rows in id order so opposite transfers cannot deadlock.
            for user_id in sorted((from_user_id, to_user_id)):
                self._lock_account(user_id)

            debit = self.apply_transaction(
                from_user_id, "DEBIT", amount_paise, f"{base_id}-D",
                details=note, from_label=f"user:{from_user_id}", to_label=f"user:{to_user_id}"
            )
            credit = self.apply_transaction(
                to_user_id, "RECHARGE", amount_paise, f"{base_id}-C",
                details=note, from_label=f"user:{from_user_id}", to_label=f"user:{to_user_id}"
            )
            self.mysql_session.commit()
        except (BillingError, IntegrityError):
            self.mysql_session.rollback()
            raise

        logger.info(f"Transferred {amount_paise} from user {from_user_id} to user {to_user_id}")
        return debit, credit

    def recharge_from_system(
        self,
        to_user_id: int,
        amount_paise: int,
        details: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        wallet_type: str = "main"
    ) -> WalletTransaction:
        transaction_id = self._tx_id("SYS", idempotency_key)

        existing = self._find_transaction(transaction_id)
        if existing:
            return self._replay(existing, to_user_id, "RECHARGE", amount_paise)

        try:
            system = self.mysql_session.query(SystemWallet).filter(
                SystemWallet.wallet_type == wallet_type
            ).with_for_update().first()
            if not system:
                raise NotFoundError("System wallet not found")
            if amount_paise <= 0:
                raise ValidationError("amount_paise must be positive")
            if system.balance_paise < amount_paise:
                logger.warning(f"System wallet {wallet_type} cannot cover {amount_paise}")
                raise InsufficientFundsError("Insufficient system wallet balance")

            system.balance_paise -= amount_paise
            tx = self.apply_transaction(
                to_user_id,
                "RECHARGE",
                amount_paise,
                transaction_id,
                currency=system.currency,
                details=details or "Recharge from system wallet",
                from_label=f"system:{wallet_type}",
                to_label=f"user:{to_user_id}"
            )
            self.mysql_session.commit()
        except (BillingError, IntegrityError):
            self.mysql_session.rollback()
            raise

        self.mysql_session.refresh(tx)
        logger.info(f"System wallet {wallet_type} recharged user {to_user_id} with {amount_paise}")
        return tx

    # Reads

    def get_account(self, user_id: int) -> WalletAccount:
        account = self.mysql_session.query(WalletAccount).filter(
            WalletAccount.user_id == user_id
        ).first()
        if account:
            return account

        account = self._lock_account(user_id)
        self.mysql_session.commit()
        self.mysql_session.refresh(account)
        return account

    def list_transactions(
        self,
        user_id: int,
        page: int = 1,
        limit: int = 20,
        tx_type: Optional[str] = None,
        status: Optional[str] = None,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None
    ) -> dict:
        page, limit = normalize_paging(page, limit)
        query = self.mysql_session.query(WalletTransaction).filter(
            WalletTransaction.user_id == user_id
        )

        if tx_type:
            query = query.filter(WalletTransaction.type == tx_type.upper())
        if status:
            query = query.filter(WalletTransaction.status == status)
        start = parse_date_bound(start_date)
        if start:
            query = query.filter(WalletTransaction.created_at >= start)
        end = parse_date_bound(end_date, end_of_day=True)
        if end:
            query = query.filter(WalletTransaction.created_at <= end)

        total = query.count()
        transactions = query.order_by(
            WalletTransaction.created_at.desc(),
            WalletTransaction.id.desc()
        ).offset((page - 1) * limit).limit(limit).all()

        return {
            "transactions": transactions,
            "pagination": pagination(page, limit, total)
        }

    def list_balances(self, user_id: Optional[int] = None) -> List[dict]:
        query = self.mysql_session.query(
            User.id,
            User.name,
            User.email,
            User.role,
            func.coalesce(WalletAccount.balance_paise, 0),
            func.coalesce(WalletAccount.suspense_balance_paise, 0),
            func.coalesce(WalletAccount.currency, "INR")
        ).outerjoin(WalletAccount, WalletAccount.user_id == User.id)

        if user_id is not None:
            query = query.filter(User.id == user_id)

        return [
            {
                "user_id": row[0],
                "name": row[1],
                "email": row[2],
                "role": row[3],
                "balance_paise": int(row[4]),
                "suspense_balance_paise": int(row[5]),
                "currency": row[6]
            }
            for row in query.order_by(User.id).all()
        ]

    def get_system_wallet(self, wallet_type: str = "main") -> SystemWallet:
        wallet = self.mysql_session.query(SystemWallet).filter(
            SystemWallet.wallet_type == wallet_type
        ).first()
        if not wallet:
            raise NotFoundError("System wallet not found")
        return wallet
