from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from db.config import get_mysql_session
from models.mysql_models import User
from models.schemas import (
    AdjustRequest,
    RechargeRequest,
    SystemRechargeRequest,
    SystemWalletResponse,
    TransactionPostRequest,
    TransactionStatus,
    TransactionType,
    TransferRequest,
    WalletAccountResponse,
    WalletTransactionResponse,
)
from routes.deps import (
    get_access_service,
    get_current_user,
    require_admin,
    require_super_admin,
    serialize,
)
from services.access_service import AccessService
from services.wallet_service import WalletService

router = APIRouter(prefix="/wallet", tags=["Wallet"])


def get_wallet_service(session: Session = Depends(get_mysql_session)) -> WalletService:
    return WalletService(session)


@router.get(
    "/me",
    response_model=dict,
    summary="Get own wallet",
    description="Main and suspense balances of the caller's wallet"
)
def get_my_wallet(
    user: User = Depends(get_current_user),
    service: WalletService = Depends(get_wallet_service)
):
    return {"data": serialize(WalletAccountResponse, service.get_account(user.id))}


@router.get(
    "/logs",
    response_model=dict,
    summary="Own wallet transactions",
    description="Paginated ledger entries of the caller"
)
def list_my_transactions(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    tx_type: Optional[TransactionType] = Query(None, alias="type"),
    tx_status: Optional[TransactionStatus] = Query(None, alias="status"),
    start_date: Optional[str] = Query(None),
    end_date: Optional[str] = Query(None),
    user: User = Depends(get_current_user),
    service: WalletService = Depends(get_wallet_service)
):
    result = service.list_transactions(
        user.id,
        page=page,
        limit=limit,
        tx_type=tx_type.value if tx_type else None,
        status=tx_status.value if tx_status else None,
        start_date=start_date,
        end_date=end_date
    )
    return {
        "data": {
            "transactions": serialize(WalletTransactionResponse, result["transactions"]),
            "pagination": result["pagination"]
        }
    }


@router.post(
    "/recharge",
    response_model=dict,
    status_code=status.HTTP_201_CREATED,
    summary="Recharge own wallet"
)
def recharge(
    request: RechargeRequest,
    user: User = Depends(get_current_user),
    service: WalletService = Depends(get_wallet_service)
):
    tx = service.recharge(
        user.id,
        request.amount_paise,
        currency=request.currency,
        reference=request.reference,
        idempotency_key=request.idempotency_key
    )
    return {"success": True, "data": serialize(WalletTransactionResponse, tx)}


@router.post(
    "/transfer",
    response_model=dict,
    status_code=status.HTTP_201_CREATED,
    summary="Transfer to managed user",
    description="Moves funds from the caller's wallet to a user the caller manages"
)
def transfer(
    request: TransferRequest,
    user: User = Depends(require_admin),
    access: AccessService = Depends(get_access_service),
    service: WalletService = Depends(get_wallet_service)
):
    access.require_manage(user, request.to_user_id)
    debit, credit = service.transfer(
        user.id,
        request.to_user_id,
        request.amount_paise,
        details=request.details,
        idempotency_key=request.idempotency_key
    )
    return {
        "success": True,
        "data": {
            "debit": serialize(WalletTransactionResponse, debit),
            "credit": serialize(WalletTransactionResponse, credit)
        }
    }


@router.get(
    "/balances",
    response_model=dict,
    summary="All wallet balances"
)
def list_balances(
    user_id: Optional[int] = Query(None, gt=0),
    user: User = Depends(require_super_admin),
    service: WalletService = Depends(get_wallet_service)
):
    return {"data": service.list_balances(user_id)}


@router.post(
    "/adjust",
    response_model=dict,
    status_code=status.HTTP_201_CREATED,
    summary="Adjust a wallet",
    description="Signed manual correction of a user's balance"
)
def adjust(
    request: AdjustRequest,
    user: User = Depends(require_super_admin),
    service: WalletService = Depends(get_wallet_service)
):
    tx = service.adjust(
        request.user_id,
        request.amount_paise,
        currency=request.currency,
        details=request.details,
        idempotency_key=request.idempotency_key,
        actor_id=user.id
    )
    return {"success": True, "data": serialize(WalletTransactionResponse, tx)}


@router.get(
    "/system",
    response_model=dict,
    summary="System wallet balance"
)
def get_system_wallet(
    wallet_type: str = Query("main", pattern="^(main|reserve)$"),
    user: User = Depends(require_super_admin),
    service: WalletService = Depends(get_wallet_service)
):
    return {"data": serialize(SystemWalletResponse, service.get_system_wallet(wallet_type))}


@router.post(
    "/system/recharge",
    response_model=dict,
    status_code=status.HTTP_201_CREATED,
    summary="Recharge user from system wallet"
)
def recharge_from_system(
    request: SystemRechargeRequest,
    user: User = Depends(require_super_admin),
    service: WalletService = Depends(get_wallet_service)
):
    tx = service.recharge_from_system(
        request.user_id,
        request.amount_paise,
        details=request.details,
        idempotency_key=request.idempotency_key
    )
    return {"success": True, "data": serialize(WalletTransactionResponse, tx)}


@router.post(
    "/transactions",
    response_model=dict,
    status_code=status.HTTP_201_CREATED,
    summary="Post ledger transaction",
    description="Posts a raw ledger entry; the transaction_id makes retries safe"
)
def post_transaction(
    request: TransactionPostRequest,
    user: User = Depends(require_super_admin),
    service: WalletService = Depends(get_wallet_service)
):
    tx = service.post_transaction(
        request.user_id,
        request.type.value,
        request.amount_paise,
        request.transaction_id,
        currency=request.currency,
        details=request.details,
        from_label=request.from_label,
        to_label=request.to_label
    )
    return {"success": True, "data": serialize(WalletTransactionResponse, tx)}
