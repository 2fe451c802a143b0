"""
FastAPI REST API Module

Thin HTTP adapter over the ledger engine, dashboards and policy settings.
The acting party is taken from the X-Actor-Id / X-Actor-Role headers set by
the upstream gateway; this module performs no authentication. Runs on port
8090 by default.
"""

from datetime import date, datetime, timezone
from typing import Any, Dict, Optional
from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from . import __version__
from .audit import RequestMeta
from .directory import PartyRole
from .errors import (
    LedgerError, ValidationError, AuthorizationError, NotFoundError, ConflictError,
    ConsistencyError, AtomicTimeoutError, PartialWriteError, ReversalWindowExpiredError,
    TransactionNotFoundError
)
from .engine import ReversalResult
from .policy import Policy
from .system import LedgerSystem
from .transactions import Transaction


# Pydantic models for API requests
class CreateTransactionRequest(BaseModel):
    client_id: str
    branch_id: str
    type: str = Field(..., description="credit or debit")
    amount: str = Field(..., description="Decimal amount as string")
    utr_id: str = Field(..., description="Alphanumeric external reference, 10-22 characters")
    remark: str = ""
    staff_id: Optional[str] = Field(None, description="Required when an admin records on behalf of staff")


class UpdateSettingsRequest(BaseModel):
    commission_rate: Optional[str] = None
    deposit_deduction_rate: Optional[str] = None


class Actor(BaseModel):
    id: str
    role: PartyRole


def http_status_for(error: LedgerError) -> int:
    """Map a ledger error family to an HTTP status code"""
    if isinstance(error, ReversalWindowExpiredError):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(error, ValidationError):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(error, NotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(error, AuthorizationError):
        return status.HTTP_403_FORBIDDEN
    if isinstance(error, ConflictError):
        return status.HTTP_409_CONFLICT
    if isinstance(error, AtomicTimeoutError):
        return status.HTTP_504_GATEWAY_TIMEOUT
    if isinstance(error, ConsistencyError):
        return status.HTTP_503_SERVICE_UNAVAILABLE
    if isinstance(error, PartialWriteError):
        return status.HTTP_500_INTERNAL_SERVER_ERROR
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def transaction_to_dict(txn: Transaction) -> Dict[str, Any]:
    return {
        "id": txn.id,
        "client_id": txn.client_id,
        "staff_id": txn.staff_id,
        "branch_id": txn.branch_id,
        "type": txn.kind.value,
        "amount": str(txn.amount),
        "commission": str(txn.commission),
        "final_amount": str(txn.final_amount),
        "utr_id": txn.utr_id,
        "remark": txn.remark,
        "balance_before": str(txn.balance_before),
        "balance_after": str(txn.balance_after),
        "status": txn.status.value,
        "created_at": txn.created_at.isoformat()
    }


def reversal_to_dict(result: ReversalResult) -> Dict[str, Any]:
    return {
        "transaction_id": result.transaction_id,
        "type": result.kind.value,
        "reversed_amount": str(result.reversed_amount),
        "old_balance": str(result.old_balance),
        "new_balance": str(result.new_balance),
        "staff_id": result.staff_id,
        "deleted_by": result.reversed_by,
        "deleted_by_role": result.reversed_by_role.value
    }


def policy_to_dict(policy: Policy) -> Dict[str, Any]:
    return {
        "commission_rate": str(policy.commission_rate),
        "deposit_deduction_rate": str(policy.deposit_deduction_rate),
        "updated_by": policy.updated_by,
        "updated_at": policy.updated_at.isoformat()
    }


# Dependencies
def get_system(request: Request) -> LedgerSystem:
    return request.app.state.system


def get_actor(
    x_actor_id: str = Header(..., alias="X-Actor-Id"),
    x_actor_role: str = Header(..., alias="X-Actor-Role")
) -> Actor:
    try:
        return Actor(id=x_actor_id, role=PartyRole(x_actor_role))
    except ValueError:
        raise HTTPException(status_code=403, detail=f"Unknown role: {x_actor_role}")


def get_request_meta(request: Request) -> RequestMeta:
    return RequestMeta(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent")
    )


def require_admin(actor: Actor) -> None:
    if actor.role != PartyRole.ADMIN:
        raise HTTPException(status_code=403, detail="Admin access required")


router = APIRouter()


# Transaction Endpoints
@router.post("/transactions", status_code=status.HTTP_201_CREATED)
def create_transaction(
    body: CreateTransactionRequest,
    actor: Actor = Depends(get_actor),
    meta: RequestMeta = Depends(get_request_meta),
    system: LedgerSystem = Depends(get_system)
):
    """Record a credit or debit"""
    if actor.role == PartyRole.STAFF:
        if body.staff_id and body.staff_id != actor.id:
            raise HTTPException(status_code=403, detail="Staff can only record their own transactions")
        staff_id = actor.id
    elif actor.role == PartyRole.ADMIN:
        if not body.staff_id:
            raise HTTPException(status_code=400, detail="staff_id is required")
        staff_id = body.staff_id
    else:
        raise HTTPException(status_code=403, detail="Only admin or staff can record transactions")

    transaction = system.engine.create_transaction(
        client_id=body.client_id,
        staff_id=staff_id,
        branch_id=body.branch_id,
        kind=body.type,
        amount=body.amount,
        utr_id=body.utr_id,
        remark=body.remark,
        request_meta=meta
    )
    return {"transaction": transaction_to_dict(transaction),
            "message": "Transaction created successfully"}


@router.get("/transactions")
def list_transactions(
    client_id: Optional[str] = None,
    staff_id: Optional[str] = None,
    branch_id: Optional[str] = None,
    type: Optional[str] = None,
    limit: Optional[int] = 50,
    actor: Actor = Depends(get_actor),
    system: LedgerSystem = Depends(get_system)
):
    """List transactions, newest first; non-admins only see their own"""
    if actor.role == PartyRole.CLIENT:
        client_id = actor.id
    elif actor.role == PartyRole.STAFF:
        staff_id = actor.id

    transactions = system.engine.list_transactions(
        client_id=client_id,
        staff_id=staff_id,
        branch_id=branch_id,
        kind=type,
        limit=limit
    )
    return {"transactions": [transaction_to_dict(t) for t in transactions]}


@router.get("/transactions/{transaction_id}")
def get_transaction(
    transaction_id: str,
    actor: Actor = Depends(get_actor),
    system: LedgerSystem = Depends(get_system)
):
    """Get transaction by ID"""
    transaction = system.engine.get_transaction(transaction_id)
    if not transaction:
        raise TransactionNotFoundError(transaction_id)
    if actor.role != PartyRole.ADMIN and actor.id not in (transaction.client_id, transaction.staff_id):
        raise HTTPException(status_code=403, detail="Access denied")
    return transaction_to_dict(transaction)


@router.delete("/transactions/{transaction_id}")
def delete_transaction(
    transaction_id: str,
    actor: Actor = Depends(get_actor),
    meta: RequestMeta = Depends(get_request_meta),
    system: LedgerSystem = Depends(get_system)
):
    """Reverse a transaction and restore the staff balance"""
    result = system.engine.reverse_transaction(
        transaction_id=transaction_id,
        requesting_role=actor.role,
        requesting_party_id=actor.id,
        request_meta=meta
    )
    return {"reversal": reversal_to_dict(result),
            "message": "Transaction deleted successfully"}


# Dashboard Endpoints
@router.get("/dashboard/admin")
def admin_dashboard(
    day: Optional[date] = None,
    branch_id: Optional[str] = None,
    actor: Actor = Depends(get_actor),
    system: LedgerSystem = Depends(get_system)
):
    require_admin(actor)
    return system.dashboard.admin_dashboard(day=day, branch_id=branch_id)


@router.get("/dashboard/client")
def client_dashboard(
    day: Optional[date] = None,
    client_id: Optional[str] = None,
    actor: Actor = Depends(get_actor),
    system: LedgerSystem = Depends(get_system)
):
    if actor.role == PartyRole.CLIENT:
        client_id = actor.id
    elif actor.role != PartyRole.ADMIN:
        raise HTTPException(status_code=403, detail="Access denied")
    if not client_id:
        raise HTTPException(status_code=400, detail="client_id is required")
    return system.dashboard.client_dashboard(client_id, day=day)


@router.get("/dashboard/staff")
def staff_dashboard(
    day: Optional[date] = None,
    staff_id: Optional[str] = None,
    branch_id: Optional[str] = None,
    actor: Actor = Depends(get_actor),
    system: LedgerSystem = Depends(get_system)
):
    if actor.role == PartyRole.STAFF:
        staff_id = actor.id
    elif actor.role != PartyRole.ADMIN:
        raise HTTPException(status_code=403, detail="Access denied")
    if not staff_id:
        raise HTTPException(status_code=400, detail="staff_id is required")
    return system.dashboard.staff_dashboard(staff_id, day=day, branch_id=branch_id)


# Settings Endpoints
@router.get("/settings")
def get_settings(
    actor: Actor = Depends(get_actor),
    system: LedgerSystem = Depends(get_system)
):
    return policy_to_dict(system.policy_store.get_policy())


@router.put("/settings")
def update_settings(
    body: UpdateSettingsRequest,
    actor: Actor = Depends(get_actor),
    meta: RequestMeta = Depends(get_request_meta),
    system: LedgerSystem = Depends(get_system)
):
    """Change commission rates; existing transactions keep their amounts"""
    require_admin(actor)
    policy = system.policy_store.update_policy(
        commission_rate=body.commission_rate,
        deposit_deduction_rate=body.deposit_deduction_rate,
        updated_by=actor.id,
        request_meta=meta
    )
    return {"settings": policy_to_dict(policy), "message": "Settings updated successfully"}


def create_app(system: Optional[LedgerSystem] = None) -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Branch Ledger API",
        description="Staff cash ledger with commissions, reversals and daily summaries",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.state.system = system or LedgerSystem()

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(LedgerError)
    async def ledger_error_handler(request: Request, exc: LedgerError):
        return JSONResponse(
            status_code=http_status_for(exc),
            content={"detail": exc.message, "kind": exc.kind}
        )

    app.include_router(router, prefix="/api")

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "mode": app.state.system.atomic_unit.mode,
            "timestamp": datetime.now(timezone.utc).isoformat()
        }

    return app
