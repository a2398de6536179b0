"""
FastAPI REST API Module

Provides REST endpoints for lending operations: loan creation, payments,
loan ledgers, EMI schedules and customer account overviews.
"""

import threading
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import FastAPI, Depends, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import uvicorn

from . import __version__
from .amounts import format_amount
from .config import LendingConfig, get_config
from .exceptions import (
    LendingError, InvalidInputError, NotFoundError, LoanClosedError,
    PaymentExceedsBalanceError, ConcurrentModificationError, StorageUnavailableError
)
from .loans import MAX_PERIOD_YEARS, Loan, LoanPayment
from .logging_config import setup_logging, get_logger, log_action
from .repository import StorageLoanRepository
from .schemas import RegisterCustomerRequest, CreateLoanRequest, PaymentRequest
from .service import LoanService
from .storage import StorageInterface, create_storage


logger = get_logger("lending.api")


class LendingSystem:
    """Lending system with storage, repository and service wired together"""

    def __init__(self, storage: StorageInterface, max_payment_retries: int = 10,
                 require_registered_customers: bool = False,
                 max_period_years: int = MAX_PERIOD_YEARS):
        self.storage = storage
        self.repository = StorageLoanRepository(self.storage)
        self.loan_service = LoanService(
            self.repository,
            max_payment_retries=max_payment_retries,
            require_registered_customers=require_registered_customers,
            max_period_years=max_period_years
        )

    @classmethod
    def from_config(cls, config: LendingConfig) -> 'LendingSystem':
        return cls(
            create_storage(config),
            max_payment_retries=config.payment_max_retries,
            require_registered_customers=config.require_registered_customers,
            max_period_years=config.max_period_years
        )

    def close(self) -> None:
        self.storage.close()


_system_lock = threading.Lock()


# Dependency to get lending system
def get_lending_system(request: Request) -> LendingSystem:
    system = request.app.state.system
    if system is None:
        with _system_lock:
            if request.app.state.system is None:
                request.app.state.system = LendingSystem.from_config(get_config())
            system = request.app.state.system
    return system


def _loan_view(loan: Loan) -> Dict[str, Any]:
    return {
        "loan_id": loan.id,
        "customer_id": loan.customer_id,
        "principal": format_amount(loan.principal),
        "period_years": loan.period_years,
        "annual_rate_percent": format_amount(loan.annual_rate_percent),
        "total_interest": format_amount(loan.total_interest),
        "total_amount": format_amount(loan.total_amount),
        "monthly_emi": format_amount(loan.monthly_emi),
        "total_emis": loan.total_emis,
        "amount_paid": format_amount(loan.amount_paid),
        "balance_amount": format_amount(loan.balance_amount),
        "emis_paid": loan.emis_paid,
        "emis_remaining": loan.emis_remaining,
        "status": loan.status.value,
        "created_at": loan.created_at.isoformat(),
        "updated_at": loan.updated_at.isoformat()
    }


def _payment_view(payment: LoanPayment) -> Dict[str, Any]:
    return {
        "transaction_id": payment.id,
        "amount": format_amount(payment.amount),
        "type": payment.payment_type.value,
        "timestamp": payment.created_at.isoformat(),
        "balance_before": format_amount(payment.balance_before),
        "balance_after": format_amount(payment.balance_after),
        "emis_remaining_before": payment.emis_remaining_before,
        "emis_remaining_after": payment.emis_remaining_after
    }


ERROR_STATUS = [
    (InvalidInputError, status.HTTP_400_BAD_REQUEST),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (LoanClosedError, status.HTTP_400_BAD_REQUEST),
    (PaymentExceedsBalanceError, status.HTTP_400_BAD_REQUEST),
    (ConcurrentModificationError, status.HTTP_409_CONFLICT),
    (StorageUnavailableError, status.HTTP_500_INTERNAL_SERVER_ERROR),
]


def error_status(exc: LendingError) -> int:
    """HTTP status for a lending error"""
    for error_type, status_code in ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def lending_error_handler(request: Request, exc: LendingError) -> JSONResponse:
    status_code = error_status(exc)
    level = "error" if status_code >= 500 else "warning"
    log_action(
        logger, level, exc.message,
        action=f"{request.method} {request.url.path}",
        extra={"error": type(exc).__name__, "details": exc.details}
    )

    content = {"error": exc.message, "details": exc.details}
    if isinstance(exc, PaymentExceedsBalanceError):
        content["balance_amount"] = format_amount(exc.balance)
    return JSONResponse(status_code=status_code, content=content)


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": "Invalid request", "details": jsonable_encoder(exc.errors())}
    )


def create_app(system: Optional[LendingSystem] = None) -> FastAPI:
    """
    Create and configure the FastAPI application

    Args:
        system: Pre-built LendingSystem; built from configuration on first use if omitted
    """
    config = get_config()
    setup_logging(config.log_level, "lending", config.log_format)

    app = FastAPI(
        title="Core Lending API",
        description="Simple-interest loan management with EMI tracking",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.state.system = system

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(LendingError, lending_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}

    @app.get("/")
    async def root():
        """Root endpoint with system information"""
        return {
            "system": "Core Lending System",
            "version": __version__,
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "customers": "/customers",
                "loans": "/loans"
            }
        }

    # Customer Endpoints
    @app.post("/customers", status_code=status.HTTP_201_CREATED)
    async def register_customer(
        request: RegisterCustomerRequest,
        system: LendingSystem = Depends(get_lending_system)
    ):
        """Register a customer"""
        customer = system.loan_service.register_customer(request.customer_id, request.name)
        return {
            "customer_id": customer.id,
            "name": customer.name,
            "created_at": customer.created_at.isoformat()
        }

    @app.get("/customers/{customer_id}/overview")
    async def get_account_overview(
        customer_id: str,
        system: LendingSystem = Depends(get_lending_system)
    ):
        """Get all loans of a customer with totals"""
        overview = system.loan_service.get_account_overview(customer_id)

        loans = []
        for item in overview.loans:
            view = _loan_view(item.loan)
            view["total_paid"] = format_amount(item.total_paid)
            view["payment_count"] = item.payment_count
            loans.append(view)

        return {
            "customer_id": overview.customer_id,
            "total_loans": overview.total_loans,
            "summary": {
                "total_principal": format_amount(overview.total_principal),
                "total_amount": format_amount(overview.total_amount),
                "total_paid": format_amount(overview.total_paid),
                "total_balance": format_amount(overview.total_balance),
                "active_loans": overview.active_loans,
                "closed_loans": overview.closed_loans
            },
            "loans": loans
        }

    # Loan Endpoints
    @app.post("/loans", status_code=status.HTTP_201_CREATED)
    async def create_loan(
        request: CreateLoanRequest,
        system: LendingSystem = Depends(get_lending_system)
    ):
        """Lend money to a customer"""
        loan = system.loan_service.create_loan(
            customer_id=request.customer_id,
            principal=request.principal,
            period_years=request.period_years,
            annual_rate_percent=request.annual_rate_percent
        )

        return {
            "loan_id": loan.id,
            "customer_id": loan.customer_id,
            "total_interest": format_amount(loan.total_interest),
            "total_amount": format_amount(loan.total_amount),
            "monthly_emi": format_amount(loan.monthly_emi),
            "total_emis": loan.total_emis,
            "status": loan.status.value,
            "message": "Loan created successfully"
        }

    @app.get("/loans/{loan_id}")
    async def get_loan(
        loan_id: str,
        system: LendingSystem = Depends(get_lending_system)
    ):
        """Get loan details"""
        return _loan_view(system.loan_service.get_loan(loan_id))

    @app.get("/loans/{loan_id}/schedule")
    async def get_loan_schedule(
        loan_id: str,
        system: LendingSystem = Depends(get_lending_system)
    ):
        """Get the nominal EMI plan"""
        schedule = system.loan_service.get_schedule(loan_id)
        return {
            "loan_id": loan_id,
            "schedule": [
                {
                    "installment_number": entry.installment_number,
                    "emi_amount": format_amount(entry.emi_amount),
                    "balance_after": format_amount(entry.balance_after)
                }
                for entry in schedule
            ]
        }

    @app.post("/loans/{loan_id}/payments", status_code=status.HTTP_201_CREATED)
    async def record_payment(
        loan_id: str,
        request: PaymentRequest,
        system: LendingSystem = Depends(get_lending_system)
    ):
        """Record an EMI or lump-sum payment"""
        receipt = system.loan_service.record_payment(loan_id, request.amount, request.type)

        return {
            "payment_id": receipt.payment_id,
            "loan_id": loan_id,
            "amount": format_amount(receipt.payment.amount),
            "type": receipt.payment.payment_type.value,
            "balance_before": format_amount(receipt.payment.balance_before),
            "balance_after": format_amount(receipt.balance_after),
            "emis_remaining": receipt.emis_remaining,
            "status": receipt.status.value,
            "message": receipt.message
        }

    @app.get("/loans/{loan_id}/ledger")
    async def get_loan_ledger(
        loan_id: str,
        system: LendingSystem = Depends(get_lending_system)
    ):
        """Get a loan's transactions, oldest first"""
        ledger = system.loan_service.get_ledger(loan_id)

        return {
            "loan": _loan_view(ledger.loan),
            "transactions": [_payment_view(payment) for payment in ledger.payments],
            "summary": {
                "total_paid": format_amount(ledger.total_paid),
                "balance_amount": format_amount(ledger.balance_amount),
                "payment_count": ledger.payment_count
            }
        }

    return app


app = create_app()


# Run server function
def run_server(host: str = "0.0.0.0", port: int = 5000, debug: bool = False):
    """Run the FastAPI server"""
    uvicorn.run(
        "core_lending.api:app",
        host=host,
        port=port,
        reload=debug,
        log_level="info"
    )
