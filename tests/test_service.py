"""
Test suite for the loan service

Tests loan creation, payment recording, ledgers, account overviews and the
behaviour of concurrent payments on the same loan.
"""

import pytest
import threading
from decimal import Decimal

from core_lending.exceptions import (
    InvalidInputError, LoanNotFoundError, CustomerNotFoundError, LoanClosedError,
    PaymentExceedsBalanceError, ConcurrentModificationError
)
from core_lending.loans import LoanStatus, PaymentType
from core_lending.repository import StorageLoanRepository
from core_lending.service import LoanService
from core_lending.storage import InMemoryStorage, SQLiteStorage


class ConflictingRepository(StorageLoanRepository):
    """Repository whose loan updates always lose the race"""

    def __init__(self, storage):
        super().__init__(storage)
        self.update_attempts = 0

    def update_loan(self, loan, expected_version):
        self.update_attempts += 1
        raise ConcurrentModificationError(loan.id, expected_version)


class TestLoanCreation:
    """Test lending money to customers"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.repository = StorageLoanRepository(self.storage)
        self.service = LoanService(self.repository)

    def test_create_loan(self):
        loan = self.service.create_loan("CUST001", Decimal('100000'), 2, Decimal('10'))

        assert loan.customer_id == "CUST001"
        assert loan.total_interest == Decimal('20000')
        assert loan.total_amount == Decimal('120000')
        assert loan.monthly_emi == Decimal('5000.00')
        assert loan.total_emis == 24
        assert loan.balance_amount == Decimal('120000')
        assert loan.emis_remaining == 24
        assert loan.amount_paid == Decimal('0')
        assert loan.status == LoanStatus.ACTIVE

        assert self.service.get_loan(loan.id) == loan

    def test_first_loan_registers_customer(self):
        self.service.create_loan("CUST001", 1000, 1, 5)

        assert self.repository.get_customer("CUST001") is not None

    def test_customer_id_is_trimmed(self):
        loan = self.service.create_loan("  CUST001 ", 1000, 1, 5)

        assert loan.customer_id == "CUST001"

    @pytest.mark.parametrize("customer_id", ["", "   ", None, 42])
    def test_customer_id_required(self, customer_id):
        with pytest.raises(InvalidInputError, match="customer_id"):
            self.service.create_loan(customer_id, 1000, 1, 5)

    def test_invalid_terms_store_nothing(self):
        with pytest.raises(InvalidInputError):
            self.service.create_loan("CUST001", Decimal('-5'), 1, 5)

        assert self.storage.find("loans", {}) == []
        assert self.repository.get_customer("CUST001") is None

    def test_registered_customers_required(self):
        service = LoanService(self.repository, require_registered_customers=True)

        with pytest.raises(CustomerNotFoundError):
            service.create_loan("CUST001", 1000, 1, 5)
        assert self.storage.find("loans", {}) == []

        service.register_customer("CUST001", "Asha Rao")
        loan = service.create_loan("CUST001", 1000, 1, 5)
        assert loan.customer_id == "CUST001"

    def test_register_customer_is_idempotent(self):
        first = self.service.register_customer("CUST001", "Asha Rao")
        again = self.service.register_customer("CUST001", "Someone Else")

        assert again == first
        assert again.name == "Asha Rao"
        assert len(self.storage.find("customers", {})) == 1

    def test_negative_retry_limit(self):
        with pytest.raises(ValueError):
            LoanService(self.repository, max_payment_retries=-1)

    def test_period_limit(self):
        service = LoanService(self.repository, max_period_years=30)

        assert service.create_loan("CUST001", 1000, 30, 5).total_emis == 360
        with pytest.raises(InvalidInputError, match="must not exceed 30"):
            service.create_loan("CUST001", 1000, 31, 5)
        assert len(self.repository.list_loans_by_customer("CUST001")) == 1

    def test_invalid_period_limit(self):
        with pytest.raises(ValueError):
            LoanService(self.repository, max_period_years=0)


class TestRecordPayment:
    """Test recording payments through the service"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.repository = StorageLoanRepository(self.storage)
        self.service = LoanService(self.repository)
        self.loan = self.service.create_loan("CUST001", Decimal('100000'), 2, Decimal('10'))

    def test_emi_payment(self):
        receipt = self.service.record_payment(self.loan.id, Decimal('5000'), PaymentType.EMI)

        assert receipt.balance_after == Decimal('115000')
        assert receipt.emis_remaining == 23
        assert receipt.status == LoanStatus.ACTIVE
        assert receipt.message == "Payment processed successfully"
        assert receipt.payment_id == receipt.payment.id

        loan = self.service.get_loan(self.loan.id)
        assert loan.amount_paid == Decimal('5000')
        assert loan.emis_paid == 1
        assert loan.version == 1

    def test_lump_sum_then_close(self):
        self.service.record_payment(self.loan.id, Decimal('15000'), "LUMP_SUM")
        loan = self.service.get_loan(self.loan.id)
        assert loan.balance_amount == Decimal('105000')
        assert loan.emis_remaining == 21

        receipt = self.service.record_payment(self.loan.id, Decimal('105000'), "lump_sum")

        assert receipt.status == LoanStatus.CLOSED
        assert receipt.balance_after == Decimal('0')
        assert receipt.emis_remaining == 0
        assert receipt.message == "Loan fully paid and closed"

    def test_payment_type_defaults_to_emi(self):
        receipt = self.service.record_payment(self.loan.id, Decimal('5000'))

        assert receipt.payment.payment_type == PaymentType.EMI

    def test_closed_loan_rejects_payments(self):
        self.service.record_payment(self.loan.id, Decimal('120000'), "LUMP_SUM")

        with pytest.raises(LoanClosedError):
            self.service.record_payment(self.loan.id, Decimal('1'), "EMI")

        assert len(self.service.get_ledger(self.loan.id).payments) == 1

    def test_overpayment_changes_nothing(self):
        self.service.record_payment(self.loan.id, Decimal('5000'), "EMI")

        with pytest.raises(PaymentExceedsBalanceError) as exc_info:
            self.service.record_payment(self.loan.id, Decimal('115000.01'), "LUMP_SUM")

        assert exc_info.value.balance == Decimal('115000')
        loan = self.service.get_loan(self.loan.id)
        assert loan.balance_amount == Decimal('115000')
        assert loan.version == 1
        assert self.service.get_ledger(self.loan.id).payment_count == 1

    def test_unknown_loan(self):
        with pytest.raises(LoanNotFoundError):
            self.service.record_payment("missing", Decimal('100'), "EMI")

    @pytest.mark.parametrize("amount", [0, -10, "abc"])
    def test_invalid_amount(self, amount):
        with pytest.raises(InvalidInputError):
            self.service.record_payment(self.loan.id, amount, "EMI")

    def test_invalid_type(self):
        with pytest.raises(InvalidInputError, match="EMI or LUMP_SUM"):
            self.service.record_payment(self.loan.id, Decimal('100'), "WEEKLY")

    def test_retries_exhausted(self):
        repository = ConflictingRepository(self.storage)
        service = LoanService(repository, max_payment_retries=3)

        with pytest.raises(ConcurrentModificationError):
            service.record_payment(self.loan.id, Decimal('5000'), "EMI")

        assert repository.update_attempts == 4
        assert self.service.get_ledger(self.loan.id).payment_count == 0
        assert self.service.get_loan(self.loan.id).balance_amount == Decimal('120000')

    def test_no_retries(self):
        repository = ConflictingRepository(self.storage)
        service = LoanService(repository, max_payment_retries=0)

        with pytest.raises(ConcurrentModificationError):
            service.record_payment(self.loan.id, Decimal('5000'), "EMI")

        assert repository.update_attempts == 1


class TestLedgerAndSchedule:

    def setup_method(self):
        self.service = LoanService(StorageLoanRepository(InMemoryStorage()))
        self.loan = self.service.create_loan("CUST001", Decimal('100000'), 2, Decimal('10'))

    def test_ledger_lists_payments_oldest_first(self):
        amounts = [Decimal('5000'), Decimal('20000'), Decimal('5000')]
        types = ["EMI", "LUMP_SUM", "EMI"]
        for amount, payment_type in zip(amounts, types):
            self.service.record_payment(self.loan.id, amount, payment_type)

        ledger = self.service.get_ledger(self.loan.id)

        assert [p.amount for p in ledger.payments] == amounts
        assert [p.payment_type.value for p in ledger.payments] == types
        assert ledger.total_paid == Decimal('30000')
        assert ledger.balance_amount == Decimal('90000')
        assert ledger.payment_count == 3

        # Each payment picks up where the previous one left off
        for previous, current in zip(ledger.payments, ledger.payments[1:]):
            assert current.balance_before == previous.balance_after
            assert current.emis_remaining_before == previous.emis_remaining_after

    def test_empty_ledger(self):
        ledger = self.service.get_ledger(self.loan.id)

        assert ledger.payments == []
        assert ledger.total_paid == Decimal('0')
        assert ledger.balance_amount == Decimal('120000')

    def test_ledger_unknown_loan(self):
        with pytest.raises(LoanNotFoundError):
            self.service.get_ledger("missing")

    def test_schedule(self):
        schedule = self.service.get_schedule(self.loan.id)

        assert len(schedule) == 24
        assert schedule[0].emi_amount == Decimal('5000.00')
        assert schedule[-1].balance_after == Decimal('0')

    def test_schedule_unknown_loan(self):
        with pytest.raises(LoanNotFoundError):
            self.service.get_schedule("missing")


class TestAccountOverview:

    def setup_method(self):
        self.service = LoanService(StorageLoanRepository(InMemoryStorage()))

    def test_overview_totals(self):
        first = self.service.create_loan("CUST001", Decimal('100000'), 2, Decimal('10'))
        second = self.service.create_loan("CUST001", Decimal('50000'), 1, Decimal('12'))
        self.service.create_loan("CUST002", Decimal('999'), 1, Decimal('1'))

        self.service.record_payment(first.id, Decimal('5000'), "EMI")
        self.service.record_payment(second.id, Decimal('56000'), "LUMP_SUM")

        overview = self.service.get_account_overview("CUST001")

        assert overview.customer_id == "CUST001"
        assert overview.total_loans == 2
        assert overview.total_principal == Decimal('150000')
        assert overview.total_amount == Decimal('176000')
        assert overview.total_paid == Decimal('61000')
        assert overview.total_balance == Decimal('115000')
        assert overview.active_loans == 1
        assert overview.closed_loans == 1

        # Newest loan first
        assert [item.loan.id for item in overview.loans] == [second.id, first.id]
        assert overview.loans[0].payment_count == 1
        assert overview.loans[1].total_paid == Decimal('5000')

    def test_registered_customer_without_loans(self):
        self.service.register_customer("CUST001")

        overview = self.service.get_account_overview("CUST001")

        assert overview.loans == []
        assert overview.total_loans == 0
        assert overview.total_balance == Decimal('0')

    def test_unknown_customer(self):
        with pytest.raises(CustomerNotFoundError):
            self.service.get_account_overview("NOBODY")

    def test_blank_customer_id(self):
        with pytest.raises(InvalidInputError):
            self.service.get_account_overview("  ")


class TestConcurrentPayments:
    """Concurrent payments on one loan must all be applied exactly once"""

    def run_parallel_payments(self, service, loan_id, amount, workers):
        errors = []
        barrier = threading.Barrier(workers)

        def pay():
            barrier.wait()
            try:
                service.record_payment(loan_id, amount, "LUMP_SUM")
            except Exception as e:  # collected and asserted below
                errors.append(e)

        threads = [threading.Thread(target=pay) for _ in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        return errors

    def check_paid_off(self, service, loan_id, workers, check_ledger_total=True):
        loan = service.get_loan(loan_id)
        ledger = service.get_ledger(loan_id)

        assert loan.balance_amount == Decimal('0')
        assert loan.status == LoanStatus.CLOSED
        assert loan.amount_paid == Decimal('120000')
        assert loan.version == workers
        assert ledger.payment_count == workers
        if check_ledger_total:
            assert ledger.total_paid == Decimal('120000')

    def test_parallel_payments_in_memory(self):
        service = LoanService(StorageLoanRepository(InMemoryStorage()), max_payment_retries=50)
        loan = service.create_loan("CUST001", Decimal('100000'), 2, Decimal('10'))

        errors = self.run_parallel_payments(service, loan.id, Decimal('15000'), 8)

        assert errors == []
        self.check_paid_off(service, loan.id, 8)

    def test_parallel_payments_sqlite(self, tmp_path):
        storage = SQLiteStorage(tmp_path / "concurrent.db")
        service = LoanService(StorageLoanRepository(storage), max_payment_retries=50)
        loan = service.create_loan("CUST001", Decimal('100000'), 2, Decimal('10'))

        errors = self.run_parallel_payments(service, loan.id, Decimal('15000'), 8)

        assert errors == []
        self.check_paid_off(service, loan.id, 8)
        storage.close()

    def test_parallel_uneven_shares_close_the_loan(self):
        """Seven payments of balance / 7 do not divide evenly but still pay the loan off"""
        service = LoanService(StorageLoanRepository(InMemoryStorage()), max_payment_retries=50)
        loan = service.create_loan("CUST001", Decimal('100000'), 2, Decimal('10'))

        errors = self.run_parallel_payments(service, loan.id, loan.balance_amount / 7, 7)

        assert errors == []
        self.check_paid_off(service, loan.id, 7, check_ledger_total=False)
        assert service.get_account_overview("CUST001").total_balance == Decimal('0')

    def test_overpaying_race_rejects_the_excess(self):
        """Three payments of 50000 against 120000: exactly two can succeed"""
        service = LoanService(StorageLoanRepository(InMemoryStorage()), max_payment_retries=50)
        loan = service.create_loan("CUST001", Decimal('100000'), 2, Decimal('10'))

        errors = self.run_parallel_payments(service, loan.id, Decimal('50000'), 3)

        assert len(errors) == 1
        assert isinstance(errors[0], PaymentExceedsBalanceError)
        assert errors[0].balance == Decimal('20000')
        assert service.get_loan(loan.id).balance_amount == Decimal('20000')
        assert service.get_ledger(loan.id).payment_count == 2
