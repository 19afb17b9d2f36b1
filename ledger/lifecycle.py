"""
Status rules for estimates, invoices and payments.

Pure guard functions. Services call them before writing anything, so a
rejected operation never touches the database.
"""

from datetime import date
from decimal import Decimal

from ledger.exceptions import AlreadyConvertedError, InvalidStateError, OverAllocationError, ValidationError
from ledger.models.estimate import EstimateStatus
from ledger.models.invoice import InvoiceStatus
from ledger.models.payment import PaymentStatus
from ledger.money import ZERO, to_amount

# Statuses a user may set directly. CONVERTED only comes from conversion.
USER_ESTIMATE_STATUSES = frozenset({
    EstimateStatus.DRAFT,
    EstimateStatus.SENT,
    EstimateStatus.ACCEPTED,
    EstimateStatus.DECLINED,
    EstimateStatus.EXPIRED,
})

NON_CONVERTIBLE_STATUSES = frozenset({EstimateStatus.DECLINED, EstimateStatus.EXPIRED})

PAYABLE_INVOICE_STATUSES = frozenset({InvoiceStatus.FINAL, InvoiceStatus.SENT})


def is_expired_by_date(valid_until: date | None, today: date) -> bool:
    """Whether the validity date has passed. The last valid day itself is not expired."""
    return valid_until is not None and valid_until < today


def effective_estimate_status(status: EstimateStatus, valid_until: date | None, today: date) -> EstimateStatus:
    """Status to display: a SENT estimate past valid_until shows as EXPIRED."""
    status = EstimateStatus(status)
    if status == EstimateStatus.SENT and is_expired_by_date(valid_until, today):
        return EstimateStatus.EXPIRED
    return status


def ensure_convertible(status: EstimateStatus, valid_until: date | None, today: date) -> None:
    """
    Check an estimate may be converted to a sales invoice.

    Raises:
        AlreadyConvertedError: Estimate is CONVERTED
        InvalidStateError: Estimate is DECLINED, EXPIRED, or past valid_until
    """
    status = EstimateStatus(status)
    if status == EstimateStatus.CONVERTED:
        raise AlreadyConvertedError("This estimate has already been converted to a sales invoice.")
    if status == EstimateStatus.DECLINED:
        raise InvalidStateError("Cannot convert a declined estimate.")
    if status == EstimateStatus.EXPIRED or is_expired_by_date(valid_until, today):
        raise InvalidStateError("Cannot convert an expired estimate.")


def ensure_status_change(current: EstimateStatus, target: EstimateStatus) -> None:
    """
    Check a user-requested estimate status change.

    Raises:
        AlreadyConvertedError: Estimate is already CONVERTED
        InvalidStateError: Target is CONVERTED (only conversion sets it)
    """
    if EstimateStatus(current) == EstimateStatus.CONVERTED:
        raise AlreadyConvertedError("A converted estimate's status cannot be changed.")
    if EstimateStatus(target) not in USER_ESTIMATE_STATUSES:
        raise InvalidStateError("Use convert to invoice to mark an estimate as converted.")


def derive_payment_status(gross_amount: Decimal, allocated_amount: Decimal) -> PaymentStatus:
    """Payment status from how much of it has been allocated."""
    allocated = to_amount(allocated_amount)
    if allocated <= ZERO:
        return PaymentStatus.UNALLOCATED
    if allocated >= to_amount(gross_amount):
        return PaymentStatus.ALLOCATED
    return PaymentStatus.PARTIALLY_ALLOCATED


def outstanding_balance(total_amount: Decimal, paid_amount: Decimal) -> Decimal:
    """What is still owed on an invoice; never negative."""
    return max(ZERO, to_amount(total_amount) - to_amount(paid_amount))


def ensure_allocation(
    amount: Decimal,
    invoice_status: InvoiceStatus,
    payment_remaining: Decimal,
    invoice_outstanding: Decimal,
) -> None:
    """
    Check an allocation of `amount` from a payment to a sales invoice.

    Raises:
        ValidationError: Amount is not positive
        InvalidStateError: Invoice is not FINAL or SENT
        OverAllocationError: Amount exceeds payment remaining or invoice outstanding
    """
    amount = to_amount(amount)
    if amount <= ZERO:
        raise ValidationError("Allocation amount must be greater than 0.")
    if InvoiceStatus(invoice_status) not in PAYABLE_INVOICE_STATUSES:
        raise InvalidStateError("Payments can only be allocated to Final or Sent invoices.")
    if payment_remaining <= ZERO:
        raise OverAllocationError("Payment is fully allocated. No remaining amount to allocate.")
    if amount > payment_remaining:
        raise OverAllocationError("Amount exceeds payment remaining.")
    if amount > invoice_outstanding:
        raise OverAllocationError("Amount exceeds invoice outstanding balance.")
