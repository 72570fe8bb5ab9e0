"""Share capital subscriptions, payments and certificates."""

import logging
from datetime import date

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from coopledger.models.savings import AccountStatus
from coopledger.models.share import ShareAccount, SharePayment, ShareCertificate
from coopledger.money import Money, floor_div
from coopledger.services import guards
from coopledger.services.exceptions import InvariantViolation, NotFoundError, ValidationRejection
from coopledger.services.ledger_store import get_party, lock_account
from coopledger.services.sequences import next_document_number

logger = logging.getLogger(__name__)


async def _lock_shares(db: AsyncSession, tenant_id: int, account_id: int) -> ShareAccount:
    return await lock_account(db, ShareAccount, tenant_id, account_id, "Share account")


async def open_share_account(
    db: AsyncSession,
    tenant_id: int,
    party_id: int,
    *,
    subscribed_shares: int,
    par_value_per_share: Money,
    opened_on: date,
) -> ShareAccount:
    party = await get_party(db, tenant_id, party_id)
    if subscribed_shares <= 0:
        raise ValidationRejection("Subscribed shares must be positive", constraint="shares")
    guards.check_positive_amount(par_value_per_share, "Par value")

    account = ShareAccount(
        tenant_id=tenant_id,
        party_id=party.id,
        account_number=await next_document_number(db, tenant_id, "SC", opened_on),
        subscribed_shares=subscribed_shares,
        par_value_per_share=par_value_per_share,
        total_subscribed_amount=subscribed_shares * par_value_per_share,
        total_paid_up_amount=0,
        certified_shares=0,
        status=AccountStatus.ACTIVE,
        opened_date=opened_on,
    )
    db.add(account)
    await db.flush()
    logger.info(
        "Opened share account %s: %d shares at %d",
        account.account_number, subscribed_shares, par_value_per_share,
    )
    return account


async def record_share_payment(
    db: AsyncSession,
    tenant_id: int,
    account_id: int,
    amount: Money,
    *,
    on: date,
    method: str = "cash",
    reference: str | None = None,
) -> SharePayment:
    account = await _lock_shares(db, tenant_id, account_id)
    guards.check_account_active(account.status, f"Share account {account.account_number}")
    guards.check_positive_amount(amount, "Share payment")
    guards.check_share_payment(account, amount)

    account.total_paid_up_amount += amount
    payment = SharePayment(
        account_id=account.id,
        amount=amount,
        paid_up_after=account.total_paid_up_amount,
        payment_date=on,
        payment_method=method,
        reference_number=reference,
    )
    db.add(payment)
    await db.flush()
    logger.info(
        "Share account %s paid %d (paid up %d of %d)",
        account.account_number, amount,
        account.total_paid_up_amount, account.total_subscribed_amount,
    )
    return payment


async def issue_certificate(
    db: AsyncSession,
    tenant_id: int,
    account_id: int,
    *,
    shares: int | None = None,
    on: date,
) -> ShareCertificate:
    """Certify fully paid shares not yet covered by an earlier certificate.

    Without *shares*, every eligible uncertified share goes on one certificate.
    """
    account = await _lock_shares(db, tenant_id, account_id)
    guards.check_account_active(account.status, f"Share account {account.account_number}")
    available = account.eligible_shares - account.certified_shares
    if available < 0:
        logger.error(
            "Share account %s certified %d shares but only %d are paid up",
            account.account_number, account.certified_shares, account.eligible_shares,
        )
        raise InvariantViolation(
            "Certified shares exceed paid-up shares",
            context={"account_id": account.id, "certified": account.certified_shares},
        )
    if shares is None:
        shares = available
    if shares <= 0:
        raise ValidationRejection("No paid-up shares are available to certify", constraint="certificate")
    if shares > available:
        raise ValidationRejection(
            f"Only {available} paid-up share(s) are available to certify",
            constraint="certificate",
        )

    certificate = ShareCertificate(
        account_id=account.id,
        certificate_number=await next_document_number(db, tenant_id, "CERT", on),
        shares=shares,
        amount=shares * account.par_value_per_share,
        issued_date=on,
    )
    db.add(certificate)
    account.certified_shares += shares
    await db.flush()
    logger.info(
        "Issued certificate %s for %d share(s) on %s",
        certificate.certificate_number, shares, account.account_number,
    )
    return certificate


async def share_certificates(db: AsyncSession, tenant_id: int, account_id: int) -> list[ShareCertificate]:
    result = await db.execute(
        select(ShareCertificate)
        .join(ShareAccount, ShareAccount.id == ShareCertificate.account_id)
        .where(ShareAccount.id == account_id, ShareAccount.tenant_id == tenant_id)
        .order_by(ShareCertificate.id)
    )
    return list(result.scalars().all())


async def _locked_child(db: AsyncSession, tenant_id: int, model, child_id: int, label: str):
    """Lock the owning share account, then reload a payment or certificate under it."""
    result = await db.execute(select(model.account_id).where(model.id == child_id))
    account_id = result.scalar_one_or_none()
    if account_id is None:
        raise NotFoundError(label, child_id)
    try:
        account = await _lock_shares(db, tenant_id, account_id)
    except NotFoundError:
        raise NotFoundError(label, child_id) from None
    return account, await db.get(model, child_id, populate_existing=True)


async def reverse_share_payment(
    db: AsyncSession, tenant_id: int, payment_id: int, *, on: date
) -> SharePayment:
    """Take back a payment that did not clear, e.g. a bounced cheque.

    Shares already certified against the money must be cancelled first.
    """
    account, payment = await _locked_child(db, tenant_id, SharePayment, payment_id, "Share payment")
    if payment.is_reversed:
        raise ValidationRejection(f"Share payment {payment_id} is already reversed", constraint="reversal")
    guards.check_account_active(account.status, f"Share account {account.account_number}")
    if on < payment.payment_date:
        raise ValidationRejection(
            f"Reversal date {on} is before the payment date {payment.payment_date}",
            constraint="posting_date",
        )
    remaining = account.total_paid_up_amount - payment.amount
    if account.certified_shares > floor_div(remaining, account.par_value_per_share):
        raise ValidationRejection(
            f"Share account {account.account_number} has {account.certified_shares} certified "
            "share(s) that this payment pays for; cancel the certificate first",
            constraint="certificate",
        )

    payment.is_reversed = True
    payment.reversed_date = on
    account.total_paid_up_amount = remaining
    await db.flush()
    logger.info(
        "Reversed share payment %d of %d on %s (paid up %d)",
        payment.id, payment.amount, account.account_number, remaining,
    )
    return payment


async def cancel_certificate(
    db: AsyncSession, tenant_id: int, certificate_id: int, *, on: date, reason: str
) -> ShareCertificate:
    account, certificate = await _locked_child(
        db, tenant_id, ShareCertificate, certificate_id, "Share certificate"
    )
    if certificate.is_cancelled:
        raise ValidationRejection(
            f"Certificate {certificate.certificate_number} is already cancelled",
            constraint="certificate",
        )
    if not reason:
        raise ValidationRejection("A cancellation reason is required", constraint="reason")

    certificate.is_cancelled = True
    certificate.cancelled_date = on
    certificate.cancellation_reason = reason
    account.certified_shares -= certificate.shares
    await db.flush()
    logger.info(
        "Cancelled certificate %s (%d share(s)) on %s: %s",
        certificate.certificate_number, certificate.shares, account.account_number, reason,
    )
    return certificate
