"""
Wallet ledger.

Balances are only ever changed by an UPDATE ... SET balance = balance + :amount
paired with a Transaction row. Nothing here commits; callers run these inside
their own transaction so the ride mutation and the ledger entries land together.
"""
import logging
from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.wallet import Transaction, Wallet

logger = logging.getLogger(__name__)

CANCELLATION_FEE_DEBIT = "CANCELLATION_FEE_DEBIT"
CANCELLATION_FEE_CREDIT = "CANCELLATION_FEE_CREDIT"
COMMISSION = "COMMISSION"
RIDE_EARNING = "RIDE_EARNING"


async def get_or_create_wallet(db: AsyncSession, user_id: str) -> Wallet:
    result = await db.execute(select(Wallet).where(Wallet.user_id == user_id))
    wallet = result.scalar_one_or_none()
    if wallet is None:
        wallet = Wallet(user_id=user_id, balance=Decimal("0"))
        db.add(wallet)
        await db.flush()
    return wallet


async def post_entry(
    db: AsyncSession,
    user_id: str,
    amount: Decimal,
    kind: str,
    ride_id: str | None = None,
    description: str | None = None,
) -> Transaction:
    """Apply a signed ``amount`` to the user's wallet and record it."""
    wallet = await get_or_create_wallet(db, user_id)
    await db.execute(
        update(Wallet)
        .where(Wallet.id == wallet.id)
        .values(balance=Wallet.balance + amount)
        .execution_options(synchronize_session=False)
    )
    entry = Transaction(
        wallet_id=wallet.id,
        user_id=user_id,
        ride_id=ride_id,
        kind=kind,
        amount=amount,
        description=description,
    )
    db.add(entry)
    await db.flush()
    logger.info("Ledger %s user=%s amount=%s ride=%s", kind, user_id, amount, ride_id)
    return entry


async def transfer(
    db: AsyncSession,
    payer_id: str,
    payee_id: str,
    amount: Decimal,
    ride_id: str | None = None,
    debit_kind: str = CANCELLATION_FEE_DEBIT,
    credit_kind: str = CANCELLATION_FEE_CREDIT,
    description: str | None = None,
) -> tuple[Transaction, Transaction]:
    """Move ``amount`` from payer to payee as one debit and one credit entry."""
    debit = await post_entry(db, payer_id, -amount, debit_kind, ride_id, description)
    credit = await post_entry(db, payee_id, amount, credit_kind, ride_id, description)
    return debit, credit


async def balance_of(db: AsyncSession, user_id: str) -> Decimal:
    result = await db.execute(select(Wallet.balance).where(Wallet.user_id == user_id))
    return result.scalar_one_or_none() or Decimal("0")
