"""Database tests for the ledger write path.

Tests focus on FIFO lot creation/depletion, realized gains, atomic
rollback of refused writes and transaction deletion.
"""

import asyncio
import csv

import pytest
from datetime import date
from sqlalchemy import select, func

from folio.models import (
    Account, Asset, Transaction, TransactionType, FundingSource,
    TaxLot, LotDepletion, AUTO_DEPOSIT_NOTE,
)
from folio.services.accounting import TransactionRecorderService, CSVExportService, PairLockRegistry
from folio.services.errors import (
    ValidationError,
    InsufficientInventory,
    LedgerConflictError,
    TransactionNotFound,
)


async def buy(recorder, account_id, asset_id, quantity, price, on, fees=0.0, **kwargs):
    return await recorder.record_transaction(
        account_id=account_id,
        type=TransactionType.BUY,
        date=on,
        asset_id=asset_id,
        quantity=quantity,
        price_per_unit=price,
        fees=fees,
        **kwargs,
    )


async def sell(recorder, account_id, asset_id, quantity, price, on, fees=0.0):
    return await recorder.record_transaction(
        account_id=account_id,
        type=TransactionType.SELL,
        date=on,
        asset_id=asset_id,
        quantity=quantity,
        price_per_unit=price,
        fees=fees,
    )


async def lots_for(session, account_id, asset_id):
    result = await session.execute(
        select(TaxLot)
        .where(TaxLot.account_id == account_id, TaxLot.asset_id == asset_id)
        .order_by(TaxLot.id)
    )
    return result.scalars().all()


async def count(session, model):
    result = await session.execute(select(func.count()).select_from(model))
    return result.scalar_one()


@pytest.fixture
def ids(sample_account, sample_asset):
    """Plain ids (ORM instances expire after a rolled-back write)."""
    return sample_account.id, sample_asset.id


@pytest.fixture
def recorder(test_db):
    return TransactionRecorderService(test_db)


class TestBuy:
    """BUY creates exactly one lot."""

    @pytest.mark.asyncio
    async def test_buy_creates_one_lot_with_capitalized_fees(self, test_db, recorder, ids):
        account_id, asset_id = ids

        tx = await buy(recorder, account_id, asset_id, 10, 100.0, date(2024, 1, 1), fees=1.0)

        assert tx.amount == pytest.approx(1000.0)
        assert tx.funding_source == FundingSource.CASH
        lots = await lots_for(test_db, account_id, asset_id)
        assert len(lots) == 1
        assert lots[0].quantity == 10
        assert lots[0].remaining_quantity == 10
        assert lots[0].cost_basis_per_unit == pytest.approx(100.1)
        assert lots[0].purchase_transaction_id == tx.id
        assert lots[0].purchase_date == date(2024, 1, 1)

    @pytest.mark.asyncio
    async def test_external_buy_records_auto_deposit(self, test_db, recorder, ids):
        account_id, asset_id = ids

        tx = await buy(
            recorder, account_id, asset_id, 10, 100.0, date(2024, 1, 1),
            fees=1.0, funding_source=FundingSource.EXTERNAL,
        )

        result = await test_db.execute(
            select(Transaction).where(Transaction.related_transaction_id == tx.id)
        )
        deposit = result.scalar_one()
        assert deposit.type == TransactionType.DEPOSIT
        assert deposit.amount == pytest.approx(1001.0)
        assert deposit.notes == AUTO_DEPOSIT_NOTE
        assert deposit.date == date(2024, 1, 1)
        assert deposit.asset_id is None
        assert deposit.is_auto_deposit

    @pytest.mark.asyncio
    async def test_supplied_amount_must_match(self, test_db, recorder, ids):
        account_id, asset_id = ids

        with pytest.raises(ValidationError):
            await recorder.record_transaction(
                account_id=account_id, type=TransactionType.BUY, date=date(2024, 1, 1),
                asset_id=asset_id, quantity=10, price_per_unit=100.0, amount=900.0,
            )

        assert await count(test_db, Transaction) == 0
        assert await count(test_db, TaxLot) == 0


class TestSell:
    """SELL depletes lots FIFO and stores the realized gain."""

    @pytest.mark.asyncio
    async def test_partial_sell(self, test_db, recorder, ids):
        account_id, asset_id = ids
        await buy(recorder, account_id, asset_id, 10, 100.0, date(2024, 1, 1))

        tx = await sell(recorder, account_id, asset_id, 4, 130.0, date(2024, 6, 1))

        assert tx.amount == pytest.approx(520.0)
        assert tx.realized_gain == pytest.approx(120.0)
        lots = await lots_for(test_db, account_id, asset_id)
        assert lots[0].remaining_quantity == pytest.approx(6)
        assert lots[0].closed_at is None

        result = await test_db.execute(select(LotDepletion))
        depletion = result.scalar_one()
        assert depletion.quantity == pytest.approx(4)
        assert depletion.cost_basis == pytest.approx(400.0)
        assert depletion.sell_transaction_id == tx.id
        assert depletion.depleted_at == date(2024, 6, 1)

    @pytest.mark.asyncio
    async def test_sell_across_lots_closes_oldest(self, test_db, recorder, ids):
        account_id, asset_id = ids
        await buy(recorder, account_id, asset_id, 10, 100.0, date(2024, 1, 1))
        await buy(recorder, account_id, asset_id, 5, 110.0, date(2024, 2, 1))

        tx = await sell(recorder, account_id, asset_id, 12, 130.0, date(2024, 6, 1), fees=2.0)

        assert tx.realized_gain == pytest.approx((12 * 130.0 - 2.0) - (1000.0 + 220.0))
        first, second = await lots_for(test_db, account_id, asset_id)
        assert first.remaining_quantity == 0.0
        assert first.closed_at == date(2024, 6, 1)
        assert second.remaining_quantity == pytest.approx(3)

    @pytest.mark.asyncio
    async def test_oversell_rejected_without_state_change(self, test_db, recorder, ids):
        account_id, asset_id = ids
        await buy(recorder, account_id, asset_id, 10, 100.0, date(2024, 1, 1))

        with pytest.raises(InsufficientInventory) as exc_info:
            await sell(recorder, account_id, asset_id, 15, 130.0, date(2024, 6, 1))

        assert exc_info.value.requested == 15
        assert exc_info.value.available == pytest.approx(10)

        lots = await lots_for(test_db, account_id, asset_id)
        assert [lot.remaining_quantity for lot in lots] == [10]
        assert await count(test_db, Transaction) == 1
        assert await count(test_db, LotDepletion) == 0

    @pytest.mark.asyncio
    async def test_sell_dated_before_purchase_rejected(self, test_db, recorder, ids):
        account_id, asset_id = ids
        await buy(recorder, account_id, asset_id, 10, 100.0, date(2024, 6, 1))

        with pytest.raises(InsufficientInventory) as exc_info:
            await sell(recorder, account_id, asset_id, 4, 130.0, date(2024, 1, 1))

        assert exc_info.value.available == 0
        lots = await lots_for(test_db, account_id, asset_id)
        assert [lot.remaining_quantity for lot in lots] == [10]
        assert await count(test_db, Transaction) == 1
        assert await count(test_db, LotDepletion) == 0

    @pytest.mark.asyncio
    async def test_sell_only_draws_on_lots_held_on_its_date(self, test_db, recorder, ids):
        account_id, asset_id = ids
        await buy(recorder, account_id, asset_id, 10, 100.0, date(2024, 1, 1))
        await buy(recorder, account_id, asset_id, 5, 110.0, date(2024, 6, 1))

        with pytest.raises(InsufficientInventory) as exc_info:
            await sell(recorder, account_id, asset_id, 12, 130.0, date(2024, 3, 1))

        assert exc_info.value.available == pytest.approx(10)
        assert await count(test_db, LotDepletion) == 0

    @pytest.mark.asyncio
    async def test_trade_dated_before_latest_sell_conflicts(self, test_db, recorder, ids):
        account_id, asset_id = ids
        await buy(recorder, account_id, asset_id, 10, 100.0, date(2024, 1, 1))
        await sell(recorder, account_id, asset_id, 4, 130.0, date(2024, 6, 1))

        with pytest.raises(LedgerConflictError):
            await buy(recorder, account_id, asset_id, 5, 90.0, date(2024, 3, 1))
        with pytest.raises(LedgerConflictError):
            await sell(recorder, account_id, asset_id, 2, 120.0, date(2024, 3, 1))

        assert await count(test_db, Transaction) == 2
        assert await count(test_db, TaxLot) == 1
        assert await count(test_db, LotDepletion) == 1

    @pytest.mark.asyncio
    async def test_trade_on_latest_sell_date_is_accepted(self, test_db, recorder, ids):
        account_id, asset_id = ids
        await buy(recorder, account_id, asset_id, 10, 100.0, date(2024, 1, 1))
        await sell(recorder, account_id, asset_id, 4, 130.0, date(2024, 6, 1))

        await buy(recorder, account_id, asset_id, 5, 90.0, date(2024, 6, 1))
        tx = await sell(recorder, account_id, asset_id, 8, 120.0, date(2024, 6, 1))

        # the remaining 6 of the January lot go first
        assert tx.realized_gain == pytest.approx(8 * 120.0 - (600.0 + 180.0))
        first, second = await lots_for(test_db, account_id, asset_id)
        assert first.remaining_quantity == 0.0
        assert second.remaining_quantity == pytest.approx(3)

    @pytest.mark.asyncio
    async def test_sell_requires_quantity_and_price(self, test_db, recorder, ids):
        account_id, asset_id = ids

        with pytest.raises(ValidationError):
            await recorder.record_transaction(
                account_id=account_id, type=TransactionType.SELL, date=date(2024, 1, 1),
                asset_id=asset_id, price_per_unit=100.0,
            )
        with pytest.raises(ValidationError):
            await recorder.record_transaction(
                account_id=account_id, type=TransactionType.SELL, date=date(2024, 1, 1),
                asset_id=asset_id, quantity=1, price_per_unit=0,
            )

    @pytest.mark.asyncio
    async def test_concurrent_sells_are_serialized(self, session_factory):
        async with session_factory() as session:
            account = Account(name="Brokerage")
            asset = Asset(ticker="VTI")
            session.add_all([account, asset])
            await session.commit()
            account_id, asset_id = account.id, asset.id
            await buy(TransactionRecorderService(session), account_id, asset_id, 10, 100.0, date(2024, 1, 1))

        async def sell_six():
            async with session_factory() as session:
                return await sell(TransactionRecorderService(session), account_id, asset_id, 6, 130.0, date(2024, 6, 1))

        results = await asyncio.gather(sell_six(), sell_six(), return_exceptions=True)

        errors = [r for r in results if isinstance(r, Exception)]
        assert len(errors) == 1
        assert isinstance(errors[0], InsufficientInventory)

        async with session_factory() as session:
            lots = await lots_for(session, account_id, asset_id)
            assert lots[0].remaining_quantity == pytest.approx(4)

    @pytest.mark.asyncio
    async def test_pair_locks_are_released_after_writes(self, recorder, ids, fresh_pair_locks):
        account_id, asset_id = ids
        await buy(recorder, account_id, asset_id, 10, 100.0, date(2024, 1, 1))
        with pytest.raises(InsufficientInventory):
            await sell(recorder, account_id, asset_id, 15, 130.0, date(2024, 6, 1))

        assert len(fresh_pair_locks) == 0


class TestPairLocks:

    @pytest.mark.asyncio
    async def test_lock_kept_while_a_writer_waits(self):
        registry = PairLockRegistry()
        seen = []

        async def writer(name):
            async with registry.hold("acct", "asset"):
                seen.append(name)
                await asyncio.sleep(0)
                seen.append(len(registry))

        await asyncio.gather(writer("a"), writer("b"))

        assert seen == ["a", 1, "b", 1]
        assert len(registry) == 0


class TestCashTransactions:

    @pytest.mark.asyncio
    async def test_deposit_must_not_reference_asset(self, recorder, ids):
        account_id, asset_id = ids
        with pytest.raises(ValidationError):
            await recorder.record_transaction(
                account_id=account_id, type=TransactionType.DEPOSIT, date=date(2024, 1, 1),
                asset_id=asset_id, amount=100.0,
            )

    @pytest.mark.asyncio
    async def test_dividend_requires_asset_and_amount(self, recorder, ids):
        account_id, asset_id = ids
        with pytest.raises(ValidationError):
            await recorder.record_transaction(
                account_id=account_id, type=TransactionType.DIVIDEND, date=date(2024, 1, 1), amount=5.0,
            )
        with pytest.raises(ValidationError):
            await recorder.record_transaction(
                account_id=account_id, type=TransactionType.DIVIDEND, date=date(2024, 1, 1),
                asset_id=asset_id, amount=0,
            )

    @pytest.mark.asyncio
    async def test_interest_recorded(self, test_db, recorder, ids):
        account_id, _ = ids
        tx = await recorder.record_transaction(
            account_id=account_id, type=TransactionType.INTEREST, date=date(2024, 3, 31), amount=4.2,
        )
        assert tx.id is not None
        assert tx.funding_source is None
        assert await count(test_db, TaxLot) == 0

    @pytest.mark.asyncio
    async def test_interest_must_not_reference_asset(self, test_db, recorder, ids):
        account_id, asset_id = ids
        with pytest.raises(ValidationError):
            await recorder.record_transaction(
                account_id=account_id, type=TransactionType.INTEREST, date=date(2024, 3, 31),
                asset_id=asset_id, amount=4.2,
            )
        assert await count(test_db, Transaction) == 0


class TestDelete:
    """Deletion undoes lot changes or is refused."""

    @pytest.mark.asyncio
    async def test_delete_sell_restores_lots(self, test_db, recorder, ids):
        account_id, asset_id = ids
        await buy(recorder, account_id, asset_id, 10, 100.0, date(2024, 1, 1))
        tx = await sell(recorder, account_id, asset_id, 10, 130.0, date(2024, 6, 1))

        await recorder.delete_transaction(tx.id)

        lots = await lots_for(test_db, account_id, asset_id)
        assert lots[0].remaining_quantity == pytest.approx(10)
        assert lots[0].closed_at is None
        assert await count(test_db, LotDepletion) == 0
        assert await count(test_db, Transaction) == 1

    @pytest.mark.asyncio
    async def test_delete_earlier_sell_conflicts_while_later_sell_exists(self, test_db, recorder, ids):
        account_id, asset_id = ids
        await buy(recorder, account_id, asset_id, 10, 100.0, date(2024, 1, 1))
        await buy(recorder, account_id, asset_id, 10, 200.0, date(2024, 2, 1))
        march = await sell(recorder, account_id, asset_id, 10, 150.0, date(2024, 3, 1))
        april = await sell(recorder, account_id, asset_id, 5, 150.0, date(2024, 4, 1))
        march_id, april_id = march.id, april.id
        assert april.realized_gain == pytest.approx(5 * 150.0 - 1000.0)

        with pytest.raises(LedgerConflictError):
            await recorder.delete_transaction(march_id)

        first, second = await lots_for(test_db, account_id, asset_id)
        assert first.remaining_quantity == 0.0
        assert second.remaining_quantity == pytest.approx(5)
        assert await count(test_db, LotDepletion) == 2

        # latest first, then the earlier one
        await recorder.delete_transaction(april_id)
        await recorder.delete_transaction(march_id)

        first, second = await lots_for(test_db, account_id, asset_id)
        assert first.remaining_quantity == pytest.approx(10)
        assert second.remaining_quantity == pytest.approx(10)
        assert await count(test_db, LotDepletion) == 0

    @pytest.mark.asyncio
    async def test_delete_depleted_buy_conflicts(self, test_db, recorder, ids):
        account_id, asset_id = ids
        buy_tx = await buy(recorder, account_id, asset_id, 10, 100.0, date(2024, 1, 1))
        buy_id = buy_tx.id
        await sell(recorder, account_id, asset_id, 4, 130.0, date(2024, 6, 1))

        with pytest.raises(LedgerConflictError):
            await recorder.delete_transaction(buy_id)

        assert await count(test_db, Transaction) == 2
        lots = await lots_for(test_db, account_id, asset_id)
        assert lots[0].remaining_quantity == pytest.approx(6)

    @pytest.mark.asyncio
    async def test_delete_buy_removes_lot_and_auto_deposit(self, test_db, recorder, ids):
        account_id, asset_id = ids
        tx = await buy(
            recorder, account_id, asset_id, 10, 100.0, date(2024, 1, 1),
            funding_source=FundingSource.EXTERNAL,
        )

        await recorder.delete_transaction(tx.id)

        assert await count(test_db, Transaction) == 0
        assert await count(test_db, TaxLot) == 0

    @pytest.mark.asyncio
    async def test_delete_auto_deposit_refused(self, test_db, recorder, ids):
        account_id, asset_id = ids
        tx = await buy(
            recorder, account_id, asset_id, 10, 100.0, date(2024, 1, 1),
            funding_source=FundingSource.EXTERNAL,
        )
        result = await test_db.execute(
            select(Transaction.id).where(Transaction.related_transaction_id == tx.id)
        )
        deposit_id = result.scalar_one()

        with pytest.raises(LedgerConflictError):
            await recorder.delete_transaction(deposit_id)

        assert await count(test_db, Transaction) == 2

    @pytest.mark.asyncio
    async def test_delete_unknown_transaction(self, recorder):
        with pytest.raises(TransactionNotFound):
            await recorder.delete_transaction(9999)


class TestAuditAndExport:

    @pytest.mark.asyncio
    async def test_audit_files_written(self, test_db, ids, tmp_path):
        account_id, asset_id = ids
        recorder = TransactionRecorderService(test_db, audit_dir=tmp_path)
        await buy(recorder, account_id, asset_id, 10, 100.0, date(2024, 1, 1))
        await sell(recorder, account_id, asset_id, 4, 130.0, date(2024, 6, 1))

        with open(tmp_path / account_id / "transactions.csv", newline="") as f:
            rows = list(csv.DictReader(f))
        assert [r["type"] for r in rows] == ["Buy", "Sell"]
        assert all(r["action"] == "recorded" for r in rows)

        with open(tmp_path / account_id / "realized_2024.csv", newline="") as f:
            gains = list(csv.DictReader(f))
        assert len(gains) == 1
        assert float(gains[0]["realized_gain"]) == pytest.approx(120.0)

    @pytest.mark.asyncio
    async def test_export_realized_gains_csv(self, test_db, recorder, ids, tmp_path):
        account_id, asset_id = ids
        await buy(recorder, account_id, asset_id, 10, 100.0, date(2023, 1, 1))
        await buy(recorder, account_id, asset_id, 5, 110.0, date(2024, 2, 1))
        await sell(recorder, account_id, asset_id, 12, 130.0, date(2024, 6, 1))

        output = tmp_path / "exports" / "gains.csv"
        written = await CSVExportService(test_db).export_realized_gains_csv(output, year=2024)

        assert written == 2
        with open(output, newline="") as f:
            rows = list(csv.DictReader(f))
        assert [r["term"] for r in rows] == ["Long-term", "Short-term"]
        assert sum(float(r["gain_loss"]) for r in rows) == pytest.approx(12 * 130.0 - 1220.0)

    @pytest.mark.asyncio
    async def test_export_tax_lots_csv(self, test_db, recorder, ids, tmp_path):
        account_id, asset_id = ids
        await buy(recorder, account_id, asset_id, 10, 100.0, date(2024, 1, 1))
        await buy(recorder, account_id, asset_id, 5, 110.0, date(2024, 2, 1))
        await sell(recorder, account_id, asset_id, 10, 130.0, date(2024, 6, 1))

        output = tmp_path / "lots.csv"
        written = await CSVExportService(test_db).export_tax_lots_csv(output, open_only=True)

        assert written == 1
