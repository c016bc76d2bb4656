"""Tests for cycle payout calculation"""
import math
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from hive_rewards.models.contribution import PoolEntryStatus, PoolSource, ShareSource
from hive_rewards.models.db import ContributionShare, CyclePayout, RewardsPoolLedgerEntry
from hive_rewards.scoring import ShareCalculator
from hive_rewards.services.payouts import PayoutEngine
from hive_rewards.services.shares import ShareRecorder
from conftest import FakeUsageCounter, make_settings

ALICE = 'AliceWallet'
BOB = 'BobWallet'
RITA = 'RitaReviewer'


def make_engine(database, usage=None, **overrides):
    rewards = make_settings(**overrides).rewards
    calculator = ShareCalculator(rewards)
    counter = FakeUsageCounter(usage)
    return PayoutEngine(database, calculator, counter, rewards), ShareRecorder(database, calculator, rewards), counter


def fund(database, pool, cycle_id, amount, status=PoolEntryStatus.RECORDED):
    with database.session() as session:
        entry_id = pool.record_pool_deposit(session, PoolSource.OTHER, Decimal(amount), cycle_id=cycle_id)
        session.get(RewardsPoolLedgerEntry, entry_id).status = status.value


def payouts_for(database, cycle_id):
    with database.session() as session:
        return list(session.scalars(
            select(CyclePayout).where(CyclePayout.cycle_id == cycle_id).order_by(CyclePayout.wallet_pubkey)
        ).all())


def payout_total(rows) -> Decimal:
    return sum((Decimal(r.payout_amount) for r in rows), Decimal("0"))


@pytest.fixture
def populated(database, pool, cycle):
    engine, recorder, counter = make_engine(database, usage={'item-1': 6, 'item-2': 0})
    fund(database, pool, cycle.id, "100")
    recorder.record_shares(cycle.id, ALICE, ShareSource.CONTENT_APPROVED, 'item-1', 1.4, 1.0)
    recorder.record_shares(cycle.id, BOB, ShareSource.CONTENT_APPROVED, 'item-2', 1.0, 1.0)
    recorder.record_reviewer_shares(cycle.id, 'item-1', [RITA], ALICE, 4)
    return engine, counter


class TestCalculatePayouts:
    def test_payouts_sum_to_pool(self, database, cycle, populated) -> None:
        engine, _ = populated
        result = engine.calculate_payouts(cycle.id)

        assert result.success
        assert not result.already_calculated
        assert result.payout_count == 3
        assert result.total_pool == Decimal("100")
        assert result.unallocated == Decimal("0")

        rows = payouts_for(database, cycle.id)
        assert abs(payout_total(rows) - Decimal("100")) < Decimal("0.000001")

    def test_proportional_split(self, database, cycle, populated) -> None:
        engine, _ = populated
        engine.calculate_payouts(cycle.id)
        by_wallet = {r.wallet_pubkey: r for r in payouts_for(database, cycle.id)}

        alice_final = 1.4 * (1 + math.log(7))
        assert float(by_wallet[ALICE].shares) == pytest.approx(alice_final, abs=1e-6)
        assert float(by_wallet[ALICE].payout_amount) == pytest.approx(85 * alice_final / (alice_final + 1), abs=1e-6)
        assert float(by_wallet[BOB].payout_amount) == pytest.approx(85 / (alice_final + 1), abs=1e-6)
        assert by_wallet[RITA].partition == 'reviewer'
        assert by_wallet[RITA].payout_amount == Decimal("15")

    def test_final_shares_persisted_for_contributors(self, database, cycle, populated) -> None:
        engine, counter = populated
        engine.calculate_payouts(cycle.id)

        with database.session() as session:
            rows = {r.wallet_pubkey: r for r in session.scalars(
                select(ContributionShare).where(ContributionShare.cycle_id == cycle.id)
            ).all()}
        assert float(rows[ALICE].final_shares) == pytest.approx(4.124, abs=1e-3)
        assert float(rows[ALICE].usage_score) == pytest.approx(2.9459, abs=1e-4)
        assert rows[BOB].final_shares == Decimal("1")
        assert rows[RITA].final_shares == Decimal("2")
        # reviewer rows never consult usage
        assert sorted(counter.calls) == ['item-1', 'item-2']

    def test_second_call_is_noop(self, database, cycle, populated) -> None:
        engine, _ = populated
        first = engine.calculate_payouts(cycle.id)
        before = [(r.id, r.payout_amount) for r in payouts_for(database, cycle.id)]

        second = engine.calculate_payouts(cycle.id)
        assert second.success
        assert second.already_calculated
        assert second.payout_count == first.payout_count
        assert [(r.id, r.payout_amount) for r in payouts_for(database, cycle.id)] == before

    def test_share_recorded_after_usage_prefetch(self, database, cycle, pool, monkeypatch) -> None:
        engine, recorder, counter = make_engine(database, usage={'item-1': 0, 'item-late': 6})
        fund(database, pool, cycle.id, "10")
        recorder.record_shares(cycle.id, BOB, ShareSource.CONTENT_APPROVED, 'item-1', 1.0, 1.0)

        prefetch = engine._usage_counts

        def prefetch_then_record(cycle_id):
            counts = prefetch(cycle_id)
            recorder.record_shares(cycle_id, ALICE, ShareSource.CONTENT_APPROVED, 'item-late', 1.4, 1.0)
            return counts

        monkeypatch.setattr(engine, '_usage_counts', prefetch_then_record)
        assert engine.calculate_payouts(cycle.id).payout_count == 2

        with database.session() as session:
            alice = session.scalars(
                select(ContributionShare).where(ContributionShare.wallet_pubkey == ALICE)
            ).one()
        assert float(alice.final_shares) == pytest.approx(4.124, abs=1e-3)
        assert counter.calls == ['item-1', 'item-late']

    def test_existing_final_shares_not_recomputed(self, database, cycle, pool) -> None:
        engine, recorder, counter = make_engine(database, usage={'item-1': 100})
        fund(database, pool, cycle.id, "10")
        record_id = recorder.record_shares(cycle.id, ALICE, ShareSource.CONTENT_APPROVED, 'item-1', 1.0, 1.0)
        recorder.record_shares(cycle.id, BOB, ShareSource.CONTENT_APPROVED, None, 1.0, 1.0)
        with database.session() as session:
            session.get(ContributionShare, record_id).final_shares = Decimal("3")

        engine.calculate_payouts(cycle.id)
        by_wallet = {r.wallet_pubkey: r for r in payouts_for(database, cycle.id)}
        assert by_wallet[ALICE].shares == Decimal("3")
        assert counter.calls == []

    def test_no_shares_aborts(self, database, cycle, pool) -> None:
        engine, _, _ = make_engine(database)
        fund(database, pool, cycle.id, "50")
        result = engine.calculate_payouts(cycle.id)
        assert not result.success
        assert result.error == "No shares found for this cycle"
        assert payouts_for(database, cycle.id) == []

    def test_zero_total_shares_aborts_without_writes(self, database, cycle, pool) -> None:
        engine, recorder, _ = make_engine(database)
        fund(database, pool, cycle.id, "50")
        with database.session() as session:
            session.add(ContributionShare(
                cycle_id=cycle.id,
                wallet_pubkey=RITA,
                source=ShareSource.REVIEW_REWARD.value,
                ref_id='item-1',
                difficulty_score=Decimal("1"),
                quality_score=Decimal("1"),
                base_shares=Decimal("0"),
                final_shares=Decimal("0")
            ))

        result = engine.calculate_payouts(cycle.id)
        assert not result.success
        assert result.error == "Total shares calculated to zero"
        assert payouts_for(database, cycle.id) == []

    def test_aborted_run_leaves_final_shares_unset(self, database, cycle, pool) -> None:
        engine, recorder, _ = make_engine(database)
        recorder.record_shares(cycle.id, ALICE, ShareSource.CONTENT_APPROVED, 'item-1', 1.0, 1.0)
        with database.session() as session:
            session.add(ContributionShare(
                cycle_id=cycle.id,
                wallet_pubkey=RITA,
                source=ShareSource.REVIEW_REWARD.value,
                difficulty_score=Decimal("1"),
                quality_score=Decimal("1"),
                base_shares=Decimal("0"),
                final_shares=Decimal("-1")
            ))

        assert not engine.calculate_payouts(cycle.id).success
        with database.session() as session:
            alice = session.scalars(
                select(ContributionShare).where(ContributionShare.wallet_pubkey == ALICE)
            ).one()
            assert alice.final_shares is None

    def test_empty_partition_unallocated(self, database, cycle, pool) -> None:
        engine, recorder, _ = make_engine(database)
        fund(database, pool, cycle.id, "100")
        recorder.record_shares(cycle.id, ALICE, ShareSource.CONTENT_APPROVED, 'item-1', 1.0, 1.0)

        result = engine.calculate_payouts(cycle.id)
        assert result.success
        assert result.payout_count == 1
        assert result.unallocated == Decimal("15")
        [row] = payouts_for(database, cycle.id)
        assert row.payout_amount == Decimal("85")

    def test_only_counted_ledger_statuses(self, database, cycle, pool) -> None:
        engine, recorder, _ = make_engine(database)
        fund(database, pool, cycle.id, "40", PoolEntryStatus.PENDING_TRANSFER)
        fund(database, pool, cycle.id, "60", PoolEntryStatus.TRANSFERRED)
        fund(database, pool, cycle.id, "1000", PoolEntryStatus.FAILED)
        fund(database, pool, None, "500")
        recorder.record_shares(cycle.id, ALICE, ShareSource.CONTENT_APPROVED, 'item-1', 1.0, 1.0)

        assert engine.calculate_payouts(cycle.id).total_pool == Decimal("100")

    def test_split_normalized(self, database, cycle, pool) -> None:
        engine, recorder, _ = make_engine(database, REWARDS_CONTRIBUTOR_PCT=0.5, REWARDS_REVIEWER_PCT=0.3)
        fund(database, pool, cycle.id, "80")
        recorder.record_shares(cycle.id, ALICE, ShareSource.CONTENT_APPROVED, 'item-1', 1.0, 1.0)
        recorder.record_reviewer_shares(cycle.id, 'item-1', [RITA], ALICE, 1)

        engine.calculate_payouts(cycle.id)
        by_wallet = {r.wallet_pubkey: r for r in payouts_for(database, cycle.id)}
        assert by_wallet[ALICE].payout_amount == Decimal("50")
        assert by_wallet[RITA].payout_amount == Decimal("30")

    def test_wallet_in_both_partitions(self, database, cycle, pool) -> None:
        engine, recorder, _ = make_engine(database)
        fund(database, pool, cycle.id, "100")
        recorder.record_shares(cycle.id, ALICE, ShareSource.CONTENT_APPROVED, 'item-1', 1.0, 1.0)
        recorder.record_reviewer_shares(cycle.id, 'item-2', [ALICE], BOB, 1)

        result = engine.calculate_payouts(cycle.id)
        assert result.payout_count == 2
        with database.session() as session:
            count = session.scalar(
                select(func.count()).select_from(CyclePayout).where(CyclePayout.wallet_pubkey == ALICE)
            )
        assert count == 2


class TestWalletRewards:
    def test_summary(self, database, cycle, cycle_provider, populated) -> None:
        engine, _ = populated
        before = engine.get_wallet_rewards(RITA, cycle_provider)
        assert before.current_cycle_shares == Decimal("2")
        assert before.estimated_payout is None

        engine.calculate_payouts(cycle.id)
        after = engine.get_wallet_rewards(RITA, cycle_provider)
        assert after.estimated_payout == Decimal("15")
        assert len(after.recent_payouts) == 1
        assert after.recent_payouts[0]['cycle_number'] == cycle.number

    def test_unknown_wallet(self, database, cycle, cycle_provider) -> None:
        engine, _, _ = make_engine(database)
        summary = engine.get_wallet_rewards('nobody', cycle_provider)
        assert summary.current_cycle_shares == Decimal("0")
        assert summary.recent_payouts == []
