"""Tests for the rank-up trial state machine"""
from decimal import Decimal

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from hive_rewards.errors import ConflictError, InsufficientFundsError, NotFoundError, ValidationError
from hive_rewards.models.contribution import PoolSource, Question, QuestionType, TrialStatus
from hive_rewards.models.db import RankupTrial, RewardsPoolLedgerEntry, StakeLock, WalletBalance
from hive_rewards.progression import Progression
from hive_rewards.services.rankup import RankupService
from hive_rewards.services.rewards_pool import TRANSFER_JOB_TYPE
from conftest import FakeHoldProvider, make_settings, mcq

WALLET = 'RankerWallet'
QUESTION_IDS = [f'q-{n}' for n in range(20)]
LEVEL_2_STAKE = Decimal("53.98")


@pytest.fixture
def service(database, stakes, pool, question_bank, cycle_provider, cycle):
    for question_id in QUESTION_IDS:
        question_bank.add(mcq(question_id, complexity=3, correct_index=0))
    settings = make_settings()
    return RankupService(
        database,
        stakes,
        Progression(settings.progression),
        FakeHoldProvider({WALLET: Decimal("1000")}),
        question_bank,
        cycle_provider,
        pool,
        settings.rankup
    )


def fund_wallet(database, stakes, amount="1000", level=None):
    with database.session() as session:
        balance = stakes.adjust_stake(session, WALLET, Decimal(amount), 'deposit')
        if level is not None:
            balance.level = level


def set_balance(database, **values):
    with database.session() as session:
        balance = session.scalars(select(WalletBalance).where(WalletBalance.wallet_address == WALLET)).one()
        for key, value in values.items():
            setattr(balance, key, value)


def passing_answers():
    return [0] * len(QUESTION_IDS)


def failing_answers():
    return [1] * len(QUESTION_IDS)


class TestStartTrial:
    def test_escrows_trial_stake(self, database, stakes, service) -> None:
        fund_wallet(database, stakes, "100")
        trial = service.start_trial(WALLET, 2)

        assert trial.status == 'active'
        assert trial.from_level == 1
        assert trial.to_level == 2
        assert trial.question_count == 20
        assert trial.trial_stake_amount == LEVEL_2_STAKE

        balance = stakes.get_balance(WALLET)
        assert balance.available_stake == Decimal("100") - LEVEL_2_STAKE
        assert balance.escrowed_stake == LEVEL_2_STAKE

        with database.session() as session:
            row = session.get(RankupTrial, trial.id)
            assert row.hold_at_start == Decimal("1000")
            assert row.stake_at_start == Decimal("100")
            assert row.required_hold == Decimal("60")

    def test_target_must_be_next_level(self, database, stakes, service) -> None:
        fund_wallet(database, stakes)
        with pytest.raises(ValidationError) as exc_info:
            service.start_trial(WALLET, 3)
        assert exc_info.value.code == 'invalid_target_level'
        assert stakes.get_balance(WALLET).escrowed_stake == Decimal("0")

    def test_one_active_trial(self, database, stakes, service) -> None:
        fund_wallet(database, stakes)
        first = service.start_trial(WALLET, 2)
        with pytest.raises(ConflictError) as exc_info:
            service.start_trial(WALLET, 2)
        assert exc_info.value.code == 'trial_already_active'
        assert exc_info.value.details['trial_id'] == first.id
        assert stakes.get_balance(WALLET).escrowed_stake == LEVEL_2_STAKE

    def test_insufficient_hold(self, database, stakes, service) -> None:
        fund_wallet(database, stakes)
        service.hold_provider.holds[WALLET] = Decimal("59.99")
        with pytest.raises(InsufficientFundsError) as exc_info:
            service.start_trial(WALLET, 2)
        assert exc_info.value.code == 'insufficient_wallet_hold'
        assert service.get_active_trial(WALLET) is None

    def test_insufficient_stake(self, database, stakes, service) -> None:
        fund_wallet(database, stakes, "50")
        with pytest.raises(InsufficientFundsError) as exc_info:
            service.start_trial(WALLET, 2)
        assert exc_info.value.code == 'insufficient_vault_stake'
        balance = stakes.get_balance(WALLET)
        assert balance.available_stake == Decimal("50")
        assert len(stakes.get_ledger(WALLET)) == 1

    def test_get_active_trial(self, database, stakes, service) -> None:
        assert service.get_active_trial(WALLET) is None
        fund_wallet(database, stakes)
        trial = service.start_trial(WALLET, 2)
        assert service.get_active_trial(WALLET).id == trial.id


class TestCompletePass:
    def test_promotes_and_locks_stake(self, database, stakes, service, cycle) -> None:
        fund_wallet(database, stakes, "100")
        trial = service.start_trial(WALLET, 2)
        outcome = service.complete_trial(WALLET, trial.id, QUESTION_IDS, passing_answers())

        assert outcome.result == 'passed'
        assert outcome.accuracy == 1.0
        assert outcome.avg_difficulty == 3.0
        assert outcome.new_level == 2
        assert outcome.fail_streak == 0

        balance = stakes.get_balance(WALLET)
        assert balance.level == 2
        assert balance.escrowed_stake == Decimal("0")
        assert balance.locked_stake == LEVEL_2_STAKE
        assert balance.available_stake == Decimal("100") - LEVEL_2_STAKE
        assert stakes.locked_by_cycle(WALLET) == {cycle.number + 4: LEVEL_2_STAKE}

        with database.session() as session:
            lock = session.scalars(select(StakeLock)).one()
            assert lock.locked_cycle == cycle.number
            assert lock.trial_id == trial.id
            assert session.get(RankupTrial, trial.id).status == TrialStatus.PASSED.value

    def test_pass_resets_fail_streak(self, database, stakes, service) -> None:
        fund_wallet(database, stakes)
        set_balance(database, rankup_fail_streak=2, rankup_fail_streak_target_level=2)
        trial = service.start_trial(WALLET, 2)
        service.complete_trial(WALLET, trial.id, QUESTION_IDS, passing_answers())
        balance = stakes.get_balance(WALLET)
        assert balance.rankup_fail_streak == 0
        assert balance.rankup_fail_streak_target_level is None

    def test_stale_level_rejected(self, database, stakes, service) -> None:
        fund_wallet(database, stakes)
        trial = service.start_trial(WALLET, 2)
        set_balance(database, level=2)

        with pytest.raises(ConflictError) as exc_info:
            service.complete_trial(WALLET, trial.id, QUESTION_IDS, passing_answers())
        assert exc_info.value.code == 'level_mismatch'
        assert service.get_active_trial(WALLET).id == trial.id
        assert stakes.get_balance(WALLET).escrowed_stake == LEVEL_2_STAKE


class TestCompleteFail:
    def test_forfeits_escrow_into_pool(self, database, stakes, service, queue, cycle) -> None:
        fund_wallet(database, stakes, "100")
        trial = service.start_trial(WALLET, 2)
        outcome = service.complete_trial(WALLET, trial.id, QUESTION_IDS, failing_answers())

        assert outcome.result == 'failed'
        assert outcome.failed_reason == "Accuracy 0.0% below required 80.0%"
        assert outcome.forfeited_amount == LEVEL_2_STAKE
        assert outcome.fail_streak == 1
        assert outcome.new_level == 1
        assert not outcome.rollback_applied

        balance = stakes.get_balance(WALLET)
        assert balance.escrowed_stake == Decimal("0")
        assert balance.available_stake == Decimal("100") - LEVEL_2_STAKE
        assert balance.rankup_fail_streak == 1
        assert balance.rankup_fail_streak_target_level == 2

        with database.session() as session:
            entry = session.get(RewardsPoolLedgerEntry, outcome.pool_entry_id)
            assert entry.source == PoolSource.FORFEIT.value
            assert entry.amount == LEVEL_2_STAKE
            assert entry.cycle_id == cycle.id
            assert entry.wallet_pubkey == WALLET
            row = session.get(RankupTrial, trial.id)
            assert row.status == TrialStatus.FAILED.value
            assert row.forfeited_amount == LEVEL_2_STAKE

        [job] = queue.get_jobs_by_status('pending')
        assert job.type == TRANSFER_JOB_TYPE
        assert job.payload == {'ledger_entry_id': outcome.pool_entry_id}

    def test_low_difficulty_reason(self, database, stakes, service, question_bank) -> None:
        easy_ids = [f'easy-{n}' for n in range(5)]
        for question_id in easy_ids:
            question_bank.add(mcq(question_id, complexity=2))
        fund_wallet(database, stakes)
        trial = service.start_trial(WALLET, 2)

        outcome = service.complete_trial(WALLET, trial.id, easy_ids, [0] * 5)
        assert outcome.accuracy == 1.0
        assert outcome.failed_reason == "Average difficulty 2.00 below required 3.00"

    def test_third_failure_rolls_back_level(self, database, stakes, service) -> None:
        fund_wallet(database, stakes, "1000", level=3)
        outcomes = []
        for _ in range(3):
            trial = service.start_trial(WALLET, 4)
            outcomes.append(service.complete_trial(WALLET, trial.id, QUESTION_IDS, failing_answers()))

        assert [o.fail_streak for o in outcomes] == [1, 2, 0]
        assert [o.rollback_applied for o in outcomes] == [False, False, True]
        assert outcomes[-1].new_level == 2

        balance = stakes.get_balance(WALLET)
        assert balance.level == 2
        assert balance.rankup_fail_streak == 0
        assert balance.rankup_fail_streak_target_level is None

    def test_rollback_floor_is_level_one(self, database, stakes, service) -> None:
        fund_wallet(database, stakes)
        set_balance(database, rankup_fail_streak=2, rankup_fail_streak_target_level=2)
        trial = service.start_trial(WALLET, 2)
        outcome = service.complete_trial(WALLET, trial.id, QUESTION_IDS, failing_answers())
        assert outcome.rollback_applied
        assert outcome.new_level == 1

    def test_streak_restarts_at_new_target(self, database, stakes, service) -> None:
        fund_wallet(database, stakes, "1000", level=3)
        set_balance(database, rankup_fail_streak=2, rankup_fail_streak_target_level=5)
        trial = service.start_trial(WALLET, 4)
        outcome = service.complete_trial(WALLET, trial.id, QUESTION_IDS, failing_answers())

        assert outcome.fail_streak == 1
        assert not outcome.rollback_applied
        balance = stakes.get_balance(WALLET)
        assert balance.level == 3
        assert balance.rankup_fail_streak_target_level == 4

    def test_legacy_pool_fallback(self, database, stakes, service, pool, queue, monkeypatch) -> None:
        def broken(*args, **kwargs):
            raise OperationalError("INSERT", {}, Exception("ledger unavailable"))

        monkeypatch.setattr(pool, 'record_pool_deposit', broken)
        fund_wallet(database, stakes)
        trial = service.start_trial(WALLET, 2)
        outcome = service.complete_trial(WALLET, trial.id, QUESTION_IDS, failing_answers())

        assert outcome.result == 'failed'
        assert outcome.pool_entry_id is None
        assert pool.get_legacy_total() == LEVEL_2_STAKE
        assert stakes.get_balance(WALLET).escrowed_stake == Decimal("0")
        assert queue.get_jobs_by_status('pending') == []


class TestCompleteValidation:
    @pytest.fixture
    def trial(self, database, stakes, service):
        fund_wallet(database, stakes)
        return service.start_trial(WALLET, 2)

    def test_length_mismatch(self, service, trial) -> None:
        with pytest.raises(ValidationError) as exc_info:
            service.complete_trial(WALLET, trial.id, QUESTION_IDS, [0])
        assert exc_info.value.code == 'invalid_answer_count'

    def test_empty_answers(self, service, trial) -> None:
        with pytest.raises(ValidationError):
            service.complete_trial(WALLET, trial.id, [], [])

    def test_too_many_answers(self, service, trial, question_bank) -> None:
        extra = QUESTION_IDS + ['q-extra']
        question_bank.add(mcq('q-extra'))
        with pytest.raises(ValidationError):
            service.complete_trial(WALLET, trial.id, extra, [0] * len(extra))

    def test_unknown_question(self, service, trial) -> None:
        with pytest.raises(ValidationError) as exc_info:
            service.complete_trial(WALLET, trial.id, ['nope'], [0])
        assert exc_info.value.code == 'invalid_question_ids'

    def test_unknown_trial(self, service, trial) -> None:
        with pytest.raises(NotFoundError):
            service.complete_trial(WALLET, 'missing', QUESTION_IDS, passing_answers())

    def test_other_wallet(self, service, trial) -> None:
        with pytest.raises(ValidationError) as exc_info:
            service.complete_trial('SomeoneElse', trial.id, QUESTION_IDS, passing_answers())
        assert exc_info.value.code == 'trial_not_owned'

    def test_failed_twice_settles_once(self, database, stakes, service, trial) -> None:
        service.complete_trial(WALLET, trial.id, QUESTION_IDS, failing_answers())
        balance_before = stakes.get_balance(WALLET)

        with pytest.raises(ConflictError) as exc_info:
            service.complete_trial(WALLET, trial.id, QUESTION_IDS, failing_answers())
        assert exc_info.value.code == 'trial_not_active'

        reasons = [entry.reason for entry in stakes.get_ledger(WALLET)]
        assert reasons.count('rankup_forfeit') == 1
        balance = stakes.get_balance(WALLET)
        assert balance.available_stake == balance_before.available_stake
        assert balance.escrowed_stake == Decimal("0")
        assert balance.rankup_fail_streak == 1
        with database.session() as session:
            assert len(session.scalars(select(RewardsPoolLedgerEntry)).all()) == 1

    def test_passed_twice_locks_once(self, database, stakes, service, trial) -> None:
        service.complete_trial(WALLET, trial.id, QUESTION_IDS, passing_answers())

        with pytest.raises(ConflictError) as exc_info:
            service.complete_trial(WALLET, trial.id, QUESTION_IDS, passing_answers())
        assert exc_info.value.code == 'trial_not_active'

        reasons = [entry.reason for entry in stakes.get_ledger(WALLET)]
        assert reasons.count('rankup_lock') == 2
        balance = stakes.get_balance(WALLET)
        assert balance.level == 2
        assert balance.locked_stake == LEVEL_2_STAKE
        assert balance.escrowed_stake == Decimal("0")
        with database.session() as session:
            assert len(session.scalars(select(StakeLock)).all()) == 1

    def test_numeric_questions_graded_server_side(self, service, trial, question_bank) -> None:
        question_bank.add(Question(id='n-1', complexity=4, question_type=QuestionType.NUMERIC,
                                   numeric_answer='1/3', numeric_tolerance=0.001))
        question_bank.add(Question(id='n-2', complexity=4, question_type=QuestionType.NUMERIC,
                                   numeric_answer='2 1/2'))
        outcome = service.complete_trial(WALLET, trial.id, ['n-1', 'n-2'], ['0.333', '2.5'])
        assert outcome.correct_count == 2
        assert outcome.result == 'passed'
        assert [r['correct'] for r in outcome.question_results] == [True, True]
