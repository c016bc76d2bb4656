"""
Rank-up trials

A trial escrows the target level's vault stake while the wallet answers a set
of questions. Passing locks the stake for a number of cycles and promotes the
wallet; failing forfeits the whole escrow into the rewards pool. Three failures
in a row at the same target level roll the wallet back one level.

Each start/complete runs in one transaction with the wallet row locked, so two
concurrent completions of the same trial cannot both settle.
"""
import logging
from decimal import Decimal
from typing import List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from hive_rewards.config import RankupSettings
from hive_rewards.db import Database
from hive_rewards.errors import ConflictError, InsufficientFundsError, NotFoundError, ValidationError
from hive_rewards.grading import Answer, grade_trial
from hive_rewards.models.contribution import Question, TrialStatus
from hive_rewards.models.db import RankupTrial, to_amount, utcnow
from hive_rewards.models.results import TrialOutcome, TrialView
from hive_rewards.progression import Progression
from hive_rewards.services.collaborators import CycleProvider, HoldProvider, QuestionBank
from hive_rewards.services.escrow import StakeStore
from hive_rewards.services.rewards_pool import RewardsPool

logger = logging.getLogger(__name__)

FOUR_PLACES = Decimal("0.0001")
TWO_PLACES = Decimal("0.01")


def failure_reason(accuracy: float, min_accuracy: float, avg_difficulty: float, min_avg_difficulty: float) -> str:
    if accuracy < min_accuracy:
        return f"Accuracy {accuracy * 100:.1f}% below required {min_accuracy * 100:.1f}%"
    return f"Average difficulty {avg_difficulty:.2f} below required {min_avg_difficulty:.2f}"


def _trial_view(trial: RankupTrial) -> TrialView:
    return TrialView(
        id=trial.id,
        wallet_address=trial.wallet_address,
        from_level=trial.from_level,
        to_level=trial.to_level,
        question_count=trial.question_count,
        min_accuracy=float(trial.min_accuracy),
        min_avg_difficulty=float(trial.min_avg_difficulty),
        trial_stake_amount=Decimal(trial.trial_stake_amount),
        status=trial.status
    )


class RankupService:
    """Trial lifecycle: start, inspect, complete"""

    def __init__(
            self,
            database: Database,
            stakes: StakeStore,
            progression: Progression,
            hold_provider: HoldProvider,
            question_bank: QuestionBank,
            cycle_provider: CycleProvider,
            pool: RewardsPool,
            settings: RankupSettings
    ):
        self.database = database
        self.stakes = stakes
        self.progression = progression
        self.hold_provider = hold_provider
        self.question_bank = question_bank
        self.cycle_provider = cycle_provider
        self.pool = pool
        self.settings = settings

    def _active_trial(self, session, wallet_address: str) -> Optional[RankupTrial]:
        return session.scalars(
            select(RankupTrial).where(
                RankupTrial.wallet_address == wallet_address,
                RankupTrial.status == TrialStatus.ACTIVE.value
            )
        ).first()

    def start_trial(self, wallet_address: str, target_level: int) -> TrialView:
        """
        Start a trial for the next level and escrow its stake

        Raises:
            ValidationError: If target_level is not the wallet's level + 1
            ConflictError: If the wallet already has an active trial
            InsufficientFundsError: If wallet hold or available stake is short
        """
        max_level = self.progression.settings.max_level
        if target_level < 2 or target_level > max_level:
            raise ValidationError(f"Target level must be between 2 and {max_level}", code="invalid_target_level")

        requirements = self.progression.requirements(target_level)
        wallet_hold = Decimal(self.hold_provider.get_wallet_hold(wallet_address))

        try:
            with self.database.session() as session:
                balance = self.stakes.get_or_create_balance(session, wallet_address)
                if target_level != balance.level + 1:
                    raise ValidationError(
                        f"Target level must be current level + 1 (current: {balance.level}, target: {target_level})",
                        code="invalid_target_level"
                    )

                active = self._active_trial(session, wallet_address)
                if active is not None:
                    raise ConflictError(
                        "You already have an active rank-up trial",
                        code="trial_already_active",
                        details={'trial_id': active.id}
                    )

                if wallet_hold < requirements.wallet_hold:
                    raise InsufficientFundsError(
                        f"Insufficient wallet hold. Required: {requirements.wallet_hold}, Current: {wallet_hold}",
                        code="insufficient_wallet_hold",
                        details={'required': str(requirements.wallet_hold), 'current': str(wallet_hold)}
                    )

                trial_stake = requirements.vault_stake
                available = Decimal(balance.available_stake)
                if available < trial_stake:
                    raise InsufficientFundsError(
                        f"Insufficient vault stake to escrow. Required: {trial_stake}, Available: {available}",
                        code="insufficient_vault_stake",
                        details={'required': str(trial_stake), 'current': str(available)}
                    )

                trial = RankupTrial(
                    wallet_address=wallet_address,
                    from_level=balance.level,
                    to_level=target_level,
                    required_hold=to_amount(requirements.wallet_hold),
                    required_stake=to_amount(requirements.vault_stake),
                    hold_at_start=to_amount(wallet_hold),
                    stake_at_start=to_amount(available),
                    trial_stake_amount=to_amount(trial_stake),
                    question_count=self.settings.question_count,
                    min_accuracy=Decimal(str(self.settings.min_accuracy)),
                    min_avg_difficulty=Decimal(str(self.settings.min_avg_difficulty)),
                    status=TrialStatus.ACTIVE.value
                )
                session.add(trial)
                session.flush()
                self.stakes.escrow(session, balance, trial_stake, metadata={'trial_id': trial.id})
                session.flush()
                view = _trial_view(trial)
        except IntegrityError:
            # lost a race against another start for the same wallet
            raise ConflictError("You already have an active rank-up trial", code="trial_already_active")

        logger.info(
            f"Rank-up trial started: {view.id} for {wallet_address} "
            f"level {view.from_level} -> {view.to_level}, escrowed {view.trial_stake_amount}"
        )
        return view

    def get_active_trial(self, wallet_address: str) -> Optional[TrialView]:
        with self.database.session() as session:
            trial = self._active_trial(session, wallet_address)
            return _trial_view(trial) if trial else None

    def _load_questions(self, question_ids: Sequence[str]) -> List[Question]:
        questions = []
        unknown = []
        for question_id in question_ids:
            question = self.question_bank.get_question(question_id)
            if question is None:
                unknown.append(question_id)
            else:
                questions.append(question)
        if unknown:
            raise ValidationError("Invalid question ID(s)", code="invalid_question_ids", details={'unknown': unknown})
        return questions

    def complete_trial(
            self,
            wallet_address: str,
            trial_id: str,
            question_ids: Sequence[str],
            answers: Sequence[Answer]
    ) -> TrialOutcome:
        """
        Grade a trial against the question bank and settle its escrow

        Raises:
            NotFoundError: If the trial does not exist
            ValidationError: If the trial belongs to another wallet or the
                answers do not match the questions
            ConflictError: If the trial is not active, or the wallet's level
                changed since the trial started
        """
        if len(question_ids) != len(answers):
            raise ValidationError(
                f"Question IDs count ({len(question_ids)}) does not match answers count ({len(answers)})",
                code="invalid_answer_count"
            )
        if not answers:
            raise ValidationError("Must provide at least 1 answer", code="invalid_answer_count")

        questions = self._load_questions(question_ids)
        cycle = self.cycle_provider.get_current_cycle()

        pool_entry_id = None
        with self.database.session() as session:
            trial = session.get(RankupTrial, trial_id, with_for_update=True)
            if trial is None:
                raise NotFoundError("Trial not found", code="trial_not_found")
            if trial.wallet_address != wallet_address:
                raise ValidationError("Trial does not belong to you", code="trial_not_owned")
            if trial.status != TrialStatus.ACTIVE.value:
                raise ConflictError(f"Trial status is {trial.status}, expected active", code="trial_not_active")
            if len(answers) > trial.question_count:
                raise ValidationError(
                    f"Received {len(answers)} answers, but trial only has {trial.question_count} questions",
                    code="invalid_answer_count"
                )

            summary = grade_trial(questions, answers)
            min_accuracy = float(trial.min_accuracy)
            min_avg_difficulty = float(trial.min_avg_difficulty)
            passed = summary.accuracy >= min_accuracy and summary.avg_difficulty >= min_avg_difficulty

            balance = self.stakes.get_or_create_balance(session, wallet_address)
            stake = Decimal(trial.trial_stake_amount)
            now = utcnow()

            trial.correct_count = summary.correct_count
            trial.total_count = summary.total_count
            trial.accuracy = Decimal(str(summary.accuracy)).quantize(FOUR_PLACES)
            trial.avg_difficulty = Decimal(str(summary.avg_difficulty)).quantize(TWO_PLACES)
            trial.completed_at = now

            if passed:
                if balance.level != trial.from_level:
                    raise ConflictError(
                        f"Current level is {balance.level}, but trial is for {trial.from_level} -> {trial.to_level}",
                        code="level_mismatch"
                    )

                if cycle is None:
                    logger.warning(f"No active cycle, locking stake for trial {trial.id} at cycle 0")
                locked_cycle = cycle.number if cycle else 0
                self.stakes.release_to_locked(
                    session,
                    balance,
                    stake,
                    locked_cycle=locked_cycle,
                    unlock_cycle=locked_cycle + self.settings.lock_cycles,
                    trial_id=trial.id
                )
                balance.level = trial.to_level
                balance.rankup_fail_streak = 0
                balance.rankup_fail_streak_target_level = None
                trial.status = TrialStatus.PASSED.value
                trial.rollback_applied = False

                outcome = TrialOutcome(
                    trial_id=trial.id,
                    result=TrialStatus.PASSED.value,
                    correct_count=summary.correct_count,
                    total_count=summary.total_count,
                    accuracy=summary.accuracy,
                    avg_difficulty=summary.avg_difficulty,
                    new_level=trial.to_level,
                    fail_streak=0,
                    question_results=summary.results
                )
            else:
                reason = failure_reason(summary.accuracy, min_accuracy, summary.avg_difficulty, min_avg_difficulty)
                forfeited = self.stakes.forfeit_escrow(session, balance, stake, metadata={'trial_id': trial.id})
                pool_entry_id = self.pool.record_forfeit(
                    session, forfeited, wallet_address, cycle.id if cycle else None
                )

                if balance.rankup_fail_streak_target_level != trial.to_level:
                    fail_streak = 1
                else:
                    fail_streak = (balance.rankup_fail_streak or 0) + 1
                balance.rankup_fail_streak = fail_streak
                balance.rankup_fail_streak_target_level = trial.to_level

                rollback_applied = False
                if fail_streak >= self.settings.fail_streak_rollback:
                    balance.level = max(1, balance.level - 1)
                    balance.rankup_fail_streak = 0
                    balance.rankup_fail_streak_target_level = None
                    fail_streak = 0
                    rollback_applied = True

                trial.status = TrialStatus.FAILED.value
                trial.failed_reason = reason
                trial.forfeited_amount = forfeited
                trial.rollback_applied = rollback_applied

                outcome = TrialOutcome(
                    trial_id=trial.id,
                    result=TrialStatus.FAILED.value,
                    correct_count=summary.correct_count,
                    total_count=summary.total_count,
                    accuracy=summary.accuracy,
                    avg_difficulty=summary.avg_difficulty,
                    new_level=balance.level,
                    fail_streak=fail_streak,
                    rollback_applied=rollback_applied,
                    failed_reason=reason,
                    forfeited_amount=forfeited,
                    pool_entry_id=pool_entry_id,
                    question_results=summary.results
                )
            balance.updated_at = now

        if outcome.result == TrialStatus.PASSED.value:
            logger.info(f"Rank-up trial passed: {trial_id} for {wallet_address}, now level {outcome.new_level}")
        else:
            logger.info(
                f"Rank-up trial failed: {trial_id} for {wallet_address}: {outcome.failed_reason}; "
                f"forfeited {outcome.forfeited_amount}, streak {outcome.fail_streak}"
                + (", level rolled back" if outcome.rollback_applied else "")
            )

        if pool_entry_id:
            self.pool.schedule_transfer(pool_entry_id)
        return outcome
