"""
On-chain stake deposit verification

A deposit is credited for the amount the vault token account actually
received, read from the transaction's pre/post token balances. The transfer
instruction's amount is attacker controlled and is only used when the balance
metadata is missing.
"""
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from hive_rewards.config import ChainSettings
from hive_rewards.db import Database
from hive_rewards.errors import ConflictError, ValidationError, VerificationFailedError
from hive_rewards.models.contribution import TokenTransfer
from hive_rewards.models.db import StakeLedgerEntry, to_amount
from hive_rewards.models.results import DepositVerification
from hive_rewards.services.escrow import StakeStore
from hive_rewards.services.solana import TOKEN_PROGRAMS, SolanaRPC, to_decimal

logger = logging.getLogger(__name__)

ALREADY_CREDITED = 'deposit_already_credited'
TX_REF_MIN_LENGTH = 32
TX_REF_MAX_LENGTH = 128


def _invalid(code: str, message: str, **fields) -> DepositVerification:
    return DepositVerification(valid=False, error_code=code, error=message, **fields)


def _account_keys(tx: Dict[str, Any]) -> List[str]:
    keys = tx.get('transaction', {}).get('message', {}).get('accountKeys', [])
    return [k['pubkey'] if isinstance(k, dict) else k for k in keys]


def _instructions(tx: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Top-level instructions followed by inner (CPI) instructions"""
    instructions = list(tx.get('transaction', {}).get('message', {}).get('instructions', []))
    for inner in (tx.get('meta') or {}).get('innerInstructions') or []:
        instructions.extend(inner.get('instructions', []))
    return instructions


def parse_token_transfers(tx: Dict[str, Any]) -> List[TokenTransfer]:
    """SPL token transfer and transferChecked instructions in a parsed transaction"""
    transfers = []
    for ix in _instructions(tx):
        if ix.get('program') not in TOKEN_PROGRAMS or not isinstance(ix.get('parsed'), dict):
            continue
        parsed = ix['parsed']
        kind = parsed.get('type')
        if kind not in ('transfer', 'transferChecked'):
            continue

        info = parsed.get('info', {})
        authority = info.get('authority') or info.get('multisigAuthority') or ''
        if kind == 'transferChecked':
            token_amount = info.get('tokenAmount') or {}
            raw = token_amount.get('amount')
            transfers.append(TokenTransfer(
                source=info.get('source', ''),
                destination=info.get('destination', ''),
                authority=authority,
                mint=info.get('mint', ''),
                raw_amount=int(raw) if raw is not None else None,
                ui_amount=to_decimal(token_amount.get('uiAmountString', token_amount.get('uiAmount'))),
                decimals=token_amount.get('decimals'),
                kind=kind
            ))
        else:
            raw = info.get('amount')
            transfers.append(TokenTransfer(
                source=info.get('source', ''),
                destination=info.get('destination', ''),
                authority=authority,
                mint='',
                raw_amount=int(raw) if raw is not None else None,
                ui_amount=None,
                decimals=None,
                kind=kind
            ))
    return transfers


def _token_balance(entries: List[Dict[str, Any]], account_index: int) -> Optional[Dict[str, Any]]:
    for entry in entries or []:
        if entry.get('accountIndex') == account_index:
            return entry
    return None


def _ui_amount(entry: Dict[str, Any]) -> Decimal:
    ui = entry.get('uiTokenAmount') or {}
    amount = to_decimal(ui.get('uiAmountString'))
    if amount is None:
        amount = Decimal(int(ui.get('amount', 0))).scaleb(-int(ui.get('decimals', 0)))
    return amount


def balance_delta(tx: Dict[str, Any], token_account: str) -> Optional[Dict[str, Any]]:
    """
    Post-minus-pre balance of a token account from transaction metadata

    Returns:
        {'delta', 'mint'} or None when the metadata has no post balance for it
    """
    keys = _account_keys(tx)
    if token_account not in keys:
        return None
    index = keys.index(token_account)
    meta = tx.get('meta') or {}

    post = _token_balance(meta.get('postTokenBalances'), index)
    if post is None:
        return None
    pre = _token_balance(meta.get('preTokenBalances'), index)
    # account created in this transaction
    pre_amount = _ui_amount(pre) if pre else Decimal("0")
    return {'delta': _ui_amount(post) - pre_amount, 'mint': post.get('mint')}


class DepositVerifier:
    """Verifies claimed vault deposits and credits available stake"""

    def __init__(self, database: Database, rpc: SolanaRPC, chain: ChainSettings, stakes: StakeStore):
        self.database = database
        self.rpc = rpc
        self.chain = chain
        self.stakes = stakes

    def _already_credited(self, tx_ref: str) -> bool:
        with self.database.session() as session:
            return session.scalars(
                select(StakeLedgerEntry.id).where(StakeLedgerEntry.tx_ref == tx_ref).limit(1)
            ).first() is not None

    def _is_vault_account(self, destination: str, vault: str, owners: Dict[str, Optional[Dict[str, Any]]]) -> bool:
        if destination == vault:
            return True
        if destination not in owners:
            owners[destination] = self.rpc.get_token_account(destination)
        account = owners[destination]
        return bool(account) and account.get('owner') == vault

    def verify_deposit(
            self,
            tx_ref: str,
            expected_vault: Optional[str],
            expected_mint: Optional[str],
            claimed_amount: Decimal,
            expected_sender: str
    ) -> DepositVerification:
        """
        Check that a transaction moved at least claimed_amount of the mint
        from expected_sender into the vault and has not been credited before

        Raises:
            TransientInfraError: If the chain RPC times out or is unreachable;
                the outcome is unknown and the caller should retry
        """
        if not expected_vault or not expected_mint:
            return _invalid('deposits_unconfigured', "Vault address and token mint must both be set")
        claimed_amount = Decimal(str(claimed_amount))
        if claimed_amount <= 0:
            return _invalid('invalid_amount', "Claimed amount must be positive")

        if self._already_credited(tx_ref):
            return _invalid(ALREADY_CREDITED, "This transaction has already been credited")

        tx = self.rpc.get_parsed_transaction(tx_ref)
        if not tx:
            return _invalid('transaction_not_found', "Transaction not found on chain")
        if (tx.get('meta') or {}).get('err'):
            return _invalid('transaction_failed', "Transaction failed on chain")

        transfers = parse_token_transfers(tx)
        logger.info(f"Verifying deposit {tx_ref}: {len(transfers)} token transfers")

        owners: Dict[str, Optional[Dict[str, Any]]] = {}
        vault_transfers = [t for t in transfers if self._is_vault_account(t.destination, expected_vault, owners)]
        if not vault_transfers:
            return _invalid(
                'no_vault_transfer',
                "No transfer to vault address found in transaction. Make sure you're sending to the correct vault address."
            )

        transfer = vault_transfers[0]
        if any(t.authority != expected_sender for t in vault_transfers):
            return _invalid('sender_mismatch', "Transfer was not initiated by your wallet")

        receiver = transfer.destination
        delta_info = balance_delta(tx, receiver)

        mint = transfer.mint or (delta_info or {}).get('mint')
        decimals = transfer.decimals
        if not mint or decimals is None:
            account = owners.get(receiver) or self.rpc.get_token_account(receiver)
            if account:
                mint = mint or account.get('mint')
                decimals = decimals if decimals is not None else account.get('decimals')
        if decimals is None:
            decimals = self.chain.token_decimals

        if mint != expected_mint:
            return _invalid('mint_mismatch', "Token mint does not match HIVE token", mint=mint)

        if delta_info is not None:
            verified_amount = delta_info['delta']
            amount_source = 'balance_delta'
        else:
            verified_amount = sum(
                (t.ui_amount if t.ui_amount is not None else Decimal(t.raw_amount or 0).scaleb(-int(decimals))
                 for t in vault_transfers if t.destination == receiver),
                Decimal("0")
            )
            amount_source = 'instruction'
            logger.error(
                f"No token balance metadata for vault account in {tx_ref}; "
                f"falling back to instruction amount {verified_amount}"
            )

        fields = {
            'sender': transfer.source,
            'sender_owner': transfer.authority,
            'receiver': receiver,
            'mint': mint,
            'verified_amount': verified_amount,
            'amount_source': amount_source,
        }
        if verified_amount <= 0:
            return _invalid('non_positive_delta', "Vault balance did not increase", **fields)
        if verified_amount < claimed_amount - self.chain.deposit_epsilon:
            return _invalid(
                'amount_mismatch',
                f"Amount mismatch: claimed {claimed_amount}, received {verified_amount}",
                **fields
            )

        return DepositVerification(valid=True, **fields)

    def confirm_deposit(self, wallet_address: str, tx_ref: str, claimed_amount: Decimal) -> DepositVerification:
        """
        Verify a deposit and credit the received amount to available stake

        Raises:
            ValidationError: If the vault address or token mint is not configured,
                or tx_ref is not a plausible transaction signature
            ConflictError: If the transaction was already credited
            VerificationFailedError: If verification fails
            TransientInfraError: If the chain could not be reached
        """
        if not self.chain.vault_address or not self.chain.mint_address:
            raise ValidationError("Deposits are not configured", code="deposits_unconfigured")
        if not isinstance(tx_ref, str) or not TX_REF_MIN_LENGTH <= len(tx_ref) <= TX_REF_MAX_LENGTH:
            raise ValidationError(
                f"Transaction signature must be {TX_REF_MIN_LENGTH}-{TX_REF_MAX_LENGTH} characters",
                code="invalid_tx_ref"
            )

        result = self.verify_deposit(
            tx_ref,
            self.chain.vault_address,
            self.chain.mint_address,
            claimed_amount,
            wallet_address
        )
        if not result.valid:
            if result.error_code == ALREADY_CREDITED:
                raise ConflictError(result.error, code=ALREADY_CREDITED)
            logger.warning(f"Deposit {tx_ref} for {wallet_address} rejected: {result.error_code}")
            raise VerificationFailedError(result.error, code=result.error_code)

        amount = to_amount(result.verified_amount)
        try:
            with self.database.session() as session:
                self.stakes.adjust_stake(
                    session,
                    wallet_address,
                    amount,
                    'deposit',
                    tx_ref=tx_ref,
                    metadata={
                        'claimed_amount': str(claimed_amount),
                        'amount_source': result.amount_source,
                        'receiver': result.receiver,
                    }
                )
        except IntegrityError:
            raise ConflictError("This transaction has already been credited", code=ALREADY_CREDITED)

        logger.info(f"Deposit credited: {amount} to {wallet_address} ({tx_ref}, {result.amount_source})")
        return result
