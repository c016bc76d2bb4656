"""Solana JSON-RPC and transfer-signer integration"""
import logging
from decimal import Decimal, InvalidOperation, ROUND_DOWN
from typing import Any, Dict, List, Optional

import requests

from hive_rewards.errors import TransientInfraError
from hive_rewards.services.collaborators import HoldProvider, TransferSigner

logger = logging.getLogger(__name__)

TOKEN_PROGRAMS = ('spl-token', 'spl-token-2022')


def to_decimal(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


def to_raw_amount(amount: Decimal, decimals: int) -> int:
    """Token amount in base units, truncated"""
    return int((Decimal(amount) * (Decimal(10) ** decimals)).to_integral_value(rounding=ROUND_DOWN))


class SolanaRPC:
    """
    Minimal JSON-RPC client for the calls deposit verification and hold checks need

    Timeouts and connection errors raise TransientInfraError: the result is
    unknown, not negative, and the caller should retry. Error messages never
    include the endpoint, which may embed an API key.
    """

    def __init__(self, rpc_url: str, timeout: float = 30.0, http: Optional[requests.Session] = None):
        self.rpc_url = rpc_url
        self.timeout = timeout
        self.http = http or requests.Session()
        self._request_id = 0

    def _call(self, method: str, params: List[Any]) -> Any:
        self._request_id += 1
        body = {'jsonrpc': '2.0', 'id': self._request_id, 'method': method, 'params': params}
        try:
            response = self.http.post(self.rpc_url, json=body, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except requests.Timeout:
            logger.warning(f"Solana RPC {method} timed out after {self.timeout}s")
            raise TransientInfraError("Chain RPC timed out, try again later", code="rpc_timeout")
        except (requests.RequestException, ValueError) as e:
            logger.warning(f"Solana RPC {method} failed: {e.__class__.__name__}")
            raise TransientInfraError("Chain RPC unavailable, try again later", code="rpc_unavailable")

        if data.get('error'):
            error = data['error']
            logger.warning(f"Solana RPC {method} returned error {error.get('code')}: {error.get('message')}")
            raise TransientInfraError("Chain RPC returned an error, try again later", code="rpc_error")
        return data.get('result')

    def get_parsed_transaction(self, signature: str) -> Optional[Dict[str, Any]]:
        return self._call('getTransaction', [
            signature,
            {'encoding': 'jsonParsed', 'commitment': 'confirmed', 'maxSupportedTransactionVersion': 0}
        ])

    def get_parsed_account_info(self, address: str) -> Optional[Dict[str, Any]]:
        result = self._call('getAccountInfo', [address, {'encoding': 'jsonParsed', 'commitment': 'confirmed'}])
        return (result or {}).get('value')

    def get_token_account(self, address: str) -> Optional[Dict[str, Any]]:
        """
        Mint, owner and decimals of an SPL token account, or None if the
        address is not a parsed token account
        """
        account = self.get_parsed_account_info(address)
        data = (account or {}).get('data')
        if not isinstance(data, dict) or 'parsed' not in data:
            return None
        parsed = data['parsed']
        if parsed.get('type') != 'account':
            return None
        info = parsed.get('info', {})
        return {
            'mint': info.get('mint'),
            'owner': info.get('owner'),
            'decimals': (info.get('tokenAmount') or {}).get('decimals'),
        }

    def get_token_balance(self, owner: str, mint: str) -> Decimal:
        """Sum of the owner's token accounts for a mint"""
        result = self._call('getTokenAccountsByOwner', [
            owner,
            {'mint': mint},
            {'encoding': 'jsonParsed', 'commitment': 'confirmed'}
        ])
        total = Decimal("0")
        for account in (result or {}).get('value', []):
            token_amount = account['account']['data']['parsed']['info']['tokenAmount']
            amount = to_decimal(token_amount.get('uiAmountString'))
            if amount is None:
                raw = int(token_amount.get('amount', 0))
                amount = Decimal(raw).scaleb(-int(token_amount.get('decimals', 0)))
            total += amount
        return total


class SolanaHoldProvider(HoldProvider):
    """Wallet hold read from chain"""

    def __init__(self, rpc: SolanaRPC, mint_address: Optional[str]):
        self.rpc = rpc
        self.mint_address = mint_address

    def get_wallet_hold(self, wallet_address: str) -> Decimal:
        if not self.mint_address:
            raise TransientInfraError("Wallet hold lookup is not configured", code="hold_lookup_unavailable")
        return self.rpc.get_token_balance(wallet_address, self.mint_address)


class TransferSignerClient(TransferSigner):
    """
    HTTP client for the service that signs and submits vault transfers.

    The vault key lives only in that service; this process sends the transfer
    request and receives the confirmed signature. Deployments provide a signer
    with this contract:

        POST {base_url}/transfers
        x-api-key: <TRANSFER_SIGNER_API_KEY>
        {"from_owner", "to_owner", "mint", "amount_raw", "reference"}

    amount_raw is the integer amount in base units. The signer answers 2xx with
    {"signature": "<tx signature>"} once the transfer is confirmed, and treats a
    repeated reference as the same transfer. Any other answer is retried.
    Signers with a different interface plug in by implementing TransferSigner.
    """

    def __init__(self, base_url: str, api_key: str, timeout: float = 30.0, http: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip('/')
        self.api_key = api_key
        self.timeout = timeout
        self.http = http or requests.Session()

    def transfer(
            self,
            source_owner: str,
            destination_owner: str,
            mint: str,
            amount: Decimal,
            decimals: int,
            reference: str
    ) -> str:
        """
        Request a token transfer

        Returns:
            The confirmed transaction signature

        Raises:
            TransientInfraError: If the signer is unreachable or rejects the transfer
        """
        body = {
            'from_owner': source_owner,
            'to_owner': destination_owner,
            'mint': mint,
            'amount_raw': str(to_raw_amount(amount, decimals)),
            'reference': reference,
        }
        headers = {'x-api-key': self.api_key, 'Accept': 'application/json'}
        try:
            response = self.http.post(f'{self.base_url}/transfers', json=body, headers=headers, timeout=self.timeout)
            response.raise_for_status()
            signature = response.json().get('signature')
        except (requests.RequestException, ValueError) as e:
            logger.warning(f"Transfer signer request failed for {reference}: {e.__class__.__name__}")
            raise TransientInfraError("Transfer failed, will retry", code="transfer_failed")

        if not signature:
            raise TransientInfraError("Transfer signer returned no signature", code="transfer_failed")
        return signature
