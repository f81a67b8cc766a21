"""Transaction signing for the (optional) redemption submission path."""

from __future__ import annotations

import logging
from typing import Any, Protocol

from eth_account import Account
from web3 import AsyncWeb3
from web3.exceptions import Web3Exception

from trove_monitor.chain.client import ContractCall, RPCError, to_hex

logger = logging.getLogger(__name__)

DEFAULT_RECEIPT_TIMEOUT_SECONDS = 120


class TransactionSigner(Protocol):
    """Anything that can submit a contract-call transaction and return its hash."""

    @property
    def address(self) -> str: ...

    async def send(self, call: ContractCall, *, gas: int | None = None) -> str: ...


class LocalSigner:
    """Signs with a local private key and waits for each transaction to be mined.

    Waiting keeps the approve -> redeem sequence ordered: the redeem call is
    only simulated once the allowance is on chain.
    """

    def __init__(
        self,
        w3: AsyncWeb3[Any],
        private_key: str,
        *,
        chain_id: int,
        receipt_timeout_seconds: float = DEFAULT_RECEIPT_TIMEOUT_SECONDS,
    ) -> None:
        self._w3 = w3
        self._account = Account.from_key(private_key)
        self._chain_id = chain_id
        self._receipt_timeout = receipt_timeout_seconds

    @property
    def address(self) -> str:
        return str(self._account.address)

    async def send(self, call: ContractCall, *, gas: int | None = None) -> str:
        """Sign, broadcast and wait for `call`.

        Raises:
            RPCError: If broadcasting fails or the transaction reverts.
        """
        try:
            tx: dict[str, Any] = {
                "from": self.address,
                "to": AsyncWeb3.to_checksum_address(call.address),
                "data": to_hex(call.encode()),
                "value": 0,
                "chainId": self._chain_id,
                "nonce": await self._w3.eth.get_transaction_count(self.address, "pending"),
                "gasPrice": await self._w3.eth.gas_price,
            }
            tx["gas"] = gas if gas is not None else await self._w3.eth.estimate_gas(tx)
            signed = self._account.sign_transaction(tx)
            tx_hash = to_hex(await self._w3.eth.send_raw_transaction(signed.raw_transaction))
            logger.info("Submitted %s transaction %s", call.abi["name"], tx_hash)
            receipt = await self._w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self._receipt_timeout)
        except (Web3Exception, ValueError) as e:
            raise RPCError(f"Transaction {call.abi['name']} failed: {e}") from e

        if int(receipt["status"]) != 1:
            raise RPCError(f"Transaction {tx_hash} reverted")
        return tx_hash
