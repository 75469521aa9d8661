from __future__ import annotations

import asyncio
import logging
from typing import Any

from eth_account import Account
from eth_account.signers.local import LocalAccount
from eth_utils import keccak
from web3 import AsyncWeb3
from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception

from triggerfi.common import log_event
from triggerfi.orders.types import (
    FILL_OUTCOME_FAILED,
    FILL_OUTCOME_INVALIDATED,
    FILL_OUTCOME_NOT_FILLABLE,
    ORDER_STATUS_CANCELLED,
    ORDER_STATUS_FILLED,
    ChainWriteError,
    FillRevertedError,
    KeeperAuthorizationError,
    Order,
    TxReceipt,
    bytes_to_hex,
    hex_to_bytes,
    normalize_address,
)

from .abi import LIMIT_ORDER_PROTOCOL_ABI, PREDICATE_STORE_ABI
from .settings import ChainConfig

PREDICATE_REVERT_MARKERS = ("predicate", "predicateisnottrue", "0x7f902a93")
# the protocol reverts the same way for a filled order and a cancelled one
INVALIDATED_REVERT_MARKERS = (
    "remaininginvalidated",
    "remainingamountiszero",
    "invalidatedorder",
    "already filled",
)
KEEPER_AUTH_REVERT_MARKERS = ("only keeper", "onlykeeper", "not keeper", "unauthorized")

ORDER_FILLED_TOPIC = bytes_to_hex(keccak(text="OrderFilled(bytes32,uint256)"))
ORDER_CANCELLED_TOPIC = bytes_to_hex(keccak(text="OrderCancelled(bytes32)"))


def classify_fill_revert(message: str) -> str:
    lowered = (message or "").lower()
    if any(marker in lowered for marker in INVALIDATED_REVERT_MARKERS):
        return FILL_OUTCOME_INVALIDATED
    if any(marker in lowered for marker in PREDICATE_REVERT_MARKERS):
        return FILL_OUTCOME_NOT_FILLABLE
    return FILL_OUTCOME_FAILED


def is_keeper_auth_revert(message: str) -> bool:
    lowered = (message or "").lower()
    return any(marker in lowered for marker in KEEPER_AUTH_REVERT_MARKERS)


class EvmContractClient:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        chain: ChainConfig,
        rpc_url: str,
        private_key: str,
        address: str,
        abi: list[dict[str, Any]],
        confirm_timeout_seconds: float = 120.0,
    ) -> None:
        self._logger = logger
        self._chain = chain
        self._rpc_url = rpc_url
        self._private_key = private_key
        self._address = normalize_address(address, name="contract")
        self._abi = abi
        self._confirm_timeout_seconds = confirm_timeout_seconds
        self._web3: AsyncWeb3 | None = None
        self._contract: Any | None = None
        self._account: LocalAccount | None = None
        self._send_lock = asyncio.Lock()

    @property
    def sender(self) -> str:
        return self._require_account().address

    async def connect(self) -> None:
        if not self._rpc_url:
            raise ValueError("RPC_URL is required when DRY_RUN is false.")
        if not self._private_key:
            raise ValueError("PRIVATE_KEY is required when DRY_RUN is false.")

        if self._web3 is None:
            self._web3 = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(self._rpc_url))
            self._contract = self._web3.eth.contract(address=self._address, abi=self._abi)
        if self._account is None:
            self._account = Account.from_key(self._private_key)

        remote_chain_id = await self._web3.eth.chain_id
        if remote_chain_id != self._chain.chain_id:
            raise RuntimeError(
                f"RPC chain id {remote_chain_id} does not match configured chain {self._chain.chain_id}."
            )

    async def close(self) -> None:
        if self._web3 is not None:
            disconnect = getattr(self._web3.provider, "disconnect", None)
            if disconnect:
                await disconnect()
        self._web3 = None
        self._contract = None

    async def healthcheck(self) -> None:
        web3 = self._require_web3()
        await web3.eth.block_number

    def _require_web3(self) -> AsyncWeb3:
        if self._web3 is None:
            raise RuntimeError("Web3 client is not initialized.")
        return self._web3

    def _require_contract(self) -> Any:
        if self._contract is None:
            raise RuntimeError("Contract client is not initialized.")
        return self._contract

    def _require_account(self) -> LocalAccount:
        if self._account is None:
            raise RuntimeError("Signer account is not initialized.")
        return self._account

    async def _transact(self, method: str, call: Any, *, value_wei: int = 0) -> TxReceipt:
        web3 = self._require_web3()
        account = self._require_account()

        async with self._send_lock:
            try:
                nonce = await web3.eth.get_transaction_count(account.address, "pending")
                transaction = await call.build_transaction(
                    {
                        "from": account.address,
                        "value": value_wei,
                        "nonce": nonce,
                        "chainId": self._chain.chain_id,
                    }
                )
                signed = account.sign_transaction(transaction)
                tx_hash = await web3.eth.send_raw_transaction(signed.raw_transaction)
            except ContractLogicError as error:
                raise FillRevertedError(str(error), method=method) from error
            except (Web3Exception, ValueError) as error:
                raise ChainWriteError(f"{method} submission failed: {error}", method=method) from error

        tx_hash_hex = bytes_to_hex(bytes(tx_hash))
        log_event(
            self._logger,
            level="info",
            event="tx_submitted",
            message="Transaction submitted",
            method=method,
            tx_hash=tx_hash_hex,
            value_wei=value_wei,
        )

        try:
            receipt = await web3.eth.wait_for_transaction_receipt(
                tx_hash,
                timeout=self._confirm_timeout_seconds,
            )
        except TimeExhausted as error:
            raise ChainWriteError(
                f"{method} was not confirmed within {self._confirm_timeout_seconds}s",
                method=method,
                tx_hash=tx_hash_hex,
            ) from error

        result = TxReceipt(
            tx_hash=tx_hash_hex,
            status=int(receipt.get("status", 0)),
            block_number=receipt.get("blockNumber"),
            gas_used=receipt.get("gasUsed"),
        )
        if not result.succeeded:
            raise FillRevertedError(f"{method} reverted on chain", method=method, tx_hash=tx_hash_hex)
        return result


class LivePredicateStore(EvmContractClient):
    def __init__(
        self,
        *,
        logger: logging.Logger,
        chain: ChainConfig,
        rpc_url: str,
        private_key: str,
        confirm_timeout_seconds: float = 120.0,
    ) -> None:
        super().__init__(
            logger=logger,
            chain=chain,
            rpc_url=rpc_url,
            private_key=private_key,
            address=chain.predicate_store,
            abi=PREDICATE_STORE_ABI,
            confirm_timeout_seconds=confirm_timeout_seconds,
        )

    async def check_condition(self, predicate_id: str) -> int:
        functions = self._require_contract().functions
        return int(await functions.checkCondition(hex_to_bytes(predicate_id)).call())

    async def update_count(self, predicate_id: str) -> int:
        functions = self._require_contract().functions
        return int(await functions.updateCount(hex_to_bytes(predicate_id)).call())

    async def get_update_fees(self, predicate_id: str) -> int:
        functions = self._require_contract().functions
        return int(await functions.getUpdateFees(hex_to_bytes(predicate_id)).call())

    async def keeper_address(self) -> str:
        functions = self._require_contract().functions
        return normalize_address(await functions.keeper().call(), name="keeper")

    async def commit_result(self, predicate_id: str, result: bool) -> TxReceipt:
        functions = self._require_contract().functions
        call = functions.setTestResult(hex_to_bytes(predicate_id), bool(result))
        try:
            return await self._transact("setTestResult", call)
        except FillRevertedError as error:
            if is_keeper_auth_revert(str(error)):
                raise KeeperAuthorizationError(str(error)) from error
            raise ChainWriteError(str(error), method=error.method, tx_hash=error.tx_hash) from error

    async def collect_fees(self, predicate_id: str, *, value_wei: int) -> TxReceipt:
        functions = self._require_contract().functions
        call = functions.collectFees(hex_to_bytes(predicate_id))
        try:
            return await self._transact("collectFees", call, value_wei=value_wei)
        except FillRevertedError as error:
            raise ChainWriteError(str(error), method=error.method, tx_hash=error.tx_hash) from error


class LiveLimitOrderProtocol(EvmContractClient):
    def __init__(
        self,
        *,
        logger: logging.Logger,
        chain: ChainConfig,
        rpc_url: str,
        private_key: str,
        confirm_timeout_seconds: float = 120.0,
        lookback_blocks: int = 10_000,
    ) -> None:
        super().__init__(
            logger=logger,
            chain=chain,
            rpc_url=rpc_url,
            private_key=private_key,
            address=chain.limit_order_protocol,
            abi=LIMIT_ORDER_PROTOCOL_ABI,
            confirm_timeout_seconds=confirm_timeout_seconds,
        )
        self._lookback_blocks = max(1, lookback_blocks)

    def _fill_call(self, order: Order, r: bytes, vs: bytes) -> Any:
        functions = self._require_contract().functions
        return functions.fillOrder(order.to_tuple(), r, vs, 0, 0)

    async def simulate_fill(self, order: Order, r: bytes, vs: bytes) -> None:
        try:
            await self._fill_call(order, r, vs).call({"from": self.sender})
        except ContractLogicError as error:
            raise FillRevertedError(str(error), method="fillOrder") from error

    async def fill_order(self, order: Order, r: bytes, vs: bytes) -> TxReceipt:
        return await self._transact("fillOrder", self._fill_call(order, r, vs))

    async def cancel_order(self, order_hash: str) -> TxReceipt:
        functions = self._require_contract().functions
        try:
            return await self._transact("cancelOrder", functions.cancelOrder(hex_to_bytes(order_hash)))
        except FillRevertedError as error:
            raise ChainWriteError(str(error), method=error.method, tx_hash=error.tx_hash) from error

    async def remaining(self, order_hash: str) -> int:
        functions = self._require_contract().functions
        return int(await functions.remaining(hex_to_bytes(order_hash)).call())

    async def invalidation_reason(self, order_hash: str) -> str | None:
        """Scan recent protocol logs for the event that consumed ``order_hash``.

        Neither event indexes the order hash, so it is matched against the first
        data word. Returns None when nothing turns up inside the lookback window.
        """
        web3 = self._require_web3()
        latest = int(await web3.eth.block_number)
        logs = await web3.eth.get_logs(
            {
                "address": self._address,
                "fromBlock": max(0, latest - self._lookback_blocks),
                "toBlock": latest,
                "topics": [[ORDER_FILLED_TOPIC, ORDER_CANCELLED_TOPIC]],
            }
        )
        wanted = hex_to_bytes(order_hash)
        for entry in reversed(list(logs)):
            if bytes(entry["data"])[:32] != wanted:
                continue
            topic = bytes_to_hex(bytes(entry["topics"][0]))
            if topic == ORDER_CANCELLED_TOPIC:
                return ORDER_STATUS_CANCELLED
            if topic == ORDER_FILLED_TOPIC:
                return ORDER_STATUS_FILLED
        return None
