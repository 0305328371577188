"""Chain access for the execution engine.

`ChainGateway` is the narrow surface the engine needs; `Web3ChainGateway`
implements it over web3's async client with locally signed legacy
transactions.
"""

from dataclasses import dataclass
from typing import Protocol

from eth_account.signers.local import LocalAccount
from web3 import AsyncWeb3
from web3.exceptions import TimeExhausted, TransactionNotFound

from rewardpay.common.errors import TransientChainError

ERC20_ABI = [
    {
        "name": "balanceOf",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "account", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "allowance",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "owner", "type": "address"}, {"name": "spender", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "approve",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "spender", "type": "address"}, {"name": "amount", "type": "uint256"}],
        "outputs": [{"name": "", "type": "bool"}],
    },
]

AIRDROP_ABI = [
    {
        "name": "airdropERC20",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "tokenAddress", "type": "address"},
            {
                "name": "contents",
                "type": "tuple[]",
                "components": [
                    {"name": "recipient", "type": "address"},
                    {"name": "amount", "type": "uint256"},
                ],
            },
        ],
        "outputs": [],
    },
]

APPROVE_GAS_LIMIT = 100_000


@dataclass(frozen=True)
class Receipt:
    tx_hash: str
    status: int
    block_number: int

    @property
    def succeeded(self) -> bool:
        return self.status == 1


class ChainGateway(Protocol):
    async def native_balance(self, address: str) -> int: ...

    async def token_balance(self, address: str) -> int: ...

    async def allowance(self, owner: str, spender: str) -> int: ...

    async def gas_price(self) -> int | None: ...

    async def nonce(self, address: str) -> int: ...

    async def send_approve(
        self, account: LocalAccount, spender: str, amount: int, nonce: int, gas_price: int
    ) -> str: ...

    async def send_airdrop(
        self,
        account: LocalAccount,
        contract: str,
        contents: list[tuple[str, int]],
        nonce: int,
        gas_price: int,
        gas_limit: int,
    ) -> str: ...

    async def wait_for_receipt(self, tx_hash: str, timeout_seconds: float) -> Receipt: ...

    async def transaction_receipt(self, tx_hash: str) -> Receipt | None: ...


class Web3ChainGateway:
    def __init__(self, rpc_url: str, chain_id: int, token_address: str, w3: AsyncWeb3 | None = None) -> None:
        self.w3 = w3 or AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(rpc_url))
        self.chain_id = chain_id
        self.token_address = AsyncWeb3.to_checksum_address(token_address)
        self.token = self.w3.eth.contract(address=self.token_address, abi=ERC20_ABI)

    async def native_balance(self, address: str) -> int:
        return int(await self.w3.eth.get_balance(AsyncWeb3.to_checksum_address(address)))

    async def token_balance(self, address: str) -> int:
        return int(await self.token.functions.balanceOf(AsyncWeb3.to_checksum_address(address)).call())

    async def allowance(self, owner: str, spender: str) -> int:
        return int(
            await self.token.functions.allowance(
                AsyncWeb3.to_checksum_address(owner), AsyncWeb3.to_checksum_address(spender)
            ).call()
        )

    async def gas_price(self) -> int | None:
        price = await self.w3.eth.gas_price
        return int(price) if price else None

    async def nonce(self, address: str) -> int:
        # "latest" rather than "pending": a stuck pending tx is replaced, not queued behind.
        return int(await self.w3.eth.get_transaction_count(AsyncWeb3.to_checksum_address(address), "latest"))

    def _base_tx(self, account: LocalAccount, nonce: int, gas_price: int, gas_limit: int) -> dict:
        return {
            "from": account.address,
            "chainId": self.chain_id,
            "nonce": nonce,
            "gasPrice": gas_price,
            "gas": gas_limit,
        }

    async def _sign_and_send(self, account: LocalAccount, tx: dict) -> str:
        signed = account.sign_transaction(tx)
        tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)
        return self.w3.to_hex(tx_hash)

    async def send_approve(
        self, account: LocalAccount, spender: str, amount: int, nonce: int, gas_price: int
    ) -> str:
        tx = await self.token.functions.approve(AsyncWeb3.to_checksum_address(spender), amount).build_transaction(
            self._base_tx(account, nonce, gas_price, APPROVE_GAS_LIMIT)
        )
        return await self._sign_and_send(account, tx)

    async def send_airdrop(
        self,
        account: LocalAccount,
        contract: str,
        contents: list[tuple[str, int]],
        nonce: int,
        gas_price: int,
        gas_limit: int,
    ) -> str:
        airdrop = self.w3.eth.contract(address=AsyncWeb3.to_checksum_address(contract), abi=AIRDROP_ABI)
        payload = [(AsyncWeb3.to_checksum_address(recipient), amount) for recipient, amount in contents]
        tx = await airdrop.functions.airdropERC20(self.token_address, payload).build_transaction(
            self._base_tx(account, nonce, gas_price, gas_limit)
        )
        return await self._sign_and_send(account, tx)

    async def wait_for_receipt(self, tx_hash: str, timeout_seconds: float) -> Receipt:
        try:
            receipt = await self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout_seconds)
        except TimeExhausted as exc:
            raise TransientChainError(
                f"no receipt for {tx_hash} within {timeout_seconds}s", {"tx_hash": tx_hash}
            ) from exc
        return Receipt(tx_hash=tx_hash, status=int(receipt["status"]), block_number=int(receipt["blockNumber"]))

    async def transaction_receipt(self, tx_hash: str) -> Receipt | None:
        """Receipt of a mined transaction, or None while it is pending or unknown."""

        try:
            receipt = await self.w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None
        return Receipt(tx_hash=tx_hash, status=int(receipt["status"]), block_number=int(receipt["blockNumber"]))
