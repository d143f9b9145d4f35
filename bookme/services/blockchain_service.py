"""
Blockchain Service
web3 access to the BookMe Escrow contract: backend completion, transaction
status lookups and event log reads for the reconciler.
"""

import logging
from typing import Optional

from eth_account import Account
from eth_utils import to_checksum_address, to_hex
from web3 import AsyncWeb3

from ..config import BACKEND_SIGNER_PRIVATE_KEY, BLOCKCHAIN_RPC_URL, CONTRACT_ADDRESS, CONTRACT_CHAIN_ID

logger = logging.getLogger(__name__)

BOOKING_PAID_EVENT = "BookingCreatedAndPaid"
SERVICE_COMPLETED_EVENT = "ServiceCompleted"
BOOKING_CANCELLED_EVENT = "BookingCancelled"
CONTRACT_EVENTS = (BOOKING_PAID_EVENT, SERVICE_COMPLETED_EVENT, BOOKING_CANCELLED_EVENT)

# Subset of the escrow ABI the backend touches
ESCROW_ABI = [
    {
        "type": "function",
        "name": "completeService",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "bookingId", "type": "bytes32"}],
        "outputs": [],
    },
    {
        "type": "event",
        "name": BOOKING_PAID_EVENT,
        "anonymous": False,
        "inputs": [
            {"name": "bookingId", "type": "bytes32", "indexed": True},
            {"name": "customer", "type": "address", "indexed": True},
            {"name": "provider", "type": "address", "indexed": True},
            {"name": "inviter", "type": "address", "indexed": False},
            {"name": "amount", "type": "uint256", "indexed": False},
            {"name": "platformFeeRate", "type": "uint256", "indexed": False},
            {"name": "inviterFeeRate", "type": "uint256", "indexed": False},
        ],
    },
    {
        "type": "event",
        "name": SERVICE_COMPLETED_EVENT,
        "anonymous": False,
        "inputs": [
            {"name": "bookingId", "type": "bytes32", "indexed": True},
            {"name": "provider", "type": "address", "indexed": True},
            {"name": "providerAmount", "type": "uint256", "indexed": False},
            {"name": "platformFee", "type": "uint256", "indexed": False},
            {"name": "inviterFee", "type": "uint256", "indexed": False},
        ],
    },
    {
        "type": "event",
        "name": BOOKING_CANCELLED_EVENT,
        "anonymous": False,
        "inputs": [
            {"name": "bookingId", "type": "bytes32", "indexed": True},
            {"name": "cancelledBy", "type": "address", "indexed": True},
            {"name": "customerAmount", "type": "uint256", "indexed": False},
            {"name": "providerAmount", "type": "uint256", "indexed": False},
            {"name": "platformAmount", "type": "uint256", "indexed": False},
            {"name": "inviterAmount", "type": "uint256", "indexed": False},
            {"name": "reason", "type": "string", "indexed": False},
        ],
    },
]


class BlockchainError(Exception):
    """RPC or contract call failure"""


def normalize_event(log) -> dict:
    """Flatten a decoded web3 log into a JSON-safe dict (uint256 as decimal strings)"""
    args = {}
    for key, value in dict(log["args"]).items():
        if isinstance(value, bytes):
            args[key] = to_hex(value)
        elif isinstance(value, int) and not isinstance(value, bool):
            args[key] = str(value)
        else:
            args[key] = value
    return {
        "type": log["event"],
        "bookingId": args.pop("bookingId").lower(),
        "transactionHash": to_hex(log["transactionHash"]),
        "logIndex": log["logIndex"],
        "blockNumber": log["blockNumber"],
        **args,
    }


class BlockchainService:
    def __init__(
        self,
        rpc_url: str = BLOCKCHAIN_RPC_URL,
        contract_address: Optional[str] = CONTRACT_ADDRESS,
        private_key: Optional[str] = BACKEND_SIGNER_PRIVATE_KEY,
        chain_id: int = CONTRACT_CHAIN_ID,
    ):
        self.w3 = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(rpc_url))
        self.chain_id = chain_id
        self.contract_address = to_checksum_address(contract_address) if contract_address else None
        self.contract = (
            self.w3.eth.contract(address=self.contract_address, abi=ESCROW_ABI) if self.contract_address else None
        )
        self.account = Account.from_key(private_key) if private_key else None

    def _require_contract(self):
        if self.contract is None:
            raise BlockchainError("CONTRACT_ADDRESS not configured")
        return self.contract

    async def test_connection(self) -> dict:
        try:
            contract = self._require_contract()
            chain_id = await self.w3.eth.chain_id
            code = await self.w3.eth.get_code(contract.address)
            if not code or code in (b"", b"\x00"):
                raise BlockchainError("Contract not found at address")
            block = await self.w3.eth.block_number
            return {
                "success": True,
                "chain_id": chain_id,
                "chain_id_matches": chain_id == self.chain_id,
                "block_number": block,
                "contract_address": contract.address,
                "backend_signer": self.account.address if self.account else None,
            }
        except Exception as e:
            logger.error(f"❌ Blockchain connection test failed: {e}")
            return {"success": False, "error": str(e)}

    async def complete_service_as_backend(self, chain_booking_id: str) -> str:
        """Send completeService from the backend signer; returns the tx hash once mined"""
        contract = self._require_contract()
        if self.account is None:
            raise BlockchainError("Backend signer not configured")

        try:
            booking_id_bytes = bytes.fromhex(chain_booking_id.removeprefix("0x"))
            nonce = await self.w3.eth.get_transaction_count(self.account.address)
            tx = await contract.functions.completeService(booking_id_bytes).build_transaction(
                {"from": self.account.address, "nonce": nonce, "chainId": self.chain_id}
            )
            signed = self.account.sign_transaction(tx)
            tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)
            logger.info(f"📤 completeService sent for {chain_booking_id}: {to_hex(tx_hash)}")

            receipt = await self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=120)
            if receipt["status"] != 1:
                raise BlockchainError(f"completeService reverted in tx {to_hex(tx_hash)}")
            logger.info(f"✅ completeService mined in block {receipt['blockNumber']}")
            return to_hex(tx_hash)
        except BlockchainError:
            raise
        except Exception as e:
            logger.error(f"❌ Backend service completion failed: {e}")
            raise BlockchainError(str(e)) from e

    async def get_transaction_status(self, tx_hash: str) -> dict:
        try:
            receipt = await self.w3.eth.get_transaction_receipt(tx_hash)
        except Exception as e:
            # TransactionNotFound while still in the mempool
            logger.info(f"ℹ️ No receipt yet for {tx_hash}: {e}")
            return {"tx_hash": tx_hash, "status": "pending", "confirmations": 0}

        latest = await self.w3.eth.block_number
        return {
            "tx_hash": tx_hash,
            "status": "confirmed" if receipt["status"] == 1 else "failed",
            "block_number": receipt["blockNumber"],
            "confirmations": max(0, latest - receipt["blockNumber"] + 1),
            "gas_used": receipt["gasUsed"],
        }

    async def get_latest_block(self) -> int:
        return await self.w3.eth.block_number

    async def fetch_contract_events(self, from_block: int, to_block: int) -> list[dict]:
        """All escrow events in [from_block, to_block], in chain order"""
        contract = self._require_contract()
        events = []
        for name in CONTRACT_EVENTS:
            logs = await getattr(contract.events, name).get_logs(from_block=from_block, to_block=to_block)
            events.extend(normalize_event(log) for log in logs)
        events.sort(key=lambda e: (e["blockNumber"], e["logIndex"]))
        return events


_blockchain_service: Optional[BlockchainService] = None


def get_blockchain_service() -> BlockchainService:
    global _blockchain_service
    if _blockchain_service is None:
        _blockchain_service = BlockchainService()
    return _blockchain_service
