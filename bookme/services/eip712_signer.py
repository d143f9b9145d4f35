"""
EIP-712 Payment Authorization Signer
Signs BookingAuthorization / CancellationAuthorization structs for the BookMe Escrow contract
"""

import logging
import secrets
import time
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Optional, Protocol

from eth_account import Account
from eth_account.messages import encode_typed_data
from eth_utils import keccak, to_checksum_address, to_hex

from ..exceptions import NonceReuseError, WalletNotConfiguredError
from ..utils.money import Number, to_decimal, to_usdc_units

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
FEE_RATE_DENOMINATOR = 10000  # Basis points

BOOKING_AUTHORIZATION = "booking_authorization"
CANCELLATION_AUTHORIZATION = "cancellation_authorization"

MAX_NONCE_ATTEMPTS = 3

EIP712_DOMAIN_TYPE = [
    {"name": "name", "type": "string"},
    {"name": "version", "type": "string"},
    {"name": "chainId", "type": "uint256"},
    {"name": "verifyingContract", "type": "address"},
]

AUTHORIZATION_TYPES = {
    "BookingAuthorization": [
        {"name": "bookingId", "type": "bytes32"},
        {"name": "customer", "type": "address"},
        {"name": "provider", "type": "address"},
        {"name": "inviter", "type": "address"},
        {"name": "amount", "type": "uint256"},
        {"name": "originalAmount", "type": "uint256"},
        {"name": "platformFeeRate", "type": "uint256"},
        {"name": "inviterFeeRate", "type": "uint256"},
        {"name": "expiry", "type": "uint256"},
        {"name": "nonce", "type": "uint256"},
    ],
    "CancellationAuthorization": [
        {"name": "bookingId", "type": "bytes32"},
        {"name": "customerAmount", "type": "uint256"},
        {"name": "providerAmount", "type": "uint256"},
        {"name": "platformAmount", "type": "uint256"},
        {"name": "inviterAmount", "type": "uint256"},
        {"name": "reason", "type": "string"},
        {"name": "expiry", "type": "uint256"},
        {"name": "nonce", "type": "uint256"},
    ],
}


class NonceStore(Protocol):
    def record_nonce(self, nonce: int, booking_id: uuid.UUID, signature_type: str) -> None:
        """Persist the nonce; raise NonceReuseError if it already exists"""


@dataclass
class FeeBreakdown:
    platform_fee_rate: int
    inviter_fee_rate: int
    platform_amount: Decimal
    inviter_amount: Decimal
    provider_amount: Decimal
    original_amount: Decimal

    def to_dict(self) -> dict:
        return {
            "platform_fee_rate": self.platform_fee_rate,
            "inviter_fee_rate": self.inviter_fee_rate,
            "platform_amount": str(self.platform_amount),
            "inviter_amount": str(self.inviter_amount),
            "provider_amount": str(self.provider_amount),
            "original_amount": str(self.original_amount),
        }


def calculate_fees(original_amount: Number, has_inviter: bool = False) -> FeeBreakdown:
    """
    Split a service price between platform, inviter and provider.

    10% platform fee without an inviter; 5% platform + 5% inviter with one.
    Fees are taken from the original (pre-points) price, and the provider gets
    the exact remainder so the three parts always add back up to the price.
    """
    original = to_decimal(original_amount)
    platform_fee_rate = 500 if has_inviter else 1000
    inviter_fee_rate = 500 if has_inviter else 0

    platform_amount = original * platform_fee_rate / FEE_RATE_DENOMINATOR
    inviter_amount = original * inviter_fee_rate / FEE_RATE_DENOMINATOR
    provider_amount = original - platform_amount - inviter_amount

    return FeeBreakdown(
        platform_fee_rate=platform_fee_rate,
        inviter_fee_rate=inviter_fee_rate,
        platform_amount=platform_amount,
        inviter_amount=inviter_amount,
        provider_amount=provider_amount,
        original_amount=original,
    )


def chain_booking_id_for(booking_id: uuid.UUID | str) -> str:
    """bytes32 correlation id the escrow contract uses for a booking"""
    return to_hex(keccak(text=str(booking_id)))


def _serialize(value: Any) -> Any:
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        # uint256 values go out as decimal strings
        return str(value)
    if isinstance(value, bytes):
        return to_hex(value)
    return value


@dataclass
class SignedAuthorization:
    primary_type: str
    authorization: dict
    signature: str
    nonce: int
    expiry: int
    chain_booking_id: str
    domain: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "authorization": {k: _serialize(v) for k, v in self.authorization.items()},
            "signature": self.signature,
            "nonce": str(self.nonce),
            "expiry": self.expiry,
            "blockchain_booking_id": self.chain_booking_id,
            "domain": {k: _serialize(v) for k, v in self.domain.items()},
            "primary_type": self.primary_type,
        }


class EIP712Signer:
    """Backend signer for escrow authorizations"""

    def __init__(self, private_key: str, contract_address: str, chain_id: int):
        if not private_key:
            raise ValueError("BACKEND_SIGNER_PRIVATE_KEY not configured")
        if not contract_address:
            raise ValueError("CONTRACT_ADDRESS not configured")

        self._account = Account.from_key(private_key)
        self.contract_address = to_checksum_address(contract_address)
        self.chain_id = int(chain_id)
        # Must match the contract's EIP712("BookMe Escrow", "1") constructor
        self.domain = {
            "name": "BookMe Escrow",
            "version": "1",
            "chainId": self.chain_id,
            "verifyingContract": self.contract_address,
        }
        logger.info(
            f"🔐 EIP-712 signer initialized: signer={self._account.address}, "
            f"contract={self.contract_address}, chain={self.chain_id}"
        )

    @property
    def address(self) -> str:
        return self._account.address

    @staticmethod
    def generate_nonce() -> int:
        return secrets.randbits(96)

    def _typed_data(self, primary_type: str, message: dict) -> dict:
        return {
            "types": {"EIP712Domain": EIP712_DOMAIN_TYPE, primary_type: AUTHORIZATION_TYPES[primary_type]},
            "primaryType": primary_type,
            "domain": self.domain,
            "message": message,
        }

    def _issue_nonce(self, nonce_store: NonceStore, booking_id: uuid.UUID, signature_type: str) -> int:
        """Draw a fresh nonce and persist it before anything is signed"""
        for attempt in range(1, MAX_NONCE_ATTEMPTS + 1):
            nonce = self.generate_nonce()
            try:
                nonce_store.record_nonce(nonce, booking_id, signature_type)
                return nonce
            except NonceReuseError:
                logger.warning(f"⚠️ Nonce collision on attempt {attempt} for booking {booking_id}")
        raise NonceReuseError(f"Could not issue a unique nonce for booking {booking_id}")

    def _sign(self, primary_type: str, message: dict) -> str:
        signable = encode_typed_data(full_message=self._typed_data(primary_type, message))
        signed = Account.sign_message(signable, private_key=self._account.key)
        return to_hex(signed.signature)

    def sign_booking_authorization(
        self,
        *,
        booking_id: uuid.UUID,
        customer: Optional[str],
        provider: Optional[str],
        amount: Number,
        original_amount: Number,
        platform_fee_rate: int,
        inviter_fee_rate: int,
        nonce_store: NonceStore,
        inviter: Optional[str] = None,
        expiry_minutes: int = 5,
    ) -> SignedAuthorization:
        """
        Sign a BookingAuthorization for the escrow contract.

        ``amount`` is what the customer actually transfers (after points);
        ``original_amount`` is the full service price used as the fee base.
        The nonce is recorded through ``nonce_store`` before signing.
        """
        if not customer or not provider:
            raise WalletNotConfiguredError("Wallet addresses not configured")

        chain_booking_id = chain_booking_id_for(booking_id)
        expiry = int(time.time()) + expiry_minutes * 60
        nonce = self._issue_nonce(nonce_store, booking_id, BOOKING_AUTHORIZATION)

        message = {
            "bookingId": keccak(text=str(booking_id)),
            "customer": to_checksum_address(customer),
            "provider": to_checksum_address(provider),
            "inviter": to_checksum_address(inviter) if inviter else ZERO_ADDRESS,
            "amount": to_usdc_units(amount),
            "originalAmount": to_usdc_units(original_amount),
            "platformFeeRate": int(platform_fee_rate),
            "inviterFeeRate": int(inviter_fee_rate),
            "expiry": expiry,
            "nonce": nonce,
        }
        signature = self._sign("BookingAuthorization", message)

        logger.info(
            f"✅ Booking authorization signed: booking={booking_id}, amount={amount} USDC, "
            f"original={original_amount} USDC, expiry={expiry}"
        )
        return SignedAuthorization(
            primary_type="BookingAuthorization",
            authorization=message,
            signature=signature,
            nonce=nonce,
            expiry=expiry,
            chain_booking_id=chain_booking_id,
            domain=dict(self.domain),
        )

    def sign_cancellation_authorization(
        self,
        *,
        booking_id: uuid.UUID,
        chain_booking_id: str,
        customer_amount: Number,
        provider_amount: Number,
        platform_amount: Number,
        nonce_store: NonceStore,
        inviter_amount: Number = 0,
        reason: str = "Booking cancelled",
        expiry_minutes: int = 5,
    ) -> SignedAuthorization:
        """Sign a CancellationAuthorization splitting the escrowed funds"""
        expiry = int(time.time()) + expiry_minutes * 60
        nonce = self._issue_nonce(nonce_store, booking_id, CANCELLATION_AUTHORIZATION)

        message = {
            "bookingId": bytes.fromhex(chain_booking_id.removeprefix("0x")),
            "customerAmount": to_usdc_units(customer_amount),
            "providerAmount": to_usdc_units(provider_amount),
            "platformAmount": to_usdc_units(platform_amount),
            "inviterAmount": to_usdc_units(inviter_amount),
            "reason": reason,
            "expiry": expiry,
            "nonce": nonce,
        }
        signature = self._sign("CancellationAuthorization", message)

        logger.info(
            f"✅ Cancellation authorization signed: booking={booking_id}, "
            f"customer={customer_amount}, provider={provider_amount}, platform={platform_amount}"
        )
        return SignedAuthorization(
            primary_type="CancellationAuthorization",
            authorization=message,
            signature=signature,
            nonce=nonce,
            expiry=expiry,
            chain_booking_id=chain_booking_id,
            domain=dict(self.domain),
        )

    def verify_signature(self, authorization: dict, signature: str, primary_type: str = "BookingAuthorization") -> bool:
        """Check that ``signature`` over ``authorization`` was produced by this signer"""
        try:
            signable = encode_typed_data(full_message=self._typed_data(primary_type, authorization))
            recovered = Account.recover_message(signable, signature=signature)
        except Exception as e:
            logger.error(f"❌ Error verifying signature: {e}")
            return False
        return recovered.lower() == self._account.address.lower()


_signer: Optional[EIP712Signer] = None


def get_signer() -> Optional[EIP712Signer]:
    """
    FastAPI dependency returning the configured signer, or None when signing
    is not configured (bookings are then created with payment deferred).
    """
    global _signer
    if _signer is None:
        from ..config import BACKEND_SIGNER_PRIVATE_KEY, CONTRACT_ADDRESS, CONTRACT_CHAIN_ID

        if not BACKEND_SIGNER_PRIVATE_KEY or not CONTRACT_ADDRESS:
            logger.warning("⚠️ EIP-712 signer not configured - payment authorizations disabled")
            return None
        _signer = EIP712Signer(BACKEND_SIGNER_PRIVATE_KEY, CONTRACT_ADDRESS, CONTRACT_CHAIN_ID)
    return _signer
