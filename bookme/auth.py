import logging
import secrets
import uuid
from typing import Optional

import httpx
from fastapi import Depends, Header, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import ExpiredSignatureError, JWTError, jwt
from sqlalchemy.orm import Session

from .config import INTERNAL_API_KEY, PRIVY_API_URL, PRIVY_APP_ID, PRIVY_APP_SECRET, PRIVY_VERIFICATION_KEY
from .database import get_db
from .models import User

logger = logging.getLogger(__name__)

security = HTTPBearer()

PRIVY_ISSUER = "privy.io"
# RFC 4122 URL namespace; user ids are stable uuid5 values of the Privy DID
PRIVY_DID_NAMESPACE = uuid.UUID("6ba7b810-9dad-11d1-80b4-00c04fd430c8")


def privy_did_to_uuid(did: str) -> uuid.UUID:
    return uuid.uuid5(PRIVY_DID_NAMESPACE, did)


def verify_privy_token(token: str) -> dict:
    """
    Verify a Privy access token (ES256) and return its claims.
    Raises 401 for anything that does not verify.
    """
    if not PRIVY_APP_ID or not PRIVY_VERIFICATION_KEY:
        logger.error("❌ Privy verification key or app id not configured")
        raise HTTPException(status_code=500, detail="Authentication not configured")

    try:
        claims = jwt.decode(
            token,
            PRIVY_VERIFICATION_KEY,
            algorithms=["ES256"],
            audience=PRIVY_APP_ID,
            issuer=PRIVY_ISSUER,
        )
    except ExpiredSignatureError as e:
        raise HTTPException(
            status_code=401,
            detail="Token has expired. Please refresh your session.",
            headers={"X-Token-Expired": "true"},
        ) from e
    except JWTError as e:
        logger.warning(f"⚠️ Privy token verification failed: {e}")
        raise HTTPException(status_code=401, detail="Invalid authentication token") from e

    if not claims.get("sub"):
        raise HTTPException(status_code=401, detail="Invalid token claims")
    return claims


def _wallets_from_privy_user(data: dict) -> tuple[Optional[str], Optional[str]]:
    """(embedded wallet, smart wallet) addresses from a Privy user record"""
    embedded = None
    smart = None
    for account in data.get("linked_accounts", []):
        if account.get("type") == "smart_wallet":
            smart = smart or account.get("address")
        elif account.get("type") == "wallet" and account.get("wallet_client_type") == "privy":
            embedded = embedded or account.get("address")
    return embedded, smart


async def sync_wallets_from_privy(user: User, db: Session) -> None:
    """Best-effort wallet refresh; failures are logged and never fail auth"""
    if not PRIVY_APP_ID or not PRIVY_APP_SECRET or not user.privy_did:
        return

    try:
        async with httpx.AsyncClient(timeout=10.0) as client:
            response = await client.get(
                f"{PRIVY_API_URL}/users/{user.privy_did}",
                auth=(PRIVY_APP_ID, PRIVY_APP_SECRET),
                headers={"privy-app-id": PRIVY_APP_ID},
            )
        if response.status_code != 200:
            logger.warning(f"⚠️ Privy user lookup failed for {user.id}: HTTP {response.status_code}")
            return

        embedded, smart = _wallets_from_privy_user(response.json())
        changed = False
        if embedded and embedded != user.wallet_address:
            user.wallet_address = embedded
            changed = True
        if smart and smart != user.smart_wallet_address:
            user.smart_wallet_address = smart
            changed = True
        if changed:
            db.commit()
            logger.info(f"✅ Synced wallets for user {user.id}")
    except Exception as e:
        db.rollback()
        logger.warning(f"⚠️ Wallet sync failed for user {user.id}: {e}")


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: Session = Depends(get_db),
) -> User:
    """Resolve the bearer token to a User row, creating it on first sight"""
    claims = verify_privy_token(credentials.credentials)
    did = claims["sub"]
    user_id = privy_did_to_uuid(did)

    user = db.get(User, user_id)
    if not user:
        user = User(id=user_id, privy_did=did, email=claims.get("email"))
        db.add(user)
        db.commit()
        db.refresh(user)
        logger.info(f"✅ Created user {user_id} for Privy DID")

    if not user.payout_address:
        await sync_wallets_from_privy(user, db)

    return user


def verify_internal_api_key(x_internal_api_key: Optional[str] = Header(None)) -> None:
    """Gate for routes called by cron jobs and other backend callers"""
    if not INTERNAL_API_KEY:
        logger.error("❌ INTERNAL_API_KEY not configured")
        raise HTTPException(status_code=503, detail="Internal API not configured")
    if not x_internal_api_key or not secrets.compare_digest(x_internal_api_key, INTERNAL_API_KEY):
        raise HTTPException(status_code=401, detail="Invalid internal API key")
