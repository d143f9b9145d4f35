import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

DATABASE_URL = os.getenv("DATABASE_URL", "postgresql+psycopg://localhost/bookme")

# Privy Configuration
PRIVY_APP_ID = os.getenv("PRIVY_APP_ID")
PRIVY_APP_SECRET = os.getenv("PRIVY_APP_SECRET")
# PEM-encoded ES256 verification key from the Privy dashboard
PRIVY_VERIFICATION_KEY = os.getenv("PRIVY_VERIFICATION_KEY", "").replace("\\n", "\n")
PRIVY_API_URL = os.getenv("PRIVY_API_URL", "https://auth.privy.io/api/v1")

# Blockchain / escrow contract
BACKEND_SIGNER_PRIVATE_KEY = os.getenv("BACKEND_SIGNER_PRIVATE_KEY")
CONTRACT_ADDRESS = os.getenv("CONTRACT_ADDRESS")
CONTRACT_CHAIN_ID = int(os.getenv("CONTRACT_CHAIN_ID", "84532"))  # Base Sepolia
USDC_ADDRESS = os.getenv("USDC_ADDRESS")
BLOCKCHAIN_RPC_URL = os.getenv("BLOCKCHAIN_RPC_URL", "https://sepolia.base.org")
ENABLE_BLOCKCHAIN_MONITORING = os.getenv("ENABLE_BLOCKCHAIN_MONITORING", "false").lower() == "true"
# Signed authorizations are only valid on chain for this long
PAYMENT_AUTH_EXPIRY_MINUTES = int(os.getenv("PAYMENT_AUTH_EXPIRY_MINUTES", "5"))

# Booking rules
MAX_POINTS_USAGE_PERCENT = int(os.getenv("MAX_POINTS_USAGE_PERCENT", "100"))
SESSION_DURATION_THRESHOLD = float(os.getenv("SESSION_DURATION_THRESHOLD", "0.9"))
AUTO_COMPLETE_GRACE_MINUTES = int(os.getenv("AUTO_COMPLETE_GRACE_MINUTES", "0"))

# Fire-and-forget side effects: "arq" (redis queue) or "inline" (same process)
EVENT_DISPATCH_MODE = os.getenv("EVENT_DISPATCH_MODE", "arq")

# Shared secret for cron / internal callers of backend-only endpoints
INTERNAL_API_KEY = os.getenv("INTERNAL_API_KEY")

# Security - CRITICAL: No default secret key in production
SECRET_KEY = os.getenv("SECRET_KEY")
if not SECRET_KEY:
    import warnings

    warnings.warn(
        "SECRET_KEY not set! Using insecure default - DO NOT USE IN PRODUCTION", RuntimeWarning, stacklevel=2
    )
    SECRET_KEY = "INSECURE-DEV-KEY-CHANGE-IN-PRODUCTION"  # noqa: S105 - Dev fallback only


# Google OAuth (Meet links are created through the Calendar API)
GOOGLE_CLIENT_ID = os.getenv("GOOGLE_CLIENT_ID")
GOOGLE_CLIENT_SECRET = os.getenv("GOOGLE_CLIENT_SECRET")

# Zoom OAuth
ZOOM_CLIENT_ID = os.getenv("ZOOM_CLIENT_ID")
ZOOM_CLIENT_SECRET = os.getenv("ZOOM_CLIENT_SECRET")
