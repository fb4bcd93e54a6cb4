import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./waxhands.db")

# Security - CRITICAL: No default secret key in production
SECRET_KEY = os.getenv("SECRET_KEY")
if not SECRET_KEY:
    import warnings

    warnings.warn(
        "SECRET_KEY not set! Using insecure default - DO NOT USE IN PRODUCTION", RuntimeWarning, stacklevel=2
    )
    SECRET_KEY = "INSECURE-DEV-KEY-CHANGE-IN-PRODUCTION"  # noqa: S105 - Dev fallback only

# Frontend base URL for redirects
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:5173")

# Robokassa Configuration
ROBOKASSA_MERCHANT_LOGIN = os.getenv("ROBOKASSA_MERCHANT_LOGIN", "")
ROBOKASSA_PASSWORD_1 = os.getenv("ROBOKASSA_PASSWORD_1", "")  # payment page + success redirect
ROBOKASSA_PASSWORD_2 = os.getenv("ROBOKASSA_PASSWORD_2", "")  # result webhook + status queries
ROBOKASSA_PASSWORD_3 = os.getenv("ROBOKASSA_PASSWORD_3", "")  # refund API (JWT key)
ROBOKASSA_TEST_MODE = os.getenv("ROBOKASSA_TEST_MODE", "true").lower() == "true"
ROBOKASSA_ALGORITHM = os.getenv("ROBOKASSA_ALGORITHM", "MD5")
ROBOKASSA_TIMEOUT_SECONDS = float(os.getenv("ROBOKASSA_TIMEOUT_SECONDS", "10"))
# When disabled, refunds wait in "requested" until an admin approves them
ROBOKASSA_AUTO_REFUND = os.getenv("ROBOKASSA_AUTO_REFUND", "true").lower() == "true"
ROBOKASSA_SUCCESS_URL = os.getenv("ROBOKASSA_SUCCESS_URL", f"{FRONTEND_URL}/payment/success")
ROBOKASSA_FAIL_URL = os.getenv("ROBOKASSA_FAIL_URL", f"{FRONTEND_URL}/payment/fail")
# 54-FZ settlement receipt attached after a prepayment is confirmed
ROBOKASSA_SECOND_RECEIPT = os.getenv("ROBOKASSA_SECOND_RECEIPT", "true").lower() == "true"
ROBOKASSA_TAX_SYSTEM = os.getenv("ROBOKASSA_TAX_SYSTEM", "osn")
ROBOKASSA_SITE_URL = os.getenv("ROBOKASSA_SITE_URL", "https://waxhands.ru/")
# PEM public key of the Robokassa certificate that signs ResultURL2 (JWS) notifications
ROBOKASSA_JWS_PUBLIC_KEY = os.getenv("ROBOKASSA_JWS_PUBLIC_KEY", "").replace("\\n", "\n")

# Refund policy
REFUND_CUTOFF_HOURS = float(os.getenv("REFUND_CUTOFF_HOURS", "3"))

# Reconciliation poller
POLLER_ENABLED = os.getenv("POLLER_ENABLED", "true").lower() == "true"
POLLER_INTERVAL_SECONDS = float(os.getenv("POLLER_INTERVAL_SECONDS", "60"))
POLLER_GRACE_SECONDS = float(os.getenv("POLLER_GRACE_SECONDS", "120"))
POLLER_CONCURRENCY = int(os.getenv("POLLER_CONCURRENCY", "4"))


@dataclass(frozen=True)
class RobokassaSettings:
    """Credentials and endpoints for one Robokassa merchant"""

    merchant_login: str
    password_1: str
    password_2: str
    password_3: str
    test_mode: bool = True
    algorithm: str = "MD5"
    timeout_seconds: float = 10.0
    auto_refund: bool = True
    payment_url: str = "https://auth.robokassa.ru/Merchant/Index.aspx"
    status_url: str = "https://auth.robokassa.ru/Merchant/WebService/Service.asmx/OpStateExt"
    refund_base_url: str = "https://services.robokassa.ru/RefundService"
    success_url: Optional[str] = None
    fail_url: Optional[str] = None
    second_receipt: bool = True
    tax_system: str = "osn"
    site_url: str = "https://waxhands.ru/"
    fiscal_base_url: str = "https://ws.roboxchange.com/RoboFiscal/Receipt"
    jws_public_key: Optional[str] = None
    jws_algorithms: tuple[str, ...] = ("RS256",)

    @classmethod
    def from_env(cls) -> "RobokassaSettings":
        return cls(
            merchant_login=ROBOKASSA_MERCHANT_LOGIN,
            password_1=ROBOKASSA_PASSWORD_1,
            password_2=ROBOKASSA_PASSWORD_2,
            password_3=ROBOKASSA_PASSWORD_3,
            test_mode=ROBOKASSA_TEST_MODE,
            algorithm=ROBOKASSA_ALGORITHM,
            timeout_seconds=ROBOKASSA_TIMEOUT_SECONDS,
            auto_refund=ROBOKASSA_AUTO_REFUND,
            success_url=ROBOKASSA_SUCCESS_URL,
            fail_url=ROBOKASSA_FAIL_URL,
            second_receipt=ROBOKASSA_SECOND_RECEIPT,
            tax_system=ROBOKASSA_TAX_SYSTEM,
            site_url=ROBOKASSA_SITE_URL,
            jws_public_key=ROBOKASSA_JWS_PUBLIC_KEY or None,
        )

    def is_configured(self) -> bool:
        return bool(self.merchant_login and self.password_1 and self.password_2)
