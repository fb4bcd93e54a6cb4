"""
Webhook Security Module

Signature handling for the Robokassa protocol:
- ResultURL and SuccessURL callbacks are signed with different merchant passwords
- Outbound payment links and status queries are signed the same way
- ResultURL2 notifications arrive as JWS tokens signed with the Robokassa certificate
- Comparison is constant-time and verification never raises on bad input
"""

import base64
import hashlib
import hmac
import logging
from enum import Enum
from typing import Any, Mapping, Optional

from jose import JWTError
from jose import jwt as jose_jwt

from .config import RobokassaSettings

logger = logging.getLogger(__name__)

SUPPORTED_ALGORITHMS = {
    "MD5": "md5",
    "SHA1": "sha1",
    "SHA256": "sha256",
    "SHA384": "sha384",
    "SHA512": "sha512",
}

PASS_THROUGH_PREFIX = "shp_"


class SecretTier(str, Enum):
    """Which merchant password signs a given channel"""

    PAYMENT_PAGE = "password_1"  # payment form + success redirect
    RESULT = "password_2"  # result webhook + status queries
    REFUND = "password_3"  # refund API tokens


def constant_time_compare(a: str, b: str) -> bool:
    """
    Compare two strings in constant time to prevent timing attacks.
    Uses hmac.compare_digest which is designed for this purpose.
    """
    if not a or not b:
        return False
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def extract_pass_through_params(payload: Mapping[str, Any]) -> dict[str, str]:
    """Shp_* correlation parameters, keyed exactly as received"""
    return {
        str(key): str(value)
        for key, value in payload.items()
        if isinstance(key, str) and key.lower().startswith(PASS_THROUGH_PREFIX)
    }


def _pass_through_suffix(params: Mapping[str, str]) -> list[str]:
    return [f"{key}={params[key]}" for key in sorted(params)]


class SignatureVerifier:
    """Computes and checks gateway signatures for one merchant account"""

    def __init__(self, settings: RobokassaSettings):
        self.settings = settings
        algorithm = (settings.algorithm or "MD5").upper()
        if algorithm not in SUPPORTED_ALGORITHMS:
            raise ValueError(f"Unsupported signature algorithm: {settings.algorithm}")
        self.algorithm = SUPPORTED_ALGORITHMS[algorithm]

    def _secret(self, tier: SecretTier) -> str:
        return getattr(self.settings, SecretTier(tier).value)

    def _digest(self, parts: list[str]) -> str:
        return hashlib.new(self.algorithm, ":".join(parts).encode("utf-8")).hexdigest().upper()

    def compute(self, out_sum: str, inv_id: str, tier: SecretTier, shp: Optional[Mapping[str, str]] = None) -> str:
        """Expected signature of a callback: OutSum:InvId:Password[:Shp_key=value...]"""
        parts = [out_sum, inv_id, self._secret(tier)]
        parts.extend(_pass_through_suffix(shp or {}))
        return self._digest(parts)

    def verify(self, payload: Mapping[str, Any], claimed_signature: Any, tier: SecretTier) -> bool:
        """
        Verify a callback payload against the claimed signature.

        Returns False for any malformed input; callers reject the event on False.
        """
        try:
            if tier not in (SecretTier.PAYMENT_PAGE, SecretTier.RESULT):
                return False
            tier = SecretTier(tier)
            if not isinstance(payload, Mapping) or not isinstance(claimed_signature, str):
                return False
            out_sum = payload.get("OutSum")
            inv_id = payload.get("InvId")
            if not isinstance(out_sum, str) or not isinstance(inv_id, str) or not out_sum or not inv_id:
                return False
            secret = self._secret(tier)
            if not secret:
                logger.error(f"❌ No secret configured for {tier.name} signatures")
                return False

            expected = self.compute(out_sum, inv_id, tier, extract_pass_through_params(payload))
            return constant_time_compare(expected, claimed_signature.strip().upper())
        except Exception as e:
            logger.warning(f"⚠️ Signature verification failed on malformed input: {type(e).__name__}")
            return False

    def sign_payment_form(
        self,
        out_sum: str,
        inv_id: str,
        receipt: Optional[str] = None,
        shp: Optional[Mapping[str, str]] = None,
    ) -> str:
        """MerchantLogin:OutSum:InvId[:Receipt]:Password1[:Shp_key=value...]"""
        parts = [self.settings.merchant_login, out_sum, inv_id]
        if receipt:
            parts.append(receipt)
        parts.append(self._secret(SecretTier.PAYMENT_PAGE))
        parts.extend(_pass_through_suffix(shp or {}))
        return self._digest(parts)

    def sign_status_query(self, inv_id: str) -> str:
        """MerchantLogin:InvId:Password2"""
        return self._digest([self.settings.merchant_login, inv_id, self._secret(SecretTier.RESULT)])

    @property
    def refund_key(self) -> str:
        return self._secret(SecretTier.REFUND)

    def verify_jws(self, token: Any) -> Optional[dict[str, Any]]:
        """
        Verify a ResultURL2 JWS token against the configured Robokassa public key.

        Returns the notification fields, or None when the token is malformed,
        unsigned by Robokassa, or no key is configured.
        """
        if not isinstance(token, str) or token.count(".") != 2:
            return None
        if not self.settings.jws_public_key:
            logger.warning("🔒 ROBOKASSA_JWS_PUBLIC_KEY not set; rejecting JWS notification")
            return None
        try:
            claims = jose_jwt.decode(
                token,
                self.settings.jws_public_key,
                algorithms=list(self.settings.jws_algorithms),
                options={"verify_aud": False},
            )
        except JWTError as e:
            logger.warning(f"🔒 JWS notification rejected: {e}")
            return None
        except Exception as e:
            logger.error(f"❌ JWS verification error: {e}")
            return None

        # Robokassa nests the payment fields under "data" next to a "header" block
        data = claims.get("data") if isinstance(claims.get("data"), dict) else claims
        return data if isinstance(data, dict) else None

    def sign_receipt_attach(self, encoded_body: str) -> str:
        """base64(md5hex(body + Password1)) without padding, as RoboFiscal expects"""
        digest = hashlib.md5(f"{encoded_body}{self._secret(SecretTier.PAYMENT_PAGE)}".encode("utf-8")).hexdigest()
        return base64.b64encode(digest.encode("ascii")).decode("ascii").rstrip("=")
