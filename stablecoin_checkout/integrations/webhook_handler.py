"""
Provider webhook handler with signature verification.

Implements:
- ECDSA (SHA-256) verification of ``"{timestamp}.{raw body}"``
- Parsing of balance activity events
- Routing of ``account_credited`` events to the deposit reconciler
"""
import base64
import binascii
import json
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, Optional

import structlog
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec

from ..config import Settings
from ..monitoring.metrics import metrics

if TYPE_CHECKING:
    from ..core.reconciler import DepositReconciler

logger = structlog.get_logger(__name__)

ACCOUNT_CREDITED = "account_credited"
SIGNATURE_HEADER = "x-mural-webhook-signature"
TIMESTAMP_HEADER = "x-mural-webhook-timestamp"


class WebhookError(Exception):
    """Raised when a webhook request cannot be processed."""

    pass


class WebhookSignatureError(WebhookError):
    """Raised when a webhook signature does not verify."""

    pass


@dataclass(frozen=True)
class DepositEvent:
    """The fields of a provider event the checkout cares about."""

    event_type: str
    credited_token_amount: Optional[str]
    transaction_hash: Optional[str]


def load_public_key(pem: str) -> ec.EllipticCurvePublicKey:
    """
    Load the provider's webhook verification key.

    Escaped newlines are accepted so the PEM can live in a single env var.

    Raises:
        WebhookError: If the key is not a valid EC public key
    """
    data = pem.replace("\\n", "\n").strip().encode()
    try:
        key = serialization.load_pem_public_key(data)
    except (ValueError, UnsupportedAlgorithm) as e:
        raise WebhookError(f"Invalid webhook public key: {e}") from e
    if not isinstance(key, ec.EllipticCurvePublicKey):
        raise WebhookError("Webhook public key must be an EC key")
    return key


class WebhookHandler:
    """
    Handles provider balance webhooks.

    Unknown event types and credits without an amount are acknowledged and
    ignored, so the provider does not keep redelivering them.
    """

    def __init__(self, settings: Settings, reconciler: "DepositReconciler"):
        self.settings = settings
        self.reconciler = reconciler
        self.public_key: Optional[ec.EllipticCurvePublicKey] = None
        if settings.webhook_public_key:
            self.public_key = load_public_key(settings.webhook_public_key)

        logger.info(
            "webhook_handler_initialized",
            signature_verification=self.public_key is not None,
        )

    def verify_signature(self, payload: bytes, signature: str, timestamp: str) -> None:
        """
        Verify a webhook signature.

        Args:
            payload: Raw request body as bytes
            signature: Base64 DER-encoded ECDSA signature header value
            timestamp: Timestamp header value

        Raises:
            WebhookSignatureError: If the signature does not verify
        """
        if self.public_key is None:
            raise WebhookSignatureError("No webhook public key configured")

        try:
            der_signature = base64.b64decode(signature, validate=True)
        except (binascii.Error, ValueError) as e:
            raise WebhookSignatureError("Signature is not valid base64") from e

        message = f"{timestamp}.".encode() + payload
        try:
            self.public_key.verify(der_signature, message, ec.ECDSA(hashes.SHA256()))
        except InvalidSignature as e:
            raise WebhookSignatureError("Signature does not match payload") from e

    @staticmethod
    def parse(payload: bytes) -> DepositEvent:
        """
        Extract event type, credited amount and transaction hash.

        Raises:
            WebhookError: If the body is not a JSON object
        """
        try:
            body = json.loads(payload)
        except (ValueError, UnicodeDecodeError) as e:
            raise WebhookError(f"Malformed webhook body: {e}") from e
        if not isinstance(body, dict):
            raise WebhookError("Webhook body must be a JSON object")

        token = body.get("token") if isinstance(body.get("token"), dict) else {}
        details = (
            body.get("transactionDetails")
            if isinstance(body.get("transactionDetails"), dict)
            else {}
        )
        amount = token.get("tokenAmount")
        tx_hash = details.get("hash")

        return DepositEvent(
            event_type=str(body.get("type") or "unknown"),
            credited_token_amount=str(amount) if amount not in (None, "") else None,
            transaction_hash=str(tx_hash) if tx_hash else None,
        )

    async def process(
        self,
        payload: bytes,
        signature: Optional[str] = None,
        timestamp: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Process one webhook delivery.

        Args:
            payload: Raw request body
            signature: Signature header, if sent
            timestamp: Timestamp header, if sent

        Returns:
            Dict[str, Any]: Acknowledgement, plus match outcome for credits

        Raises:
            WebhookError: If the body is malformed
        """
        start_time = time.time()

        if self.public_key is not None and signature and timestamp and payload:
            try:
                self.verify_signature(payload, signature, timestamp)
            except WebhookSignatureError as e:
                logger.warning("webhook_signature_invalid", error=str(e))
                metrics.record_webhook_event(
                    "unknown", "invalid_signature", time.time() - start_time
                )
                return {"received": True, "error": "invalid signature"}
            logger.info("webhook_signature_verified")
        else:
            logger.info(
                "webhook_signature_unverified",
                key_configured=self.public_key is not None,
                signature_present=bool(signature),
                timestamp_present=bool(timestamp),
            )

        try:
            event = self.parse(payload)
        except WebhookError:
            metrics.record_webhook_event("unknown", "malformed", time.time() - start_time)
            raise

        logger.info("webhook_event_received", event_type=event.event_type)

        if event.event_type != ACCOUNT_CREDITED or event.credited_token_amount is None:
            metrics.record_webhook_event(event.event_type, "ignored", time.time() - start_time)
            return {"received": True}

        order_id = await self.reconciler.handle_deposit(
            event.credited_token_amount, event.transaction_hash
        )
        metrics.record_webhook_event(
            event.event_type,
            "matched" if order_id else "unmatched",
            time.time() - start_time,
        )
        return {
            "received": True,
            "matched": order_id is not None,
            "order_id": str(order_id) if order_id else None,
        }
