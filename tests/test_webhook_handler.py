"""
Tests for the provider webhook handler.
"""
import base64
import json
import uuid
from pathlib import Path
from typing import Any, Dict, Optional
from unittest.mock import AsyncMock

import pytest
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec

from stablecoin_checkout.integrations.webhook_handler import (
    WebhookError,
    WebhookHandler,
    load_public_key,
)

from conftest import make_settings

TIMESTAMP = "1700000000"


@pytest.fixture
def signing_key() -> ec.EllipticCurvePrivateKey:
    return ec.generate_private_key(ec.SECP256R1())


def public_pem(key: ec.EllipticCurvePrivateKey) -> str:
    return key.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()


def sign(key: ec.EllipticCurvePrivateKey, timestamp: str, body: bytes) -> str:
    signature = key.sign(f"{timestamp}.".encode() + body, ec.ECDSA(hashes.SHA256()))
    return base64.b64encode(signature).decode()


def credit_event(amount: Any = "2.000123", tx_hash: Optional[str] = "0xabc") -> bytes:
    body: Dict[str, Any] = {
        "type": "account_credited",
        "accountId": "account-1",
        "token": {"tokenAmount": amount, "tokenSymbol": "USDC"},
        "transactionDetails": {"hash": tx_hash, "blockchain": "POLYGON"},
    }
    return json.dumps(body).encode()


def make_handler(
    tmp_path: Path, public_key: Optional[str] = None, order_id: Optional[uuid.UUID] = None
) -> WebhookHandler:
    reconciler = AsyncMock()
    reconciler.handle_deposit.return_value = order_id
    return WebhookHandler(make_settings(tmp_path, webhook_public_key=public_key), reconciler)


class TestSignatureVerification:
    """Test suite for the webhook signature gate."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_valid_signature_reaches_reconciler(
        self, tmp_path: Path, signing_key: ec.EllipticCurvePrivateKey
    ) -> None:
        order_id = uuid.uuid4()
        handler = make_handler(tmp_path, public_pem(signing_key), order_id)
        body = credit_event()

        result = await handler.process(body, sign(signing_key, TIMESTAMP, body), TIMESTAMP)

        assert result == {"received": True, "matched": True, "order_id": str(order_id)}
        handler.reconciler.handle_deposit.assert_awaited_once_with("2.000123", "0xabc")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_invalid_signature_is_acknowledged_and_dropped(
        self, tmp_path: Path, signing_key: ec.EllipticCurvePrivateKey
    ) -> None:
        handler = make_handler(tmp_path, public_pem(signing_key))
        body = credit_event()
        other_key = ec.generate_private_key(ec.SECP256R1())

        result = await handler.process(body, sign(other_key, TIMESTAMP, body), TIMESTAMP)

        assert result == {"received": True, "error": "invalid signature"}
        handler.reconciler.handle_deposit.assert_not_awaited()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_signature_bound_to_timestamp(
        self, tmp_path: Path, signing_key: ec.EllipticCurvePrivateKey
    ) -> None:
        handler = make_handler(tmp_path, public_pem(signing_key))
        body = credit_event()

        result = await handler.process(body, sign(signing_key, TIMESTAMP, body), "1700000001")

        assert result["error"] == "invalid signature"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_garbage_signature(
        self, tmp_path: Path, signing_key: ec.EllipticCurvePrivateKey
    ) -> None:
        handler = make_handler(tmp_path, public_pem(signing_key))

        result = await handler.process(credit_event(), "%%%not-base64%%%", TIMESTAMP)

        assert result["error"] == "invalid signature"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unsigned_delivery_is_processed(
        self, tmp_path: Path, signing_key: ec.EllipticCurvePrivateKey
    ) -> None:
        """Without signature headers the event cannot be verified and is processed."""
        handler = make_handler(tmp_path, public_pem(signing_key))

        result = await handler.process(credit_event(), None, None)

        assert result == {"received": True, "matched": False, "order_id": None}
        handler.reconciler.handle_deposit.assert_awaited_once()

    @pytest.mark.unit
    def test_escaped_newlines_in_key(self, signing_key: ec.EllipticCurvePrivateKey) -> None:
        pem = public_pem(signing_key).replace("\n", "\\n")
        assert load_public_key(pem).public_numbers() == signing_key.public_key().public_numbers()

    @pytest.mark.unit
    def test_invalid_key_is_rejected(self, tmp_path: Path) -> None:
        with pytest.raises(WebhookError):
            make_handler(tmp_path, "not a pem")


class TestEventRouting:
    """Test suite for event parsing and routing."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_other_event_types_are_ignored(self, tmp_path: Path) -> None:
        handler = make_handler(tmp_path)
        body = json.dumps({"type": "account_debited", "token": {"tokenAmount": "5"}}).encode()

        assert await handler.process(body) == {"received": True}
        handler.reconciler.handle_deposit.assert_not_awaited()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_credit_without_amount_is_ignored(self, tmp_path: Path) -> None:
        handler = make_handler(tmp_path)
        body = json.dumps({"type": "account_credited", "token": {}}).encode()

        assert await handler.process(body) == {"received": True}
        handler.reconciler.handle_deposit.assert_not_awaited()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_numeric_amount_and_missing_hash(self, tmp_path: Path) -> None:
        handler = make_handler(tmp_path)

        await handler.process(credit_event(amount=2.000123, tx_hash=None))

        handler.reconciler.handle_deposit.assert_awaited_once_with("2.000123", None)

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [b"{not json", b"[1, 2]", b"\xff\xfe"])
    async def test_malformed_body(self, tmp_path: Path, body: bytes) -> None:
        handler = make_handler(tmp_path)
        with pytest.raises(WebhookError):
            await handler.process(body)
