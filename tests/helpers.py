"""Builders shared by the test modules."""
import hashlib
import hmac
import json
import time
import uuid
from typing import Any, Dict, Optional

from orderflow.core.validation import AddressInput, OrderRequest

WEBHOOK_SECRET = "whsec_test_orderflow"
ADMIN_API_KEY = "admin-test-key"
ADMIN_HEADERS = {"X-API-Key": ADMIN_API_KEY}


# Data helpers


def make_address(**overrides: Any) -> AddressInput:
    values: Dict[str, Any] = {
        "first_name": "Grace",
        "last_name": "Hopper",
        "address1": "1 Navy Way",
        "city": "Arlington",
        "state": "VA",
        "zip_code": "22201",
        "country": "US",
        "phone": "+15555550100",
    }
    values.update(overrides)
    return AddressInput(**values)


def make_order_request(payment_method: str = "credit_card", **overrides: Any) -> OrderRequest:
    values: Dict[str, Any] = {
        "shipping_address": make_address(),
        "payment_method": payment_method,
    }
    values.update(overrides)
    return OrderRequest(**values)


# Webhook helpers


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Stripe v1 signature header for ``payload``."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def gateway_event(event_type: str, obj: Dict[str, Any], event_id: Optional[str] = None) -> bytes:
    return json.dumps(
        {
            "id": event_id or f"evt_{uuid.uuid4().hex}",
            "object": "event",
            "type": event_type,
            "created": int(time.time()),
            "data": {"object": obj},
        }
    ).encode("utf-8")
