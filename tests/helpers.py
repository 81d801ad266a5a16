import hashlib
import hmac
import json

WEBHOOK_SECRET = "whsec_test"


def checkout_event(
    event_id="evt_1",
    session_id="cs_1",
    user_id="user-1",
    products=None,
    payment_status="paid",
    payment_intent="pi_1",
):
    if products is None:
        products = [{"id": "prod-A", "quantity": 2, "price": 10.0}]
    return {
        "id": event_id,
        "type": "checkout.session.completed",
        "data": {
            "object": {
                "id": session_id,
                "payment_status": payment_status,
                "payment_intent": payment_intent,
                "amount_total": 2500,
                "amount_subtotal": 2000,
                "total_details": {"amount_tax": 200, "amount_shipping": 300, "amount_discount": 0},
                "metadata": {"userId": user_id, "products": json.dumps(products)},
            }
        },
    }


def sign(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
