"""
API Request and Response Models.

Pydantic models for validating API requests and serializing responses.
Order drafts keep the WooCommerce REST shape so they can be staged and later
sent to the backend-of-record unchanged.
"""

from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from domain.payment import PaymentRail


# ============================================================================
# Order Draft
# ============================================================================

class OrderDraft(BaseModel):
    """Order as assembled by the storefront checkout."""
    customer_id: int = Field(0, ge=0, description="Authenticated customer id, 0 for guests")
    line_items: List[Dict[str, Any]] = Field(..., min_length=1)
    shipping_lines: List[Dict[str, Any]] = Field(default_factory=list)
    fee_lines: List[Dict[str, Any]] = Field(default_factory=list)
    billing: Dict[str, Any] = Field(default_factory=dict)
    shipping: Dict[str, Any] = Field(default_factory=dict)
    customer_note: Optional[str] = None
    meta_data: List[Dict[str, Any]] = Field(default_factory=list)

    class Config:
        json_schema_extra = {
            "example": {
                "customer_id": 42,
                "line_items": [{"product_id": 1234, "quantity": 1, "price": "39.90"}],
                "shipping_lines": [{"method_id": "flat_rate", "method_title": "Courier", "total": "10.00"}],
                "billing": {"first_name": "Mario", "last_name": "Rossi", "email": "mario@example.com"},
            }
        }


class _CheckoutRequest(BaseModel):
    order: OrderDraft
    points_to_redeem: int = Field(0, ge=0)
    points_discount: Decimal = Field(Decimal("0"), ge=0)


# ============================================================================
# Initiation Models
# ============================================================================

class CardPaymentRequest(_CheckoutRequest):
    """Direct PaymentIntent (card, Klarna in the payment element)."""
    payment_method: Optional[str] = Field(None, description="Confirm immediately with this PaymentMethod")
    return_url: Optional[str] = None


class CardPaymentResponse(BaseModel):
    staging_id: str
    client_secret: str
    payment_intent_id: str
    requires_action: bool


class WalletPaymentRequest(_CheckoutRequest):
    """Apple Pay / Google Pay; the order is created before the charge."""
    payment_method: str = Field(..., min_length=1)
    return_url: Optional[str] = None


class WalletPaymentResponse(BaseModel):
    order_id: int
    client_secret: str
    payment_intent_id: str
    payment_status: str
    requires_action: bool


class RedirectPaymentRequest(_CheckoutRequest):
    """Stripe Checkout Session for redirect wallets."""
    method: Literal["klarna", "satispay"] = "klarna"


class RedirectPaymentResponse(BaseModel):
    staging_id: str
    session_id: str
    url: Optional[str] = None


class PayPalPaymentRequest(_CheckoutRequest):
    charged_total: Optional[Decimal] = Field(
        None,
        gt=0,
        description="Total computed by the PayPal buttons, fee included",
    )


class PayPalPaymentResponse(BaseModel):
    staging_id: str
    paypal_order_id: str
    approve_url: Optional[str] = None
    total: Decimal


# ============================================================================
# Completion Models
# ============================================================================

class CompletionStatusResponse(BaseModel):
    """Polling result; `ready=False` means keep polling after `retry_after_seconds`."""
    payment_reference: str
    ready: bool
    lifecycle: str
    order_id: Optional[int] = None
    already_exists: bool = False
    retry_after_seconds: Optional[float] = None
    attempt_ceiling: int
    escalate: bool = False

    class Config:
        json_schema_extra = {
            "example": {
                "payment_reference": "pi_3PabcXYZ",
                "ready": False,
                "lifecycle": "awaiting_confirmation",
                "order_id": None,
                "already_exists": False,
                "retry_after_seconds": 1.5,
                "attempt_ceiling": 12,
                "escalate": False,
            }
        }


class ReconciliationResponse(BaseModel):
    success: bool = True
    payment_reference: str
    order_id: int
    already_exists: bool
    lifecycle: str
    resolution: str


class CompletePaymentRequest(BaseModel):
    payment_reference: str = Field(..., min_length=1)


class RecoverRequest(BaseModel):
    staging_id: str = Field(..., min_length=1)
    payment_reference: str = Field(..., min_length=1)
    rail: PaymentRail = PaymentRail.CARD

    class Config:
        json_schema_extra = {
            "example": {
                "staging_id": "stripe_1718000000000_a1b2c3d4e5",
                "payment_reference": "pi_3PabcXYZ",
                "rail": "card",
            }
        }


class WebhookAckResponse(BaseModel):
    received: bool = True
