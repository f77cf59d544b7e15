from typing import List, Optional

from pydantic import BaseModel


class CartLine(BaseModel):
    """One cart entry as submitted by the client."""
    product_id: str
    quantity: int
    size: Optional[str] = None
    color: Optional[str] = None
    has_embroidery: bool = False
    embroidery_file: Optional[str] = None
    # Whatever the client believes the price is. Never used for pricing.
    price: Optional[float] = None


class ShippingAddress(BaseModel):
    full_name: str
    address: str
    city: str
    country: str
    district: Optional[str] = None
    zip_code: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None


class CheckoutSessionRequest(BaseModel):
    items: List[CartLine]
    shipping_address: ShippingAddress
    currency: str = "TRY"


class PaymentCallbackBody(BaseModel):
    token: str
    status: Optional[str] = None


class ShippingUpdateRequest(BaseModel):
    shipping_company: Optional[str] = None
    tracking_number: Optional[str] = None


class StatusUpdateRequest(BaseModel):
    status: Optional[str] = None
    payment_status: Optional[str] = None
