from pydantic import BaseModel, EmailStr, Field
from decimal import Decimal
from typing import List, Optional


class ApplyPromoRequest(BaseModel):
    code: str
    order_value: Decimal = Field(ge=0)


class ApplyPromoResponse(BaseModel):
    success: bool = True
    original_total: Decimal
    discount_code: str
    discount_name: Optional[str] = None
    discount_type: str  # percentage | fixed
    discount_value: Decimal
    discount_amount: Decimal
    final_total: Decimal


class AddonLine(BaseModel):
    addon_type: str
    price: Decimal


class CheckoutSummary(BaseModel):
    package_type: str
    package_price: Decimal
    addons: List[AddonLine] = []
    subtotal: Decimal
    discount_code: Optional[str] = None
    discount_amount: Decimal = Decimal("0.00")
    final_total: Decimal


class SongBrief(BaseModel):
    song_purpose: Optional[str] = None
    recipient_name: Optional[str] = None
    emotion: Optional[str] = None
    music_style: Optional[str] = None
    song_theme: Optional[str] = None
    personal_story: Optional[str] = None
    additional_notes: Optional[str] = None


class CustomerInfo(BaseModel):
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    address: Optional[str] = None
    city: Optional[str] = None
    postcode: Optional[str] = None
    country: Optional[str] = Field(default=None, max_length=2)


class CreateOrderRequest(BaseModel):
    package_type: str  # essential | signature | masterpiece
    addons: List[str] = []
    promo_code: Optional[str] = None

    provide_lyrics: bool = False
    lyrics: Optional[str] = None
    show_in_gallery: bool = False

    brief: SongBrief = SongBrief()
    customer: CustomerInfo = CustomerInfo()


class CreateOrderResponse(BaseModel):
    success: bool = True
    order_id: int
    order_number: str
    original_price: Decimal
    final_price: Decimal
    discount_applied: Decimal
    affiliate_attributed: bool


class PaymentIntentRequest(BaseModel):
    order_id: int


class PaymentIntentResponse(BaseModel):
    order_id: int
    payment_intent_id: str
    client_secret: Optional[str] = None
    amount: int
    currency: str
