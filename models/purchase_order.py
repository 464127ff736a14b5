from datetime import date
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

DEFAULT_CURRENCY_CODE = "SEK"
DEFAULT_CURRENCY_RATE = 1.0
DEFAULT_PAYMENT_TERMS_CODE = "30"


class _CamelModel(BaseModel):
    """Snake_case attributes in Python, camelCase keys on the wire."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        coerce_numbers_to_str=True,     # models emit supplier numbers and zip codes as ints
    )

    def to_api_dict(self) -> dict:
        """Serialise with camelCase keys, leaving out unset (None) fields."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class PurchaseOrderRow(_CamelModel):
    """A single article line on a purchase order."""
    item_id: Optional[str] = None                       # Supplier article number / SKU
    item_description: Optional[str] = None
    ordered_quantity: Optional[float] = None
    remaining_ordered_quantity: Optional[float] = None  # Defaults to ordered_quantity on submit
    price: Optional[float] = None                       # Unit price; 0 on submit when absent
    item_unit: Optional[str] = None                     # e.g. "st", "kg", "m"
    currency_code: Optional[str] = None                 # Forced to the order's currency on submit
    cost_center_code: Optional[str] = None
    project_id: Optional[str] = None
    stock_point_code: Optional[str] = None


class PurchaseOrder(_CamelModel):
    """
    A purchase order as read off the PDF and edited by the user.

    Fields Fortnox requires (supplier number, delivery address, order date) are
    optional here because extraction can be partial; the gateway fills the
    documented defaults and rejects orders without rows.
    """
    # --- Supplier ---
    supplier_number: Optional[str] = None
    supplier_name: Optional[str] = None
    supplier_address: Optional[str] = None
    supplier_address2: Optional[str] = None
    supplier_city: Optional[str] = None
    supplier_post_code: Optional[str] = None
    supplier_country_code: Optional[str] = None
    supplier_email: Optional[str] = None

    # --- Delivery ---
    delivery_name: Optional[str] = None
    delivery_address: Optional[str] = None
    delivery_address2: Optional[str] = None
    delivery_city: Optional[str] = None
    delivery_zip_code: Optional[str] = None
    delivery_country_code: Optional[str] = None
    delivery_date: Optional[str] = None         # YYYY-MM-DD

    # --- Order ---
    order_date: Optional[str] = None            # YYYY-MM-DD
    currency_code: str = DEFAULT_CURRENCY_CODE
    currency_rate: float = DEFAULT_CURRENCY_RATE
    currency_unit: Optional[float] = None
    payment_terms_code: str = DEFAULT_PAYMENT_TERMS_CODE

    # --- References ---
    our_reference: Optional[str] = None
    your_reference: Optional[str] = None
    internal_reference: Optional[str] = None

    # --- Misc ---
    message_to_supplier: Optional[str] = None
    note: Optional[str] = None
    confirmation_email: Optional[str] = None
    cost_center_code: Optional[str] = None
    project_id: Optional[str] = None
    stock_point_code: Optional[str] = None
    language_code: Optional[str] = None

    rows: List[PurchaseOrderRow] = Field(default_factory=list)

    @field_validator("currency_code", "payment_terms_code", mode="before")
    @classmethod
    def _blank_to_default(cls, value, info):
        # Models and form posts send "" or null for "unknown"
        if value is None or (isinstance(value, str) and not value.strip()):
            return cls.model_fields[info.field_name].default
        return value

    @field_validator("currency_rate", mode="before")
    @classmethod
    def _rate_default(cls, value):
        if value in (None, "", 0):
            return DEFAULT_CURRENCY_RATE
        return value

    def with_extraction_defaults(self, today: Optional[date] = None) -> "PurchaseOrder":
        """
        Return a copy with the extraction defaulting rules applied:
          - order date defaults to today
          - delivery name and address fall back to the supplier's
          - every row carries the order's currency
        """
        order = self.model_copy(deep=True)
        if not order.order_date:
            order.order_date = (today or date.today()).isoformat()
        if not order.delivery_name:
            order.delivery_name = order.supplier_name
        # Fortnox requires a complete delivery address; gaps come from the supplier
        order.delivery_address = order.delivery_address or order.supplier_address
        order.delivery_city = order.delivery_city or order.supplier_city
        order.delivery_zip_code = order.delivery_zip_code or order.supplier_post_code
        order.delivery_country_code = order.delivery_country_code or order.supplier_country_code
        if not order.delivery_address2 and order.delivery_address == order.supplier_address:
            order.delivery_address2 = order.supplier_address2
        for row in order.rows:
            row.currency_code = order.currency_code
        return order

    def prepared_for_submission(self) -> "PurchaseOrder":
        """
        Return a copy ready to send: each row's currency is coerced to the
        order's, and a missing remaining quantity equals the ordered quantity.
        """
        order = self.model_copy(deep=True)
        for row in order.rows:
            row.currency_code = order.currency_code
            if not row.remaining_ordered_quantity:
                row.remaining_ordered_quantity = row.ordered_quantity
        return order


class ExtractedData(_CamelModel):
    """The structured result of one extraction plus the model's self-reported confidence."""
    purchase_order: PurchaseOrder = Field(default_factory=PurchaseOrder)
    confidence: float = 0.0     # 0-1

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, value):
        if value is None:
            return 0.0
        return min(1.0, max(0.0, float(value)))
