from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import date, datetime
from enum import Enum

# ============================================
# ENUMS
# ============================================
class Tenure(str, Enum):
    FREEHOLD = "freehold"
    LEASEHOLD = "leasehold"


class OwnerEntityType(str, Enum):
    INDIVIDUAL = "individual"
    COMPANY = "company"
    TRUST = "trust"


class AccessLevel(str, Enum):
    PUBLIC = "public"
    INTERNAL = "internal"
    CONFIDENTIAL = "confidential"


class PaymentMethod(str, Enum):
    CASH = "cash"
    BANK_TRANSFER = "bank_transfer"
    CHEQUE = "cheque"
    MOBILE_MONEY = "mobile_money"
    CARD = "card"


class InstallmentFrequency(str, Enum):
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    ANNUALLY = "annually"


# ============================================
# REGISTRY
# ============================================
class ParcelCreate(BaseModel):
    lr_number: str = Field(min_length=1)
    registry_office: Optional[str] = None
    county: Optional[str] = None
    locality: Optional[str] = None
    tenure: Tenure = Tenure.FREEHOLD
    lease_expiry_date: Optional[date] = None
    acreage_ha: float = Field(gt=0)
    acquisition_date: Optional[date] = None
    acquisition_cost_total: float = Field(default=0, ge=0)


class OwnerCreate(BaseModel):
    full_name: str = Field(min_length=1)
    identification_no: Optional[str] = None
    entity_type: OwnerEntityType = OwnerEntityType.INDIVIDUAL
    phone: Optional[str] = None
    email: Optional[str] = None


class ParcelOwnerCreate(BaseModel):
    parcel_id: str
    owner_id: str
    ownership_percentage: float = Field(gt=0, le=100)
    ownership_type: str = "sole"
    start_date: date
    end_date: Optional[date] = None
    is_active: bool = True


class ParcelOwnerUpdate(BaseModel):
    ownership_percentage: Optional[float] = Field(default=None, gt=0, le=100)
    ownership_type: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    is_active: Optional[bool] = None


class SubdivisionCreate(BaseModel):
    parcel_id: str
    name: str = Field(min_length=1)
    total_plots_planned: int = Field(gt=0)
    saleable_area_ha: Optional[float] = Field(default=None, gt=0)
    status: str = "planning"


class PlotCreate(BaseModel):
    subdivision_id: str
    plot_no: str = Field(min_length=1)
    size_sqm: float = Field(gt=0)
    access_type: Optional[str] = None
    utility_level: Optional[str] = None
    is_corner: bool = False
    is_premium: bool = False
    survey_plan_ref: Optional[str] = None


class PlotUpdate(BaseModel):
    plot_no: Optional[str] = Field(default=None, min_length=1)
    size_sqm: Optional[float] = Field(default=None, gt=0)
    access_type: Optional[str] = None
    utility_level: Optional[str] = None
    is_corner: Optional[bool] = None
    is_premium: Optional[bool] = None


# ============================================
# SALES
# ============================================
class ListingCreate(BaseModel):
    plot_id: str
    list_price: float = Field(gt=0)
    promo_price: Optional[float] = Field(default=None, gt=0)
    agent_id: Optional[str] = None
    commission_rate: float = Field(default=5, ge=0, le=100)
    listing_date: Optional[date] = None
    expiry_date: Optional[date] = None


class OfferCreate(BaseModel):
    plot_id: str
    client_id: str
    listing_id: Optional[str] = None
    offer_price: float = Field(gt=0)
    reservation_fee: float = Field(gt=0)
    reservation_date: date
    expiry_date: date
    reserve: bool = False  # take the reservation immediately
    notes: Optional[str] = None


class SaleAgreementCreate(BaseModel):
    plot_id: str
    client_id: str
    offer_id: Optional[str] = None
    agent_id: Optional[str] = None
    agreement_date: date
    price: float = Field(gt=0)
    deposit_required: float = Field(gt=0)
    penalty_rate: float = Field(default=2, ge=0)
    grace_period_days: int = Field(default=30, ge=0)
    special_conditions: Optional[str] = None


class PaymentPlanCreate(BaseModel):
    sale_agreement_id: str
    deposit_percent: float = Field(ge=0, le=100)
    number_of_installments: int = Field(gt=0)
    frequency: InstallmentFrequency = InstallmentFrequency.MONTHLY
    first_installment_date: date
    installment_amount: Optional[float] = Field(default=None, gt=0)


# ============================================
# PAYMENTS
# ============================================
class ReceiptCreate(BaseModel):
    sale_agreement_id: str
    invoice_id: Optional[str] = None  # allocate the full amount to this invoice
    payment_method: PaymentMethod = PaymentMethod.BANK_TRANSFER
    transaction_ref: Optional[str] = None
    paid_date: date
    amount: float = Field(gt=0)
    payer_name: Optional[str] = None


class ReceiptUpdate(BaseModel):
    payment_method: Optional[PaymentMethod] = None
    transaction_ref: Optional[str] = None
    paid_date: Optional[date] = None
    amount: Optional[float] = Field(default=None, gt=0)
    payer_name: Optional[str] = None


class InvoiceLineItem(BaseModel):
    description: str
    amount: float = Field(gt=0)


class InvoiceCreate(BaseModel):
    sale_agreement_id: str
    issue_date: date
    due_date: date
    amount_due: float = Field(gt=0)
    line_items: List[InvoiceLineItem] = []
    notes: Optional[str] = None


class PaymentAllocationCreate(BaseModel):
    receipt_id: str
    invoice_id: str
    amount: float = Field(gt=0)
    allocation_date: Optional[date] = None


class PaymentAllocationUpdate(BaseModel):
    amount: float = Field(gt=0)


# ============================================
# DOCUMENTS
# ============================================
class DocumentUpload(BaseModel):
    entity_type: str
    entity_id: str
    doc_type: str
    title: str = Field(min_length=1)
    file_name: str
    file_size: int = Field(gt=0)
    file_type: Optional[str] = None
    file_path: str
    file_hash: Optional[str] = None
    parent_document_id: Optional[str] = None
    access_level: AccessLevel = AccessLevel.INTERNAL
    expires_at: Optional[datetime] = None
    uploaded_by: Optional[str] = None
