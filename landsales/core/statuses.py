"""Lifecycle states for every engine-owned status field"""


class PlotStage:
    RAW = "raw"
    SURVEYED = "surveyed"
    READY_FOR_SALE = "ready_for_sale"
    RESERVED = "reserved"
    SOLD = "sold"
    TRANSFERRED = "transferred"

    # Stages a plot can only reach through offers/agreements
    COMMERCIAL = (RESERVED, SOLD, TRANSFERRED)
    DELETABLE = (RAW, SURVEYED, READY_FOR_SALE)


class ListingStatus:
    DRAFT = "draft"
    ACTIVE = "active"
    SOLD = "sold"
    WITHDRAWN = "withdrawn"
    EXPIRED = "expired"

    HOLDING = (ACTIVE,)


class OfferStatus:
    DRAFT = "draft"
    RESERVED = "reserved"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    EXPIRED = "expired"
    CANCELLED = "cancelled"

    HOLDING = (RESERVED, ACCEPTED)
    CLOSED = (DECLINED, EXPIRED, CANCELLED)
    EXPIRABLE = (DRAFT, RESERVED)


class AgreementStatus:
    DRAFT = "draft"
    ACTIVE = "active"
    COMPLETED = "completed"
    SETTLED = "settled"
    CANCELLED = "cancelled"
    DEFAULTED = "defaulted"

    HOLDING = (ACTIVE, COMPLETED)
    # Agreements that keep a plot SOLD
    LIVE = (DRAFT, ACTIVE, COMPLETED, DEFAULTED)
    ACCEPTS_RECEIPTS = (DRAFT, ACTIVE, COMPLETED, DEFAULTED)


class InvoiceStatus:
    DRAFT = "draft"
    SENT = "sent"
    UNPAID = "unpaid"
    PARTLY_PAID = "partly_paid"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"

    OPEN = (UNPAID, PARTLY_PAID)


class CommissionStatus:
    PENDING = "pending"
    APPROVED = "approved"
    PAID = "paid"
    CANCELLED = "cancelled"


class TaskStatus:
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    OPEN = (PENDING, IN_PROGRESS)
