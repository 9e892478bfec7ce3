"""
Land sales core engine modules
"""
from .errors import (
    LandSalesError,
    ValidationError,
    ConflictError,
    NotFoundError,
    ConsistencyError,
    to_http_exception
)

from .financial_precision import (
    to_decimal,
    round_financial,
    round_area,
    to_float,
    validate_non_negative,
    validate_positive,
    calculate_percentage,
    sqm_to_hectares,
    FinancialPrecisionError,
    NegativeValueError
)

from .transactions import (
    MongoTransactionManager,
    lock_document
)

from .atomic_numbering import (
    SequenceGenerator,
    SequenceCollisionError
)

from .invariant_validator import (
    LandInvariantValidator,
    InvariantViolationError
)

from .plot_lifecycle import (
    PlotLifecycle,
    derive_plot_stage
)

from .payment_ledger import (
    PaymentLedger,
    compute_invoice_status
)

__all__ = [
    # Errors
    'LandSalesError',
    'ValidationError',
    'ConflictError',
    'NotFoundError',
    'ConsistencyError',
    'to_http_exception',
    # Precision
    'to_decimal',
    'round_financial',
    'round_area',
    'to_float',
    'validate_non_negative',
    'validate_positive',
    'calculate_percentage',
    'sqm_to_hectares',
    'FinancialPrecisionError',
    'NegativeValueError',
    # Transactions
    'MongoTransactionManager',
    'lock_document',
    # Numbering
    'SequenceGenerator',
    'SequenceCollisionError',
    # Invariants
    'LandInvariantValidator',
    'InvariantViolationError',
    # Lifecycle & ledger
    'PlotLifecycle',
    'derive_plot_stage',
    'PaymentLedger',
    'compute_invoice_status',
]
