"""
Value objects handed between the validation engine, the billing
calculator, the sync manager and the reporting pipeline.  None of these
are persisted; they are recomputed every time they are needed.
"""
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional


@dataclass
class ValidationResult:
    is_valid: bool
    message: str = ''
    code: str = ''


@dataclass
class ReadingValidation:
    results: list = field(default_factory=list)

    @property
    def is_valid(self):
        return all(r.is_valid for r in self.results)

    @property
    def errors(self):
        return [r.message for r in self.results if not r.is_valid]

    @property
    def warnings(self):
        return [r.message for r in self.results if r.is_valid and r.message]

    @property
    def codes(self):
        return [r.code for r in self.results]


@dataclass
class UsageCalculation:
    customer_id: str
    current_reading: dict
    previous_reading: Optional[dict]
    usage: Decimal
    is_valid: bool = True
    validation_errors: list = field(default_factory=list)
    error_code: str = ''
    anomaly_warning: Optional[str] = None

    @property
    def is_billable(self):
        """A customer's first reading is billed at zero usage; any other invalid usage is not billed."""
        return self.is_valid or self.error_code == 'READING_NO_PREVIOUS'


@dataclass
class BillingCalculation:
    customer_id: str
    usage: Decimal
    unit_usage: Decimal
    tens_usage: Decimal
    unit_price: Decimal
    tens_price: Decimal
    fixed_fee: Decimal
    base_amount: Decimal
    discount_amount: Decimal
    final_amount: Decimal
    billing_month: str
    discount: Optional[dict] = None


@dataclass
class ProcessedMeterData:
    customer: dict
    current_reading: dict
    previous_reading: Optional[dict]
    usage: UsageCalculation
    billing: BillingCalculation
    processed_at: object = None


@dataclass
class PipelineMetrics:
    total_customers: int = 0
    total_readings: int = 0
    total_usage: Decimal = Decimal('0')
    total_billing: Decimal = Decimal('0')
    total_discounts: Decimal = Decimal('0')
    average_usage: Decimal = Decimal('0')
    processing_time: float = 0.0


@dataclass
class PipelineResult:
    data: list = field(default_factory=list)
    metrics: PipelineMetrics = field(default_factory=PipelineMetrics)
    errors: list = field(default_factory=list)


@dataclass
class SyncResult:
    success: bool = True
    synced: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list = field(default_factory=list)


@dataclass
class MonthlyReport:
    year: int
    month: int
    data: list = field(default_factory=list)
    summary: dict = field(default_factory=dict)
    rt_breakdown: dict = field(default_factory=dict)
    errors: list = field(default_factory=list)


@dataclass
class RTTotalBill:
    rt: str
    customer_count: int = 0
    total_usage: Decimal = Decimal('0')
    total_bill: Decimal = Decimal('0')
    average_bill: Decimal = Decimal('0')
    has_all_readings: bool = True
    missing_readings: list = field(default_factory=list)


@dataclass
class RTPaymentStatus:
    rt: str
    total_bill: Decimal = Decimal('0')
    paid_amount: Decimal = Decimal('0')
    pending_amount: Decimal = Decimal('0')
    last_payment_date: Optional[str] = None
    payment_status: str = 'pending'


@dataclass
class ImportResult:
    imported: int = 0
    errors: list = field(default_factory=list)
    warnings: list = field(default_factory=list)

    @property
    def success(self):
        return not self.errors
