"""
Abstract bank gateway interface and the data shapes it exchanges.

The workflow talks to the bank only through BankGateway. The production
implementation wraps the Tourism Bank group-payment REST API; tests and the
demo server use an in-memory simulator with the same contract.

Every method raises a GatewayError subclass on failure:
    ConfigurationError  missing/invalid metadata or key, fatal
    AuthError           token exchange failed
    TransportError      network failure or non-2xx, carries the HTTP status
    BankBusinessError   2xx response in which the bank reports a failure
"""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

from grouppay.engine.retry import ConfigurationError, ValidationError
from grouppay.models.enums import PaymentMethod
from grouppay.models.order import PaymentOrder


@dataclass
class GatewayCredentials:
    """Parsed form of a gateway's JSON metadata document."""

    client_id: str = ""
    client_secret: str = ""
    api_key: str = ""
    customer_number: str = ""
    branch_code: str = ""
    organization_code: str = ""
    client_name: str = ""

    _KEYS = {
        "clientid": "client_id",
        "clientsecret": "client_secret",
        "apikey": "api_key",
        "customernumber": "customer_number",
        "branchcode": "branch_code",
        "organizationcode": "organization_code",
        "clientname": "client_name",
    }

    @classmethod
    def from_json(cls, blob: Optional[str]) -> "GatewayCredentials":
        """Parse metadata JSON. Key matching ignores case and underscores."""
        if not blob or not blob.strip():
            raise ConfigurationError("Gateway metadata is missing")
        try:
            raw = json.loads(blob)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Gateway metadata is not valid JSON: {e}") from e
        if not isinstance(raw, dict):
            raise ConfigurationError("Gateway metadata must be a JSON object")

        values = {}
        for key, value in raw.items():
            attr = cls._KEYS.get(str(key).replace("_", "").lower())
            if attr and value is not None:
                values[attr] = str(value)
        return cls(**values)

    def require_client_credentials(self) -> None:
        if not self.client_id or not self.client_secret:
            raise ConfigurationError("Gateway metadata is missing ClientId or ClientSecret")


@dataclass
class GatewayInfo:
    """Everything needed to sign and submit calls for one source account."""

    gateway_id: str
    account_number: str
    private_key_pem: str
    meta_data: str  # JSON document, see GatewayCredentials
    name: str = ""

    def credentials(self) -> GatewayCredentials:
        return GatewayCredentials.from_json(self.meta_data)


@dataclass
class RecordError:
    """A record-level error reported by the readiness inquiry."""

    code: Optional[str] = None
    description: Optional[str] = None
    param_name: Optional[str] = None
    param_path: Optional[str] = None

    def __str__(self) -> str:
        text = self.description or self.code or "Unknown record error"
        if self.param_name:
            return f"{text} ({self.param_name})"
        return text


@dataclass
class PaymentSummary:
    """Order-level totals reported by the readiness inquiry."""

    transaction_id: Optional[str] = None
    date_time: Optional[str] = None
    customer_number: Optional[str] = None
    state: Optional[str] = None
    line_count: Optional[str] = None
    total_amount: Optional[str] = None
    total_internal_amount: Optional[str] = None
    total_paya_amount: Optional[str] = None
    total_satna_amount: Optional[str] = None
    source_deposit: Optional[str] = None
    refund_deposit: Optional[str] = None


@dataclass
class ReadinessResult:
    raw_status: str
    summary: Optional[PaymentSummary] = None
    record_errors: list[RecordError] = field(default_factory=list)

    def error_text(self) -> str:
        if not self.record_errors:
            return "Unknown bank error"
        return "; ".join(str(e) for e in self.record_errors)


@dataclass
class LineResult:
    """Per-line outcome from the detailed inquiry."""

    row_number: int
    status: Optional[str] = None
    amount: Optional[int] = None
    final_state: Optional[str] = None
    final_message: Optional[str] = None
    payment_method: PaymentMethod = PaymentMethod.UNKNOWN
    transaction_date: Optional[str] = None
    reference_number: Optional[str] = None
    destination_bank_code: Optional[str] = None
    destination_bank_name: Optional[str] = None
    commission: Optional[int] = None
    error_description: Optional[str] = None

    @property
    def message(self) -> Optional[str]:
        return self.error_description or self.final_message or self.final_state


@dataclass
class DetailInquiryRequest:
    """
    Detailed inquiry selector. Exactly one of line_number or the
    (first_index, last_index) range must be set.
    """

    tracking_id: str
    line_number: Optional[int] = None
    first_index: Optional[int] = None
    last_index: Optional[int] = None

    @classmethod
    def single(cls, tracking_id: str, line_number: int) -> "DetailInquiryRequest":
        return cls(tracking_id=tracking_id, line_number=line_number)

    @classmethod
    def for_range(cls, tracking_id: str, first_index: int, last_index: int) -> "DetailInquiryRequest":
        return cls(tracking_id=tracking_id, first_index=first_index, last_index=last_index)

    @property
    def is_single(self) -> bool:
        return self.line_number is not None

    def validate(self) -> None:
        errors = []
        if not self.tracking_id:
            errors.append("Tracking id is required")

        has_line = self.line_number is not None
        has_range = self.first_index is not None or self.last_index is not None
        if has_line and has_range:
            errors.append("Set either line_number or first_index/last_index, not both")
        elif not has_line and not has_range:
            errors.append("Either line_number or first_index/last_index is required")
        elif has_range:
            if self.first_index is None or self.last_index is None:
                errors.append("Both first_index and last_index are required for a range inquiry")
            elif self.first_index > self.last_index:
                errors.append("first_index must not exceed last_index")

        if errors:
            raise ValidationError(errors)


class BankGateway(ABC):
    """Abstract base class for batch-transfer bank gateways."""

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @abstractmethod
    async def register(self, order: PaymentOrder, gateway_info: GatewayInfo) -> str:
        """
        Register a batch with the bank.

        Returns:
            The bank tracking id shared by every line item.
        """
        ...

    @abstractmethod
    async def execute(self, tracking_id: str, gateway_info: GatewayInfo) -> None:
        """
        Trigger fund movement for a ready batch (DoPayment).

        NOT idempotent at the bank. Callers must never invoke this again for
        a tracking id that has already executed successfully.
        """
        ...

    @abstractmethod
    async def check_readiness(self, tracking_id: str, gateway_info: GatewayInfo) -> ReadinessResult:
        """Order-level status poll. Read-only."""
        ...

    @abstractmethod
    async def inquire_details(
        self, request: DetailInquiryRequest, gateway_info: GatewayInfo
    ) -> list[LineResult]:
        """Per-line outcome poll. Read-only."""
        ...

    async def aclose(self) -> None:
        """Release any underlying connections."""
        return None
