"""
Tourism Bank group-payment gateway over httpx.

Each call fetches an access token, signs a canonical string with the
gateway's private key and POSTs a JSON body. Request bodies use the bank's
PascalCase field names. Response field casing is not stable across bank
releases, so responses are parsed with every key lowercased.

    /GroupPayment/GroupPaymentRegister          register a batch
    /GroupPayment/DoPayment                     execute (moves money)
    /GroupPayment/GroupPaymentInquiry           readiness poll
    /GroupPayment/GroupPaymentInquiryFromCore   per-line detail poll
"""

import json
import logging
import secrets
import string
from datetime import date, datetime, timedelta, timezone
from typing import Annotated, Any, Callable, Optional

import httpx
from pydantic import BaseModel, BeforeValidator, ConfigDict
from pydantic import ValidationError as ModelValidationError

from grouppay.config import settings
from grouppay.engine.retry import (
    BankBusinessError,
    ConfigurationError,
    TransportError,
    ValidationError,
)
from grouppay.engine.validation import is_valid_tracking_id
from grouppay.models.enums import PaymentMethod, cause_type_for
from grouppay.models.order import PaymentOrder
from grouppay.providers.auth import TokenCache, fetch_access_token
from grouppay.providers.base import (
    BankGateway,
    DetailInquiryRequest,
    GatewayCredentials,
    GatewayInfo,
    LineResult,
    PaymentSummary,
    ReadinessResult,
    RecordError,
)
from grouppay.providers.signing import canonical_string, register_canonical_string, sign

logger = logging.getLogger("grouppay.tourism_bank")

REGISTER_PATH = "/GroupPayment/GroupPaymentRegister"
DO_PAYMENT_PATH = "/GroupPayment/DoPayment"
READINESS_PATH = "/GroupPayment/GroupPaymentInquiry"
DETAIL_PATH = "/GroupPayment/GroupPaymentInquiryFromCore"

TEHRAN_TZ = timezone(timedelta(hours=3, minutes=30))
_RANDOM_ALPHABET = string.ascii_letters + string.digits
_RANDOM_PART_LENGTH = 32

_PAYMENT_METHODS = {
    "INTERNAL": PaymentMethod.INTERNAL,
    "PAYA": PaymentMethod.PAYA,
    "SATNA": PaymentMethod.SATNA,
    "CARD": PaymentMethod.CARD,
}


# --- Helpers ---


def to_jalali(value: date) -> tuple[int, int, int]:
    """Convert a Gregorian date to the Solar Hijri calendar (arithmetic 33-year cycle)."""
    g_days_before_month = [0, 31, 59, 90, 120, 151, 181, 212, 243, 273, 304, 334]
    gy, gm, gd = value.year, value.month, value.day
    gy2 = gy + 1 if gm > 2 else gy
    days = (
        355666
        + 365 * gy
        + (gy2 + 3) // 4
        - (gy2 + 99) // 100
        + (gy2 + 399) // 400
        + gd
        + g_days_before_month[gm - 1]
    )
    jy = -1595 + 33 * (days // 12053)
    days %= 12053
    jy += 4 * (days // 1461)
    days %= 1461
    if days > 365:
        jy += (days - 1) // 365
        days = (days - 1) % 365
    if days < 186:
        jm = 1 + days // 31
        jd = 1 + days % 31
    else:
        jm = 7 + (days - 186) // 30
        jd = 1 + (days - 186) % 30
    return jy, jm, jd


def jalali_date_number(value: date) -> int:
    """Solar Hijri date as a yyyyMMdd integer, e.g. 2024-03-20 -> 14030101."""
    jy, jm, jd = to_jalali(value)
    return jy * 10000 + jm * 100 + jd


def build_transaction_id(organization_code: str, now: datetime) -> str:
    """
    Compose a bank transaction id:
    {orgCode}-{32 random alphanumerics}-{yyyyMMddHHmmssfff UTC}-{checksum}

    The checksum is the sum of the character codes of the three other parts.
    """
    random_part = "".join(secrets.choice(_RANDOM_ALPHABET) for _ in range(_RANDOM_PART_LENGTH))
    utc = now.astimezone(timezone.utc)
    stamp = utc.strftime("%Y%m%d%H%M%S") + f"{utc.microsecond // 1000:03d}"
    checksum = sum(ord(c) for c in organization_code + random_part + stamp)
    return f"{organization_code}-{random_part}-{stamp}-{checksum}"


def payment_method_for(transaction_type: Optional[str]) -> PaymentMethod:
    return _PAYMENT_METHODS.get((transaction_type or "").strip().upper(), PaymentMethod.UNKNOWN)


def lowercase_keys(value: Any) -> Any:
    """Recursively lowercase dictionary keys."""
    if isinstance(value, dict):
        return {str(k).lower(): lowercase_keys(v) for k, v in value.items()}
    if isinstance(value, list):
        return [lowercase_keys(v) for v in value]
    return value


def _to_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value)


def _to_int(value: Any) -> Optional[int]:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    return int(float(value))


def _to_row_number(value: Optional[str]) -> Optional[int]:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


Text = Annotated[Optional[str], BeforeValidator(_to_text)]
Amount = Annotated[Optional[int], BeforeValidator(_to_int)]


# --- Response models (keys lowercased before validation) ---


class _BankModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=lambda name: name.replace("_", ""),
        populate_by_name=True,
        extra="ignore",
    )


class _BaseResponse(_BankModel):
    is_success: bool = False
    rs_code: Text = None
    message: Text = None
    error_list: Optional[list[Any]] = None

    def failure_text(self) -> str:
        if self.message:
            return self.message
        if self.error_list:
            return "; ".join(str(e) for e in self.error_list)
        return "Bank reported failure without a message"


class _RecordErrorBody(_BankModel):
    code: Text = None
    desc: Text = None
    param_name: Text = None
    param_path: Text = None


class _SummaryBody(_BankModel):
    transaction_id: Text = None
    date_time: Text = None
    customer_number: Text = None
    state: Text = None
    line_count: Text = None
    total_amount: Text = None
    total_internal_amount: Text = None
    total_paya_amount: Text = None
    total_satna_amount: Text = None
    source_deposit: Text = None
    refund_deposit: Text = None


class _ReadinessData(_BankModel):
    transaction_status: Text = None
    record_errors_list: Optional[list[_RecordErrorBody]] = None
    result: Optional[_SummaryBody] = None


class _ReadinessResponse(_BaseResponse):
    result_data: Optional[_ReadinessData] = None


class _DetailItem(_BankModel):
    line_number: Text = None
    amount: Amount = None
    final_state: Text = None
    final_message: Text = None
    status: Text = None
    transaction_type: Text = None
    transaction_date: Text = None
    transaction_description: Text = None
    refrence_number: Text = None  # Bank's spelling
    branch_code: Text = None
    document_number: Text = None
    destination_bank_code: Text = None
    destination_bank_name: Text = None
    transaction_commission: Amount = None
    error_description: Text = None

    def to_line_result(self, row_number: int) -> LineResult:
        return LineResult(
            row_number=row_number,
            status=self.status,
            amount=self.amount,
            final_state=self.final_state,
            final_message=self.final_message,
            payment_method=payment_method_for(self.transaction_type),
            transaction_date=self.transaction_date,
            reference_number=self.refrence_number,
            destination_bank_code=self.destination_bank_code,
            destination_bank_name=self.destination_bank_name,
            commission=self.transaction_commission,
            error_description=self.error_description,
        )


class _DetailData(_BankModel):
    result: Optional[list[_DetailItem]] = None
    single_result: Optional[_DetailItem] = None


class _DetailResponse(_BaseResponse):
    result_data: Optional[_DetailData] = None


# --- Gateway ---


class TourismBankGateway(BankGateway):
    """
    Production gateway for Tourism Bank batch transfers.

    Pass an httpx.AsyncClient to share a connection pool (or to inject a
    MockTransport in tests). Otherwise one is created on first use.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        token_url: Optional[str] = None,
        api_version: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
        token_cache: Optional[TokenCache] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._base_url = (base_url or settings.bank_base_url).rstrip("/")
        self._token_url = token_url or settings.access_token_url
        self._api_version = api_version or settings.api_version
        self._timeout = timeout_seconds if timeout_seconds is not None else settings.http_timeout_seconds
        self._client = client
        self._owns_client = client is None
        if token_cache is None and settings.token_cache_enabled:
            token_cache = TokenCache()
        self._token_cache = token_cache
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def name(self) -> str:
        return "tourism_bank"

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self._timeout))
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    # --- Transport ---

    def _credentials(self, gateway_info: GatewayInfo) -> GatewayCredentials:
        if gateway_info is None:
            raise ConfigurationError("Gateway info is required")
        if not gateway_info.private_key_pem:
            raise ConfigurationError("Gateway private key is missing")
        credentials = gateway_info.credentials()
        credentials.require_client_credentials()
        if not credentials.api_key:
            raise ConfigurationError("Gateway metadata is missing ApiKey")
        return credentials

    async def _post(
        self,
        path: str,
        body: dict,
        gateway_info: GatewayInfo,
        canonical: Optional[str] = None,
    ) -> dict:
        """Sign and send one request. Returns the response body with lowercased keys."""
        credentials = self._credentials(gateway_info)
        client = self._get_client()

        token = await fetch_access_token(client, self._token_url, credentials, cache=self._token_cache)

        json_body = json.dumps(body, ensure_ascii=False)
        if canonical is None:
            canonical = canonical_string("POST", path, credentials.api_key, json_body)
        signature = sign(canonical, gateway_info.private_key_pem)

        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "ApiKey": credentials.api_key,
            "Signature": signature,
            "Accept-Version": self._api_version,
            "AccessToken": token.access_token,
        }

        url = f"{self._base_url}{path}"
        try:
            response = await client.post(url, content=json_body.encode("utf-8"), headers=headers)
        except httpx.TimeoutException as e:
            logger.warning("Timeout calling %s: %s", path, e)
            raise TransportError(f"Timeout calling {path}", status_code=408) from e
        except httpx.HTTPError as e:
            logger.warning("Network error calling %s: %s", path, e)
            raise TransportError(f"Network error calling {path}: {e}") from e

        try:
            payload = response.json()
        except ValueError:
            payload = None

        if response.status_code < 200 or response.status_code >= 300:
            detail = response.text
            if isinstance(payload, dict):
                lowered = lowercase_keys(payload)
                detail = lowered.get("message") or detail
            logger.warning("%s returned HTTP %d: %s", path, response.status_code, detail)
            raise TransportError(
                f"HTTP {response.status_code} from {path}: {detail}",
                status_code=response.status_code,
            )

        if not isinstance(payload, dict):
            raise TransportError(f"Invalid JSON response from {path}", status_code=response.status_code)

        logger.debug("%s -> HTTP %d", path, response.status_code)
        return lowercase_keys(payload)

    def _parse(self, model: type, payload: dict, path: str):
        try:
            parsed = model.model_validate(payload)
        except ModelValidationError as e:
            raise TransportError(f"Unexpected response shape from {path}: {e}", status_code=200) from e
        if not parsed.is_success:
            raise BankBusinessError(parsed.failure_text(), error_code=parsed.rs_code, status_code=200)
        return parsed

    # --- Operations ---

    def build_register_body(
        self,
        order: PaymentOrder,
        gateway_info: GatewayInfo,
        credentials: GatewayCredentials,
        transaction_id: str,
        now: datetime,
    ) -> dict:
        transaction_date = jalali_date_number(now.astimezone(TEHRAN_TZ).date())
        items = [
            {
                "LineNumber": item.row_number,
                "Amount": str(item.amount),
                "DestinationIban": item.destination_iban.strip(),
                "TransactionDate": transaction_date,
                "RecieverFullName": item.recipient_name,  # Bank's spelling
                "Description": item.description or order.description,
                "TransactionBillNumber": None,
                "CauseType": cause_type_for(item.reason_code),
            }
            for item in order.line_items
        ]
        return {
            "TransactionId": transaction_id,
            "AutoContinue": True,
            "CustomerNumber": credentials.customer_number,
            "SourceDeposit": gateway_info.account_number,
            "RefundDeposit": gateway_info.account_number,
            "SourceDepositCommission": gateway_info.account_number,
            "SourceDescription": order.description,
            "DocumentItems": items,
        }

    async def register(self, order: PaymentOrder, gateway_info: GatewayInfo) -> str:
        credentials = self._credentials(gateway_info)
        if not credentials.customer_number:
            raise ConfigurationError("Gateway metadata is missing CustomerNumber")
        if not gateway_info.account_number:
            raise ConfigurationError("Gateway account number is missing")

        errors = []
        if not order.order_id:
            errors.append("Order id is required")
        if not order.line_items:
            errors.append("Order must contain at least one line item")
        errors.extend(
            f"Row {i.row_number}: recipient name is required"
            for i in order.line_items
            if not (i.recipient_name or "").strip()
        )
        if errors:
            raise ValidationError(errors)

        now = self._clock()
        transaction_id = build_transaction_id(credentials.organization_code, now)
        body = self.build_register_body(order, gateway_info, credentials, transaction_id, now)
        canonical = register_canonical_string(
            REGISTER_PATH,
            credentials.api_key,
            gateway_info.account_number,
            len(order.line_items),
            order.total_amount,
        )

        payload = await self._post(REGISTER_PATH, body, gateway_info, canonical=canonical)
        self._parse(_BaseResponse, payload, REGISTER_PATH)

        logger.info(
            "Registered order %s with %d lines as %s",
            order.order_id,
            len(order.line_items),
            transaction_id,
        )
        return transaction_id

    async def execute(self, tracking_id: str, gateway_info: GatewayInfo) -> None:
        if not tracking_id:
            raise ValidationError(["Tracking id is required"])
        payload = await self._post(DO_PAYMENT_PATH, {"TransactionId": tracking_id}, gateway_info)
        self._parse(_BaseResponse, payload, DO_PAYMENT_PATH)
        logger.info("DoPayment accepted for %s", tracking_id)

    async def check_readiness(self, tracking_id: str, gateway_info: GatewayInfo) -> ReadinessResult:
        if not is_valid_tracking_id(tracking_id):
            raise ValidationError([f"Invalid tracking id: {tracking_id!r}"])

        payload = await self._post(READINESS_PATH, {"TransactionId": tracking_id}, gateway_info)
        parsed = self._parse(_ReadinessResponse, payload, READINESS_PATH)

        data = parsed.result_data or _ReadinessData()
        summary = None
        if data.result is not None:
            summary = PaymentSummary(**data.result.model_dump())
        record_errors = [
            RecordError(code=e.code, description=e.desc, param_name=e.param_name, param_path=e.param_path)
            for e in (data.record_errors_list or [])
        ]
        return ReadinessResult(
            raw_status=data.transaction_status or "",
            summary=summary,
            record_errors=record_errors,
        )

    async def inquire_details(
        self, request: DetailInquiryRequest, gateway_info: GatewayInfo
    ) -> list[LineResult]:
        request.validate()

        body = {
            "TransactionId": request.tracking_id,
            "LineNumber": request.line_number,
            "FirstIndex": request.first_index,
            "LastIndex": request.last_index,
        }
        body = {k: v for k, v in body.items() if v is not None}

        payload = await self._post(DETAIL_PATH, body, gateway_info)
        parsed = self._parse(_DetailResponse, payload, DETAIL_PATH)
        data = parsed.result_data or _DetailData()

        first_row = request.line_number if request.is_single else request.first_index
        results: list[LineResult] = []

        if data.single_result is not None:
            row = _to_row_number(data.single_result.line_number) or first_row
            results.append(data.single_result.to_line_result(row))

        for position, item in enumerate(data.result or []):
            row = _to_row_number(item.line_number)
            if row is None:
                row = first_row + position
            results.append(item.to_line_result(row))

        return results
