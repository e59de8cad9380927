"""
Fio bank API client implementation.

The token is part of the URL path, so every URL is redacted before logging.
Fio allows one request per token every 30 seconds and answers 409 otherwise.
"""

import logging
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ..errors import (
    AuthenticationError,
    InvalidDateRange,
    NetworkError,
    RateLimitError,
    ResponseParsingError,
    ServiceUnavailable,
)
from ..ports import FetchResult, RowFailure
from ..schemas.transaction import RawTransaction, SourceAccount

logger = logging.getLogger(__name__)

FIO_RATE_LIMIT_SECONDS = 30.0

# Fio column ids
COL_DATE = "column0"
COL_AMOUNT = "column1"
COL_COUNTER_ACCOUNT = "column2"
COL_BANK_CODE = "column3"
COL_CONSTANT_SYMBOL = "column4"
COL_VARIABLE_SYMBOL = "column5"
COL_SPECIFIC_SYMBOL = "column6"
COL_USER_IDENTIFICATION = "column7"
COL_TYPE = "column8"
COL_COUNTER_ACCOUNT_NAME = "column10"
COL_BANK_NAME = "column12"
COL_CURRENCY = "column14"
COL_MESSAGE = "column16"
COL_TRANSACTION_ID = "column22"
COL_COMMENT = "column25"


def _column(tx: dict[str, Any], column: str) -> Any:
    """Value of a Fio column object, or None when the column is null/absent."""
    entry = tx.get(column)
    if not isinstance(entry, dict):
        return None
    return entry.get("value")


def _text(tx: dict[str, Any], column: str) -> str | None:
    value = _column(tx, column)
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def parse_fio_date(value: str) -> date:
    """Parse Fio dates like ``2025-03-14+0100`` (offset ignored)."""
    return date.fromisoformat(value.split("+")[0].strip()[:10])


def parse_fio_transaction(tx: dict[str, Any]) -> RawTransaction:
    """
    Map one Fio transaction object to a RawTransaction.

    Raises:
        ResponseParsingError: If id, date, amount or currency is missing or malformed
    """
    if not isinstance(tx, dict):
        raise ResponseParsingError("Fio transaction is not an object", raw_payload=str(tx))

    tx_id = _column(tx, COL_TRANSACTION_ID)
    raw_date = _column(tx, COL_DATE)
    raw_amount = _column(tx, COL_AMOUNT)
    currency = _text(tx, COL_CURRENCY)

    if tx_id is None or raw_date is None or raw_amount is None or not currency:
        raise ResponseParsingError(
            "Fio transaction is missing id, date, amount or currency", raw_payload=str(tx)
        )

    try:
        provider_id = str(int(tx_id))
        tx_date = parse_fio_date(str(raw_date))
        amount = Decimal(str(raw_amount))
    except (ValueError, InvalidOperation) as e:
        raise ResponseParsingError(f"Malformed Fio transaction: {e}", raw_payload=str(tx)) from e

    return RawTransaction(
        provider_transaction_id=provider_id,
        date=tx_date,
        amount=amount,
        currency=currency.upper(),
        counter_account=_text(tx, COL_COUNTER_ACCOUNT),
        counter_bank_code=_text(tx, COL_BANK_CODE),
        counter_bank_name=_text(tx, COL_BANK_NAME),
        counterparty_name=_text(tx, COL_COUNTER_ACCOUNT_NAME),
        variable_symbol=_text(tx, COL_VARIABLE_SYMBOL),
        constant_symbol=_text(tx, COL_CONSTANT_SYMBOL),
        specific_symbol=_text(tx, COL_SPECIFIC_SYMBOL),
        user_identification=_text(tx, COL_USER_IDENTIFICATION),
        message=_text(tx, COL_MESSAGE),
        transaction_type=_text(tx, COL_TYPE) or "",
        comment=_text(tx, COL_COMMENT),
    )


class FioClient:
    """
    Client for the Fio bank REST API (read-only).

    Features:
    - Fetch transactions for a date range
    - Automatic retry with backoff on 5xx
    """

    DEFAULT_TIMEOUT = 30

    def __init__(
        self,
        base_url: str = "https://fioapi.fio.cz/v1/rest",
        timeout: int = DEFAULT_TIMEOUT,
        max_retries: int = 3,
        backoff_factor: float = 0.5,
    ):
        """
        Initialize Fio client.

        Args:
            base_url: API root (e.g., "https://fioapi.fio.cz/v1/rest")
            timeout: Request timeout in seconds
            max_retries: Maximum retry attempts on 5xx / connection errors
            backoff_factor: Backoff factor for retries
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

        self.session = requests.Session()
        self.session.headers.update({"Accept": "application/json"})

        retry_strategy = Retry(
            total=max_retries,
            backoff_factor=backoff_factor,
            status_forcelist=[500, 502, 503, 504],
            allowed_methods=["GET"],
            raise_on_status=False,
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

    def close(self) -> None:
        self.session.close()

    @staticmethod
    def _redact(url: str, token: str) -> str:
        return url.replace(token, "***") if token else url

    def _get_json(self, endpoint: str, token: str) -> dict[str, Any]:
        """GET an endpoint and translate failures into pipeline errors."""
        url = f"{self.base_url}{endpoint}"
        safe_url = self._redact(url, token)
        logger.debug("API Request: GET %s", safe_url)

        try:
            response = self.session.get(url, timeout=self.timeout)
        except requests.exceptions.Timeout as e:
            logger.error("Timeout for %s", safe_url)
            raise ServiceUnavailable(f"Request to Fio timed out after {self.timeout}s") from e
        except requests.exceptions.ConnectionError as e:
            logger.error("Connection error to %s", safe_url)
            raise NetworkError(f"Failed to connect to Fio at {self.base_url}") from e
        except requests.exceptions.RequestException as e:
            logger.error("Request error for %s: %s", safe_url, type(e).__name__)
            raise NetworkError(f"Request to Fio failed: {type(e).__name__}") from e

        logger.debug("Response status: %s", response.status_code)
        status = response.status_code

        if status in (401, 403):
            raise AuthenticationError("Fio rejected the API token")
        if status == 409:
            raise RateLimitError(
                "Fio rate limit exceeded (one request per 30 seconds)",
                retry_after=FIO_RATE_LIMIT_SECONDS,
            )
        if status in (400, 422):
            raise InvalidDateRange(f"Fio rejected the request parameters ({status})")
        if status >= 500:
            raise ServiceUnavailable(f"Fio API error {status}")
        if not response.ok:
            raise NetworkError(f"Fio API error {status}: {response.reason}")

        try:
            return response.json()
        except ValueError as e:
            raise ResponseParsingError("Fio returned invalid JSON", raw_payload=response.text) from e

    @staticmethod
    def _parse_statement(data: dict[str, Any]) -> FetchResult:
        """Parse each row on its own; a malformed row is reported, not fatal."""
        try:
            statement = data["accountStatement"]
        except (KeyError, TypeError) as e:
            raise ResponseParsingError(
                "Fio response has no accountStatement", raw_payload=str(data)
            ) from e

        transaction_list = statement.get("transactionList") or {}
        items = transaction_list.get("transaction") or []

        result = FetchResult()
        for item in items:
            try:
                result.transactions.append(parse_fio_transaction(item))
            except ResponseParsingError as e:
                tx_id = _column(item, COL_TRANSACTION_ID) if isinstance(item, dict) else None
                logger.warning("Skipping malformed Fio row %s: %s", tx_id, e)
                result.failures.append(
                    RowFailure(
                        reason=str(e),
                        provider_transaction_id=str(tx_id) if tx_id is not None else None,
                        raw_payload=e.raw_payload,
                    )
                )
        return result

    def fetch(
        self,
        token: str,
        account: SourceAccount,
        date_from: date,
        date_to: date,
    ) -> FetchResult:
        """Fetch all movements of the token's account between two dates (inclusive)."""
        if date_from > date_to:
            raise InvalidDateRange(f"date_from {date_from} is after date_to {date_to}")

        endpoint = (
            f"/periods/{token}/{date_from.isoformat()}/{date_to.isoformat()}/transactions.json"
        )
        result = self._parse_statement(self._get_json(endpoint, token))
        logger.info(
            "Fetched %d transaction(s) for account %s (%s..%s), %d malformed",
            len(result.transactions),
            account.id,
            date_from,
            date_to,
            len(result.failures),
        )
        return result
