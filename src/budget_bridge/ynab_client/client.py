"""
YNAB API client implementation.

Amounts travel as integer milliunits. Every created transaction carries the
deterministic import_id from schemas.dedupe, so YNAB itself rejects a second
copy even if the local state was lost.
"""

import json
import logging
from typing import Any

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ..errors import (
    AuthenticationError,
    NetworkError,
    RateLimitError,
    ResponseParsingError,
    ServiceUnavailable,
    SubmissionValidationError,
)
from ..ports import SubmissionRequest
from ..schemas.dedupe import is_bridge_import_id, to_milliunits
from ..schemas.transaction import Category

logger = logging.getLogger(__name__)

MAX_PAYEE_LENGTH = 200
MAX_MEMO_LENGTH = 500


class YnabAPIError(NetworkError):
    """API returned an unexpected error response."""

    def __init__(self, status_code: int, message: str, response_body: str | None = None):
        self.status_code = status_code
        self.message = message
        self.response_body = response_body
        super().__init__(f"YNAB API error {status_code}: {message}")


class ImportIdConflict(SubmissionValidationError):
    """YNAB answered 409: a transaction with this import_id already exists."""

    pass


def build_transaction_payload(
    external_account_id: str, request: SubmissionRequest
) -> dict[str, Any]:
    """Build the ``transaction`` object for POST /budgets/{id}/transactions."""
    payload: dict[str, Any] = {
        "account_id": external_account_id,
        "date": request.date.isoformat(),
        "amount": to_milliunits(request.amount),
        "payee_name": request.payee_name[:MAX_PAYEE_LENGTH],
        "cleared": "cleared" if request.cleared else "uncleared",
        "approved": request.approved,
        "import_id": request.import_id,
    }
    if request.category_external_id:
        payload["category_id"] = request.category_external_id
    if request.memo:
        payload["memo"] = request.memo[:MAX_MEMO_LENGTH]
    return payload


class YnabClient:
    """
    Client for the YNAB API.

    Features:
    - Create transactions (implements TransactionSubmissionPort)
    - List categories for local category mapping
    - Automatic retry with backoff on 5xx
    """

    DEFAULT_TIMEOUT = 30

    def __init__(
        self,
        base_url: str,
        token: str,
        budget_id: str,
        timeout: int = DEFAULT_TIMEOUT,
        max_retries: int = 3,
        backoff_factor: float = 0.5,
    ):
        """
        Initialize YNAB client.

        Args:
            base_url: API root (e.g., "https://api.ynab.com/v1")
            token: Personal access token
            budget_id: Budget to write into ("last-used" is accepted by YNAB)
            timeout: Request timeout in seconds
            max_retries: Maximum retry attempts
            backoff_factor: Backoff factor for retries
        """
        self.base_url = base_url.rstrip("/")
        self.budget_id = budget_id
        self.timeout = timeout

        self.session = requests.Session()
        self.session.headers.update(
            {
                "Authorization": f"Bearer {token}",
                "Accept": "application/json",
                "Content-Type": "application/json",
            }
        )

        # Status retries apply to GET only
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

    def _request(
        self,
        method: str,
        endpoint: str,
        json_data: dict | None = None,
    ) -> requests.Response:
        """Make an API request with error handling."""
        url = f"{self.base_url}{endpoint}"

        logger.debug("API Request: %s %s", method, url)
        if json_data:
            logger.debug("Request body: %s", json.dumps(json_data, indent=2))

        try:
            response = self.session.request(
                method=method,
                url=url,
                json=json_data,
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout as e:
            logger.error("Timeout for %s: %s", url, e)
            raise ServiceUnavailable(f"Request to YNAB timed out: {e}") from e
        except requests.exceptions.ConnectionError as e:
            logger.error("Connection error to %s: %s", url, e)
            raise NetworkError(f"Failed to connect to YNAB at {self.base_url}: {e}") from e
        except requests.exceptions.RequestException as e:
            logger.error("Request error for %s: %s", url, e)
            raise NetworkError(f"Request failed: {e}") from e

        logger.debug("Response status: %s", response.status_code)

        if not response.ok:
            message = response.reason or ""
            try:
                detail = response.json().get("error", {}).get("detail")
                if detail:
                    message = detail
            except ValueError:
                pass

            status = response.status_code
            logger.error("API Error %s: %s", status, message)

            if status in (401, 403):
                raise AuthenticationError(f"YNAB rejected the access token: {message}")
            if status == 409:
                raise ImportIdConflict(f"YNAB reported a conflict (409): {message}")
            if status in (400, 404, 422):
                raise SubmissionValidationError(f"YNAB rejected the request ({status}): {message}")
            if status == 429:
                retry_after = response.headers.get("Retry-After")
                raise RateLimitError(
                    f"YNAB rate limit exceeded: {message}",
                    retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
                )
            if status >= 500:
                raise ServiceUnavailable(f"YNAB API error {status}: {message}")
            raise YnabAPIError(status, message, response.text)

        return response

    def test_connection(self) -> bool:
        """Test connection to the YNAB API."""
        try:
            self._request("GET", "/user")
            return True
        except (AuthenticationError, NetworkError, SubmissionValidationError):
            return False

    def submit(self, external_account_id: str, request: SubmissionRequest) -> str:
        """
        Create one transaction.

        Returns:
            YNAB transaction id, or the import_id when YNAB reports it as a duplicate

        Raises:
            AuthenticationError: Token rejected
            SubmissionValidationError: YNAB rejected the payload
            NetworkError: Transport failure or 5xx
            ResponseParsingError: Success response without a transaction id
        """
        body = {"transaction": build_transaction_payload(external_account_id, request)}
        try:
            response = self._request(
                "POST", f"/budgets/{self.budget_id}/transactions", json_data=body
            )
        except ImportIdConflict:
            if not is_bridge_import_id(request.import_id):
                raise
            logger.warning(
                "YNAB returned 409 for import_id %s, treating as submitted", request.import_id
            )
            return request.import_id

        try:
            data = response.json().get("data", {})
        except ValueError as e:
            raise ResponseParsingError("YNAB returned invalid JSON", raw_payload=response.text) from e

        if request.import_id in (data.get("duplicate_import_ids") or []):
            logger.warning(
                "YNAB already has a transaction with import_id %s, treating as submitted",
                request.import_id,
            )
            return request.import_id

        transaction = data.get("transaction") or {}
        transaction_id = transaction.get("id")
        if not transaction_id:
            ids = data.get("transaction_ids") or []
            transaction_id = ids[0] if ids else None
        if not transaction_id:
            raise ResponseParsingError(
                "YNAB response contains no transaction id", raw_payload=response.text
            )

        logger.info("Created YNAB transaction id=%s", transaction_id)
        return str(transaction_id)

    def list_categories(self) -> list[Category]:
        """
        List budget categories (hidden and deleted ones are skipped).

        Category groups become parent ids; the YNAB category id becomes the
        external id used for submission.
        """
        response = self._request("GET", f"/budgets/{self.budget_id}/categories")
        groups = response.json().get("data", {}).get("category_groups", [])

        categories = []
        for group in groups:
            if group.get("deleted") or group.get("hidden"):
                continue
            for item in group.get("categories", []):
                if item.get("deleted") or item.get("hidden"):
                    continue
                categories.append(
                    Category(
                        id=item["id"],
                        name=item.get("name", ""),
                        parent_id=group.get("id"),
                        external_id=item["id"],
                    )
                )
        return categories
