"""
Tests for the Fio, YNAB and OpenAI-compatible API clients.

HTTP clients built on requests are mocked with the responses library;
the httpx-based categorization provider is mocked with unittest.mock.
"""

import json
import logging
from datetime import date
from decimal import Decimal
from unittest.mock import MagicMock, patch

import httpx
import pytest
import responses

from budget_bridge.bank_client import FioClient, parse_fio_date, parse_fio_transaction
from budget_bridge.categorization import OpenAICategorizationProvider, parse_json_response
from budget_bridge.config import LLMConfig
from budget_bridge.errors import (
    AuthenticationError,
    InvalidDateRange,
    NetworkError,
    RateLimitError,
    ResponseParsingError,
    ServiceUnavailable,
    SubmissionValidationError,
)
from budget_bridge.ports import SubmissionRequest
from budget_bridge.schemas import PatternType, SourceAccount
from budget_bridge.ynab_client import ImportIdConflict, YnabClient, build_transaction_payload

FIO_URL = "https://fio.test/v1/rest"
FIO_TOKEN = "secret-fio-token-xyz"
ACCOUNT = SourceAccount(id="fio-main", name="Fio main")


def fio_item(tx_id: int, amount: float, counterparty: str | None = "LIDL") -> dict:
    return {
        "column22": {"value": tx_id, "name": "ID pohybu", "id": 22},
        "column0": {"value": "2025-03-14+0100", "name": "Datum", "id": 0},
        "column1": {"value": amount, "name": "Objem", "id": 1},
        "column14": {"value": "CZK", "name": "Měna", "id": 14},
        "column10": {"value": counterparty, "name": "Název protiúčtu", "id": 10}
        if counterparty
        else None,
        "column8": {"value": "Platba kartou", "name": "Typ", "id": 8},
        "column16": {"value": "Nákup: LIDL DEKUJEME ZA NAKUP", "name": "Zpráva", "id": 16},
        "column5": {"value": "1234", "name": "VS", "id": 5},
        "column2": None,
    }


def fio_statement(*items: dict) -> dict:
    return {
        "accountStatement": {
            "info": {"accountId": "2800000001", "bankId": "2010", "currency": "CZK"},
            "transactionList": {"transaction": list(items)},
        }
    }


def periods_url(date_from: str = "2025-03-01", date_to: str = "2025-03-31") -> str:
    return f"{FIO_URL}/periods/{FIO_TOKEN}/{date_from}/{date_to}/transactions.json"


class TestFioParsing:
    """Test Fio column mapping."""

    def test_parse_date_with_offset(self):
        assert parse_fio_date("2025-03-14+0100") == date(2025, 3, 14)
        assert parse_fio_date("2025-03-14") == date(2025, 3, 14)

    def test_parse_transaction(self):
        raw = parse_fio_transaction(fio_item(26962199069, -249.0))

        assert raw.provider_transaction_id == "26962199069"
        assert raw.amount == Decimal("-249")
        assert raw.currency == "CZK"
        assert raw.counterparty_name == "LIDL"
        assert raw.variable_symbol == "1234"
        assert raw.counter_account is None
        assert raw.transaction_type == "Platba kartou"

    def test_missing_required_column(self):
        item = fio_item(1, -10.0)
        item["column1"] = None
        with pytest.raises(ResponseParsingError):
            parse_fio_transaction(item)


class TestFioClient:
    """Test Fio API client."""

    def make_client(self) -> FioClient:
        return FioClient(FIO_URL, timeout=5, max_retries=0)

    @responses.activate
    def test_fetch_period(self):
        """Fetch returns raw transactions in provider order."""
        responses.add(
            responses.GET,
            periods_url(),
            json=fio_statement(fio_item(1, -249.0), fio_item(2, 15000.0, counterparty=None)),
            status=200,
        )

        raws = self.make_client().fetch(
            FIO_TOKEN, ACCOUNT, date(2025, 3, 1), date(2025, 3, 31)
        ).transactions

        assert [r.provider_transaction_id for r in raws] == ["1", "2"]
        assert raws[1].amount == Decimal("15000")
        assert raws[1].counterparty_name is None

    @responses.activate
    def test_empty_statement(self):
        responses.add(
            responses.GET,
            periods_url(),
            json={"accountStatement": {"info": {}, "transactionList": {"transaction": []}}},
            status=200,
        )
        result = self.make_client().fetch(FIO_TOKEN, ACCOUNT, date(2025, 3, 1), date(2025, 3, 31))
        assert result.transactions == []
        assert result.failures == []

    def test_inverted_range_rejected_locally(self):
        with pytest.raises(InvalidDateRange):
            self.make_client().fetch(FIO_TOKEN, ACCOUNT, date(2025, 3, 31), date(2025, 3, 1))

    @pytest.mark.parametrize(
        "status,error",
        [
            (401, AuthenticationError),
            (403, AuthenticationError),
            (409, RateLimitError),
            (422, InvalidDateRange),
            (500, ServiceUnavailable),
        ],
    )
    @responses.activate
    def test_status_mapping(self, status, error):
        responses.add(responses.GET, periods_url(), body="", status=status)
        with pytest.raises(error):
            self.make_client().fetch(FIO_TOKEN, ACCOUNT, date(2025, 3, 1), date(2025, 3, 31))

    @responses.activate
    def test_rate_limit_carries_wait(self):
        responses.add(responses.GET, periods_url(), body="", status=409)
        with pytest.raises(RateLimitError) as exc_info:
            self.make_client().fetch(FIO_TOKEN, ACCOUNT, date(2025, 3, 1), date(2025, 3, 31))
        assert exc_info.value.retry_after == 30.0

    @responses.activate
    def test_token_never_logged(self, caplog):
        """The token is part of the URL and must be redacted."""
        caplog.set_level(logging.DEBUG, logger="budget_bridge")
        responses.add(responses.GET, periods_url(), json=fio_statement(), status=200)

        self.make_client().fetch(FIO_TOKEN, ACCOUNT, date(2025, 3, 1), date(2025, 3, 31))

        assert "/periods/***/" in caplog.text
        assert FIO_TOKEN not in caplog.text

    @responses.activate
    def test_connection_error_hides_token(self):
        # No registered URL: responses raises ConnectionError
        with pytest.raises(NetworkError) as exc_info:
            self.make_client().fetch(FIO_TOKEN, ACCOUNT, date(2025, 3, 1), date(2025, 3, 31))
        assert FIO_TOKEN not in str(exc_info.value)

    @responses.activate
    def test_invalid_json(self):
        responses.add(responses.GET, periods_url(), body="<html>", status=200)
        with pytest.raises(ResponseParsingError):
            self.make_client().fetch(FIO_TOKEN, ACCOUNT, date(2025, 3, 1), date(2025, 3, 31))

    @responses.activate
    def test_malformed_row_reported_separately(self):
        """One bad row does not hide the rows around it."""
        responses.add(
            responses.GET,
            periods_url(),
            json=fio_statement(fio_item(1, -10.0), fio_item(2, "abc"), fio_item(3, 20.0)),
            status=200,
        )

        result = self.make_client().fetch(FIO_TOKEN, ACCOUNT, date(2025, 3, 1), date(2025, 3, 31))

        assert [r.provider_transaction_id for r in result.transactions] == ["1", "3"]
        assert len(result.failures) == 1
        assert result.failures[0].provider_transaction_id == "2"
        assert "abc" in result.failures[0].raw_payload


class TestYnabClient:
    """Test YNAB API client."""

    BASE_URL = "https://ynab.test/v1"
    TOKEN = "ynab-token"
    BUDGET = "budget-1"

    @property
    def transactions_url(self) -> str:
        return f"{self.BASE_URL}/budgets/{self.BUDGET}/transactions"

    def make_client(self) -> YnabClient:
        return YnabClient(self.BASE_URL, self.TOKEN, self.BUDGET, timeout=5, max_retries=0)

    def make_request(self, **overrides) -> SubmissionRequest:
        fields = {
            "import_id": "BB:20250314:-249000:abcdef01",
            "date": date(2025, 3, 14),
            "amount": Decimal("-249.00"),
            "payee_name": "Lidl",
            "category_name": "Groceries",
            "category_external_id": "cat-1",
            "memo": "weekly shop",
        }
        fields.update(overrides)
        return SubmissionRequest(**fields)

    def test_payload(self):
        payload = build_transaction_payload("acc-1", self.make_request())

        assert payload == {
            "account_id": "acc-1",
            "date": "2025-03-14",
            "amount": -249000,
            "payee_name": "Lidl",
            "cleared": "cleared",
            "approved": False,
            "import_id": "BB:20250314:-249000:abcdef01",
            "category_id": "cat-1",
            "memo": "weekly shop",
        }

    def test_payload_without_optional_fields(self):
        payload = build_transaction_payload(
            "acc-1", self.make_request(category_external_id=None, memo=None, cleared=False)
        )
        assert "category_id" not in payload
        assert "memo" not in payload
        assert payload["cleared"] == "uncleared"

    @responses.activate
    def test_submit(self):
        responses.add(
            responses.POST,
            self.transactions_url,
            json={
                "data": {
                    "transaction_ids": ["tx-1"],
                    "transaction": {"id": "tx-1"},
                    "duplicate_import_ids": [],
                }
            },
            status=201,
        )

        external_id = self.make_client().submit("acc-1", self.make_request())

        assert external_id == "tx-1"
        request = responses.calls[0].request
        assert request.headers["Authorization"] == "Bearer ynab-token"
        body = json.loads(request.body)
        assert body["transaction"]["amount"] == -249000
        assert body["transaction"]["account_id"] == "acc-1"

    @responses.activate
    def test_duplicate_import_id_is_success(self):
        request = self.make_request()
        responses.add(
            responses.POST,
            self.transactions_url,
            json={"data": {"transaction_ids": [], "duplicate_import_ids": [request.import_id]}},
            status=201,
        )

        assert self.make_client().submit("acc-1", request) == request.import_id

    @responses.activate
    def test_conflict_on_known_import_id_is_success(self):
        request = self.make_request()
        responses.add(
            responses.POST,
            self.transactions_url,
            json={"error": {"id": "409", "name": "conflict", "detail": "import_id already exists"}},
            status=409,
        )

        assert self.make_client().submit("acc-1", request) == request.import_id

    @responses.activate
    def test_conflict_on_foreign_import_id_raises(self):
        responses.add(
            responses.POST,
            self.transactions_url,
            json={"error": {"id": "409", "name": "conflict", "detail": "conflict"}},
            status=409,
        )
        with pytest.raises(ImportIdConflict):
            self.make_client().submit(
                "acc-1", self.make_request(import_id="YNAB:1:2025-03-14:1")
            )

    @responses.activate
    def test_validation_error(self):
        responses.add(
            responses.POST,
            self.transactions_url,
            json={"error": {"id": "400", "name": "bad_request", "detail": "amount invalid"}},
            status=400,
        )
        with pytest.raises(SubmissionValidationError) as exc_info:
            self.make_client().submit("acc-1", self.make_request())
        assert "amount invalid" in str(exc_info.value)

    @responses.activate
    def test_rate_limited(self):
        responses.add(
            responses.POST,
            self.transactions_url,
            json={"error": {"detail": "Too many requests"}},
            status=429,
            headers={"Retry-After": "12"},
        )
        with pytest.raises(RateLimitError) as exc_info:
            self.make_client().submit("acc-1", self.make_request())
        assert exc_info.value.retry_after == 12.0

    @responses.activate
    def test_unauthorized(self):
        responses.add(responses.POST, self.transactions_url, json={}, status=401)
        with pytest.raises(AuthenticationError):
            self.make_client().submit("acc-1", self.make_request())

    @responses.activate
    def test_response_without_id(self):
        responses.add(responses.POST, self.transactions_url, json={"data": {}}, status=201)
        with pytest.raises(ResponseParsingError):
            self.make_client().submit("acc-1", self.make_request())

    @responses.activate
    def test_list_categories_skips_hidden(self):
        responses.add(
            responses.GET,
            f"{self.BASE_URL}/budgets/{self.BUDGET}/categories",
            json={
                "data": {
                    "category_groups": [
                        {
                            "id": "g1",
                            "name": "Everyday",
                            "hidden": False,
                            "deleted": False,
                            "categories": [
                                {"id": "c1", "name": "Groceries", "hidden": False, "deleted": False},
                                {"id": "c2", "name": "Old", "hidden": False, "deleted": True},
                            ],
                        },
                        {
                            "id": "g2",
                            "name": "Hidden",
                            "hidden": True,
                            "deleted": False,
                            "categories": [{"id": "c3", "name": "Secret"}],
                        },
                    ]
                }
            },
            status=200,
        )

        categories = self.make_client().list_categories()

        assert [(c.name, c.external_id, c.parent_id) for c in categories] == [
            ("Groceries", "c1", "g1")
        ]

    @responses.activate
    def test_test_connection(self):
        responses.add(responses.GET, f"{self.BASE_URL}/user", json={"data": {}}, status=200)
        assert self.make_client().test_connection() is True

    @responses.activate
    def test_test_connection_unauthorized(self):
        responses.add(responses.GET, f"{self.BASE_URL}/user", json={}, status=401)
        assert self.make_client().test_connection() is False


class TestParseJsonResponse:
    """Test tolerant JSON parsing of model output."""

    def test_plain(self):
        assert parse_json_response('{"category": "Rent"}') == {"category": "Rent"}

    def test_fenced(self):
        assert parse_json_response('```json\n{"category": "Rent"}\n```') == {"category": "Rent"}

    def test_surrounding_text_and_trailing_comma(self):
        content = 'Here you go: {"category": "Rent", "rule_suggestion": {"pattern": "x",},} ok'
        assert parse_json_response(content) == {
            "category": "Rent",
            "rule_suggestion": {"pattern": "x"},
        }

    @pytest.mark.parametrize("content", ["", "   ", "no json here", "[1, 2]"])
    def test_unparseable(self, content):
        with pytest.raises(ResponseParsingError):
            parse_json_response(content)


class TestOpenAICategorizationProvider:
    """Test the OpenAI-compatible provider."""

    CATEGORIES = ["Groceries", "Rent", "Transport"]

    @pytest.fixture
    def llm_config(self) -> LLMConfig:
        return LLMConfig(
            enabled=True,
            base_url="https://llm.test/v1",
            api_key="sk-test",
            model="test-model",
            timeout_seconds=5,
            max_concurrent=2,
        )

    @staticmethod
    def mock_client(mock_client_class: MagicMock, content=None, status_code: int = 200):
        mock_response = MagicMock()
        mock_response.status_code = status_code
        mock_response.headers = {}
        mock_response.json.return_value = {
            "choices": [{"message": {"content": json.dumps(content) if content else ""}}]
        }
        mock_client = MagicMock()
        mock_client.post.return_value = mock_response
        mock_client_class.return_value = mock_client
        return mock_client, mock_response

    @patch("budget_bridge.categorization.provider.httpx.Client")
    def test_cleanup(self, mock_client_class: MagicMock, llm_config: LLMConfig) -> None:
        """Test a full answer is mapped into a CleanupResult."""
        mock_client, _ = self.mock_client(
            mock_client_class,
            {
                "cleaned_payee": "Lidl",
                "payee_confidence": 0.95,
                "category": "groceries",
                "confidence": 0.88,
                "memo": None,
                "rule_suggestion": {
                    "pattern": "LIDL",
                    "pattern_type": "startsWith",
                    "replacement": "Lidl",
                    "explanation": "store name prefix",
                },
            },
        )
        provider = OpenAICategorizationProvider(llm_config, self.CATEGORIES)

        result = provider.cleanup("LIDL DEKUJEME ZA NAKUP", {"amount": "-249.00 CZK"})

        assert result.payee == "Lidl"
        assert result.category == "Groceries"
        assert result.confidence == pytest.approx(0.88)
        assert result.payee_confidence == pytest.approx(0.95)
        assert result.memo is None
        assert result.rule_suggestion.pattern_type == PatternType.STARTS_WITH
        assert result.rule_suggestion.replacement == "Lidl"

        args, kwargs = mock_client.post.call_args
        assert args[0] == "/chat/completions"
        assert kwargs["json"]["model"] == "test-model"
        assert kwargs["json"]["response_format"] == {"type": "json_object"}
        user_message = kwargs["json"]["messages"][1]["content"]
        assert "LIDL DEKUJEME ZA NAKUP" in user_message
        assert "- Groceries" in user_message

    @patch("budget_bridge.categorization.provider.httpx.Client")
    def test_unknown_category_dropped(self, mock_client_class: MagicMock, llm_config) -> None:
        self.mock_client(
            mock_client_class, {"cleaned_payee": "Lidl", "category": "Luxury", "confidence": 0.9}
        )
        provider = OpenAICategorizationProvider(llm_config, self.CATEGORIES)

        result = provider.cleanup("LIDL", {})

        assert result.payee == "Lidl"
        assert result.category is None

    @patch("budget_bridge.categorization.provider.httpx.Client")
    def test_defaults_for_missing_fields(self, mock_client_class: MagicMock, llm_config) -> None:
        self.mock_client(mock_client_class, {"category": "Rent"})
        provider = OpenAICategorizationProvider(llm_config, self.CATEGORIES)

        result = provider.cleanup("NAJEM BYT", {})

        assert result.payee == "NAJEM BYT"
        assert result.confidence == pytest.approx(0.7)
        assert result.rule_suggestion is None

    @patch("budget_bridge.categorization.provider.httpx.Client")
    def test_invalid_regex_suggestion_dropped(self, mock_client_class: MagicMock, llm_config):
        self.mock_client(
            mock_client_class,
            {
                "cleaned_payee": "Shell",
                "category": "Transport",
                "confidence": 0.8,
                "rule_suggestion": {"pattern": "SHELL[", "pattern_type": "REGEX"},
            },
        )
        provider = OpenAICategorizationProvider(llm_config, self.CATEGORIES)

        assert provider.cleanup("SHELL 123", {}).rule_suggestion is None

    @pytest.mark.parametrize(
        "status,error",
        [(401, AuthenticationError), (429, RateLimitError), (503, ServiceUnavailable)],
    )
    @patch("budget_bridge.categorization.provider.httpx.Client")
    def test_status_mapping(self, mock_client_class: MagicMock, llm_config, status, error):
        self.mock_client(mock_client_class, status_code=status)
        provider = OpenAICategorizationProvider(llm_config, self.CATEGORIES)

        with pytest.raises(error):
            provider.cleanup("LIDL", {})
        assert provider.active_requests == 0

    @patch("budget_bridge.categorization.provider.httpx.Client")
    def test_timeout(self, mock_client_class: MagicMock, llm_config) -> None:
        mock_client = MagicMock()
        mock_client.post.side_effect = httpx.ReadTimeout("timed out")
        mock_client_class.return_value = mock_client
        provider = OpenAICategorizationProvider(llm_config, self.CATEGORIES)

        with pytest.raises(ServiceUnavailable):
            provider.cleanup("LIDL", {})

    @patch("budget_bridge.categorization.provider.httpx.Client")
    def test_unexpected_shape(self, mock_client_class: MagicMock, llm_config) -> None:
        _, mock_response = self.mock_client(mock_client_class)
        mock_response.json.return_value = {"error": "nope"}
        provider = OpenAICategorizationProvider(llm_config, self.CATEGORIES)

        with pytest.raises(ResponseParsingError):
            provider.cleanup("LIDL", {})
