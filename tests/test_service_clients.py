"""
Tests for the oracle, venue and wallet clients at the HTTP boundary.
"""
import pytest
from unittest.mock import Mock, patch
from requests.exceptions import ConnectTimeout, HTTPError, ReadTimeout

from core.exceptions import (
    ConfirmationTimeout,
    MalformedResponse,
    SubmissionRejected,
    TransientFetchError,
)
from core.models import PositionStatus, Recommendation, RiskLevel, Side
from core.oracle_client import OracleClient, OracleRequest
from core.venue_client import PerpsVenueClient, map_order_status
from core.wallet import WalletBalanceClient


@pytest.fixture(autouse=True)
def no_sleep():
    with patch('core.api_client.time.sleep'):
        yield


def _ok(payload):
    response = Mock()
    response.status_code = 200
    response.json.return_value = payload
    return response


def _http_error(status, body):
    response = Mock()
    response.status_code = status
    response.text = str(body)
    response.json.return_value = body
    return HTTPError(response=response)


REQUEST = OracleRequest(token="APT", stablecoin="USDC", portfolio_amount=250.0, risk_level=RiskLevel.AGGRESSIVE)


class TestOracleClient:

    def test_analyze_parses_snapshot(self):
        payload = {
            "recommendation": "long",
            "confidence": 0.72,
            "signal_score": 0.4,
            "execution_signal": {"action": "OPEN_LONG"},
            "position_info": {"status": "none"},
            "market_data": {"price": "8.45"},
            "timestamp": "2024-05-01T10:00:00Z",
            "iteration": 17,
        }
        with patch('core.api_client.requests.request', return_value=_ok(payload)) as mock_request:
            snapshot = OracleClient("http://oracle.test").analyze(REQUEST)
        assert snapshot.recommendation is Recommendation.LONG
        assert snapshot.market_price == pytest.approx(8.45)
        assert snapshot.iteration == 17
        assert snapshot.action == "OPEN_LONG"
        assert snapshot.token == "APT"
        _, kwargs = mock_request.call_args
        assert kwargs["json"] == {
            "token": "APT",
            "stablecoin": "USDC",
            "portfolio_amount": 250.0,
            "risk_level": "aggressive",
        }

    def test_open_position_status(self):
        payload = {"recommendation": "HOLD", "position_info": {"status": "open"}, "market_data": {"price": 1}}
        with patch('core.api_client.requests.request', return_value=_ok(payload)):
            snapshot = OracleClient("http://oracle.test").analyze(REQUEST)
        assert snapshot.position_status is PositionStatus.OPEN

    def test_invalid_recommendation_is_malformed(self):
        with patch('core.api_client.requests.request', return_value=_ok({"recommendation": "BUY"})):
            with pytest.raises(MalformedResponse):
                OracleClient("http://oracle.test").analyze(REQUEST)

    def test_client_error_becomes_transient(self):
        error = _http_error(400, {"detail": "Agent not active"})
        with patch('core.api_client.requests.request', side_effect=error):
            with pytest.raises(TransientFetchError) as exc_info:
                OracleClient("http://oracle.test").analyze(REQUEST)
        assert "Agent not active" in str(exc_info.value)

    def test_historical(self):
        payload = {"token": "APT", "days": 2, "count": 3, "data": [
            {"timestamp": 1, "price": 8.1, "date": "2024-05-01"},
            {"timestamp": 2, "price": "8.2", "date": "2024-05-02"},
            {"timestamp": "bad"},
        ]}
        with patch('core.api_client.requests.request', return_value=_ok(payload)) as mock_request:
            points = OracleClient("http://oracle.test").historical("APT", days=2)
        assert [p.price for p in points] == [8.1, 8.2]
        args, kwargs = mock_request.call_args
        assert args[1] == "http://oracle.test/api/historical/APT"
        assert kwargs["params"] == {"days": 2}


class TestVenueClient:

    def _venue(self):
        return PerpsVenueClient("http://venue.test", api_key="secret", max_retries=3)

    def test_open_long_route_and_body(self):
        with patch('core.api_client.requests.request', return_value=_ok({"orderId": "abc123"})) as mock_request:
            receipt = self._venue().open_position(Side.LONG, 14, "0xabc", 2, "10.000", "perpagent_coid_1")
        assert receipt.handle == "abc123"
        args, kwargs = mock_request.call_args
        assert args == ("POST", "http://venue.test/api/v1/perps/openLong")
        assert kwargs["json"] == {
            "marketId": 14,
            "address": "0xabc",
            "leverage": 2,
            "size": "10.000",
            "clientOrderId": "perpagent_coid_1",
        }
        assert kwargs["headers"]["Authorization"] == "Bearer secret"

    def test_open_short_route(self):
        with patch('core.api_client.requests.request', return_value=_ok({"data": {"hash": "0xh"}})) as mock_request:
            receipt = self._venue().open_position(Side.SHORT, 15, "0xabc", 1, "0.01000")
        assert receipt.handle == "0xh"
        assert mock_request.call_args[0][1].endswith("/openShort")

    def test_order_post_never_retried(self):
        with patch('core.api_client.requests.request', side_effect=_http_error(503, {"error": "busy"})) as mock_request:
            with pytest.raises(SubmissionRejected):
                self._venue().open_position(Side.LONG, 14, "0xabc", 2, "1.000")
        assert mock_request.call_count == 1

    def test_client_error_is_rejection(self):
        error = _http_error(400, {"error": "insufficient margin"})
        with patch('core.api_client.requests.request', side_effect=error):
            with pytest.raises(SubmissionRejected) as exc_info:
                self._venue().open_position(Side.LONG, 14, "0xabc", 2, "1.000")
        assert exc_info.value.status_code == 400
        assert "insufficient margin" in str(exc_info.value)

    def test_success_false_is_rejection(self):
        with patch('core.api_client.requests.request', return_value=_ok({"success": False, "error": "paused"})):
            with pytest.raises(SubmissionRejected):
                self._venue().open_position(Side.LONG, 14, "0xabc", 2, "1.000")

    def test_bare_true_is_settled_receipt(self):
        with patch('core.api_client.requests.request', return_value=_ok(True)):
            receipt = self._venue().open_position(Side.SHORT, 14, "0xabc", 2, "1.000", "perpagent_coid_2")
        assert receipt.settled
        assert receipt.handle == "perpagent_coid_2"

    def test_bare_false_is_rejection(self):
        with patch('core.api_client.requests.request', return_value=_ok(False)):
            with pytest.raises(SubmissionRejected):
                self._venue().open_position(Side.LONG, 14, "0xabc", 2, "1.000")

    def test_read_timeout_is_ambiguous(self):
        with patch('core.api_client.requests.request', side_effect=ReadTimeout("no answer")):
            with pytest.raises(ConfirmationTimeout):
                self._venue().open_position(Side.LONG, 14, "0xabc", 2, "1.000")

    def test_connect_timeout_is_unreachable(self):
        with patch('core.api_client.requests.request', side_effect=ConnectTimeout("no route")):
            with pytest.raises(TransientFetchError) as exc_info:
                self._venue().open_position(Side.LONG, 14, "0xabc", 2, "1.000")
        assert not isinstance(exc_info.value, MalformedResponse)

    def test_missing_handle_is_malformed(self):
        with patch('core.api_client.requests.request', return_value=_ok({"ok": True})):
            with pytest.raises(MalformedResponse):
                self._venue().open_position(Side.LONG, 14, "0xabc", 2, "1.000")

    def test_order_status(self):
        with patch('core.api_client.requests.request', return_value=_ok({"data": {"status": "FILLED"}})) as mock_request:
            assert self._venue().order_status(14, "abc") == "confirmed"
        assert mock_request.call_args[1]["params"] == {"marketId": 14, "orderId": "abc"}

    def test_order_status_404_is_pending(self):
        with patch('core.api_client.requests.request', side_effect=_http_error(404, {"detail": "unknown"})):
            assert self._venue().order_status(14, "abc") == "pending"

    @pytest.mark.parametrize("raw,expected", [
        ("filled", "confirmed"),
        ("Cancelled", "rejected"),
        ("submitted", "pending"),
        (None, "pending"),
    ])
    def test_map_order_status(self, raw, expected):
        assert map_order_status(raw) == expected

    def test_positions(self):
        payload = [
            {"market_id": 14, "size": "1.5", "trade_side": True, "entry_price": 8.1, "leverage": 2},
            {"market_id": 15, "size": 0, "trade_side": False},
        ]
        with patch('core.api_client.requests.request', return_value=_ok(payload)):
            positions = self._venue().positions("0xabc")
        assert positions[0].side is Side.LONG
        assert positions[0].is_open
        assert not positions[1].is_open

    def test_deposit_body(self):
        with patch('core.api_client.requests.request', return_value=_ok({"success": True})) as mock_request:
            self._venue().deposit("0xabc", 25.0)
        args, kwargs = mock_request.call_args
        assert args == ("POST", "http://venue.test/api/v1/perps/deposit")
        assert kwargs["json"] == {"amount": 25.0, "userAddress": "0xabc"}

    def test_deposit_validates_amount(self):
        with pytest.raises(ValueError):
            self._venue().deposit("0xabc", 0)


class TestWalletClient:

    def test_scales_base_units(self):
        with patch('core.api_client.requests.request', return_value=_ok({"data": "123450000"})) as mock_request:
            balance = WalletBalanceClient("http://wallet.test").balance("0xabc", "0xusdc", decimals=6)
        assert balance == pytest.approx(123.45)
        assert mock_request.call_args[1]["params"] == {"userAddress": "0xabc", "tokenAddress": "0xusdc"}

    def test_bare_number(self):
        with patch('core.api_client.requests.request', return_value=_ok(500000)):
            assert WalletBalanceClient("http://wallet.test").balance("0xabc", "0xusdc") == pytest.approx(0.5)

    def test_garbage_is_transient(self):
        with patch('core.api_client.requests.request', return_value=_ok({"data": "lots"})):
            with pytest.raises(TransientFetchError):
                WalletBalanceClient("http://wallet.test").balance("0xabc", "0xusdc")
