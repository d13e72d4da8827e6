"""
Tests for ExecutionAdapter submit/confirm outcomes and client order IDs.
"""
from unittest.mock import Mock, patch

import pytest

from core.exceptions import (
    ConfirmationTimeout,
    MalformedResponse,
    SubmissionRejected,
    TransientFetchError,
)
from core.execution import ExecutionAdapter
from core.models import OrderReceipt, OutcomeStatus, Side
from core.venue_client import PerpsVenueClient
from tests.helpers import StubVenue, make_executor


def _submit(adapter, key="1-LONG-OPEN"):
    return adapter.submit(Side.LONG, "10.000", 2, "0xabc", 14, identity_key=key)


class TestSubmitOutcomes:

    def test_confirmed(self):
        venue = StubVenue(statuses=["pending", "pending", "confirmed"])
        outcome = _submit(make_executor(venue))
        assert outcome.status is OutcomeStatus.CONFIRMED
        assert outcome.receipt.handle == "order-1"
        assert venue.status_calls == 3

    def test_exactly_one_order_per_call(self):
        venue = StubVenue()
        adapter = make_executor(venue)
        _submit(adapter)
        assert len(venue.orders) == 1
        order = venue.orders[0]
        assert order["side"] is Side.LONG
        assert order["size"] == "10.000"
        assert order["leverage"] == 2
        assert order["market_id"] == 14

    def test_rejected_on_submission(self):
        venue = StubVenue(place_error=SubmissionRejected("insufficient margin", 400))
        outcome = _submit(make_executor(venue))
        assert outcome.status is OutcomeStatus.FAILED
        assert outcome.reason == "rejected"
        assert "insufficient margin" in outcome.error

    def test_rejected_after_placement(self):
        venue = StubVenue(statuses=["pending", "rejected"])
        outcome = _submit(make_executor(venue))
        assert outcome.reason == "rejected"
        assert outcome.receipt.handle == "order-1"

    def test_unreachable(self):
        venue = StubVenue(place_error=TransientFetchError("venue", ConnectionError("down")))
        outcome = _submit(make_executor(venue))
        assert outcome.reason == "unreachable"
        assert not outcome.needs_manual_verification

    def test_malformed_receipt(self):
        venue = StubVenue(place_error=MalformedResponse("venue.order_receipt"))
        outcome = _submit(make_executor(venue))
        assert outcome.reason == "malformed"

    def test_confirmation_deadline(self):
        venue = StubVenue(statuses=["pending"])
        outcome = _submit(make_executor(venue, confirm_timeout_s=5.0))
        assert outcome.status is OutcomeStatus.FAILED
        assert outcome.reason == "timeout"
        assert outcome.needs_manual_verification
        assert outcome.receipt.handle == "order-1"
        # Polls at t=0..5 with a 1s spacing
        assert venue.status_calls == 6

    def test_status_lookup_errors_keep_polling(self):
        venue = StubVenue(statuses=[TransientFetchError("venue"), "confirmed"])
        outcome = _submit(make_executor(venue))
        assert outcome.success

    def test_submission_timeout_needs_verification(self):
        venue = StubVenue(place_error=ConfirmationTimeout(None, 15.0))
        outcome = _submit(make_executor(venue))
        assert outcome.reason == "timeout"
        assert outcome.needs_manual_verification
        assert outcome.receipt is None

    def test_settled_receipt_skips_status_polling(self):
        venue = StubVenue(statuses=["pending"], receipt=OrderReceipt(handle="perpagent_coid_x", settled=True))
        outcome = _submit(make_executor(venue))
        assert outcome.status is OutcomeStatus.CONFIRMED
        assert outcome.receipt.handle == "perpagent_coid_x"
        assert venue.status_calls == 0

    def test_dry_run_never_calls_venue(self):
        venue = StubVenue()
        adapter = make_executor(venue, mode="DRY_RUN")
        outcome = _submit(adapter)
        assert outcome.success
        assert outcome.receipt.handle.startswith("dryrun-")
        assert venue.orders == []


class TestConfiguration:

    def test_invalid_mode(self):
        with pytest.raises(ValueError):
            ExecutionAdapter(StubVenue(), mode="PAPER")

    def test_live_requires_venue(self):
        with pytest.raises(ValueError):
            ExecutionAdapter(None, mode="LIVE")

    def test_dry_run_without_venue(self):
        adapter = ExecutionAdapter(None, mode="dry_run")
        assert adapter.mode == "DRY_RUN"


class TestDeterministicClientOrderIds:

    def test_same_key_same_id(self):
        adapter = ExecutionAdapter(None)
        assert adapter.generate_client_order_id("5-LONG-") == adapter.generate_client_order_id("5-LONG-")

    def test_different_keys_different_ids(self):
        adapter = ExecutionAdapter(None)
        ids = {adapter.generate_client_order_id(f"{i}-LONG-") for i in range(200)}
        assert len(ids) == 200

    def test_format(self):
        adapter = ExecutionAdapter(None, client_order_prefix="My Agent!")
        coid = adapter.generate_client_order_id("1-SHORT-")
        prefix, _, digest = coid.rpartition("_coid_")
        assert prefix == "my_agent"
        assert len(digest) == 16
        int(digest, 16)

    def test_client_order_id_sent_with_order(self):
        venue = StubVenue()
        adapter = make_executor(venue)
        _submit(adapter, key="9-LONG-")
        assert venue.orders[0]["client_order_id"] == adapter.generate_client_order_id("9-LONG-")


class TestBooleanPlacementResponses:
    """Venues that answer openLong/openShort with a bare JSON boolean."""

    def _adapter(self):
        venue = PerpsVenueClient("http://venue.test", max_retries=1)
        return ExecutionAdapter(venue, mode="LIVE", confirm_timeout_s=5.0, confirm_poll_s=1.0,
                                clock=lambda: 0.0, sleep=lambda seconds: None)

    def _response(self, payload):
        response = Mock()
        response.status_code = 200
        response.json.return_value = payload
        return response

    def test_true_is_confirmed_without_status_lookup(self):
        adapter = self._adapter()
        with patch('core.api_client.requests.request', return_value=self._response(True)) as mock_request:
            outcome = _submit(adapter)
        assert outcome.status is OutcomeStatus.CONFIRMED
        assert outcome.receipt.settled
        assert outcome.receipt.handle == adapter.generate_client_order_id("1-LONG-OPEN")
        assert mock_request.call_count == 1
        assert mock_request.call_args[0][1].endswith("/openLong")

    def test_false_is_rejected(self):
        with patch('core.api_client.requests.request', return_value=self._response(False)) as mock_request:
            outcome = _submit(self._adapter())
        assert outcome.status is OutcomeStatus.FAILED
        assert outcome.reason == "rejected"
        assert not outcome.needs_manual_verification
        assert mock_request.call_count == 1
