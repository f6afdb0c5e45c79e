"""Tests for bank status translation."""

import pytest

from grouppay.engine.status_mapper import (
    ERROR_STATE,
    REGISTERED_STATE,
    UPLOADING_STATE,
    WAITING_STATE,
    describe_status,
    determine_order_status_from_line_items,
    is_error_status,
    is_final,
    is_retryable,
    is_success_status,
    map_line_item_status,
    map_order_status,
    parse_bank_status,
)
from grouppay.models.enums import BankStatus, LineItemStatus, OrderStatus


class TestOrderStatusMapping:
    @pytest.mark.parametrize("raw", [WAITING_STATE, REGISTERED_STATE, UPLOADING_STATE, "PROCESSING", "READY"])
    def test_in_flight_states_are_submitted(self, raw):
        assert map_order_status(raw) == OrderStatus.SUBMITTED_TO_BANK

    def test_done_is_succeeded(self):
        assert map_order_status("DONE") == OrderStatus.BANK_SUCCEEDED

    @pytest.mark.parametrize("raw", [ERROR_STATE, "FAILED", "FAIL"])
    def test_error_states_are_rejected(self, raw):
        assert map_order_status(raw) == OrderStatus.BANK_REJECTED

    @pytest.mark.parametrize("raw", ["CANCELED", "CANCELLED"])
    def test_both_cancel_spellings(self, raw):
        assert map_order_status(raw) == OrderStatus.CANCELED

    @pytest.mark.parametrize("raw", ["EXPIRED", "TIMEOUT"])
    def test_expired(self, raw):
        assert map_order_status(raw) == OrderStatus.EXPIRED

    def test_case_and_whitespace_insensitive(self):
        assert map_order_status("  done ") == OrderStatus.BANK_SUCCEEDED
        assert parse_bank_status("ready") == BankStatus.READY

    @pytest.mark.parametrize("raw", [None, "", "SOMETHING_NEW"])
    def test_unknown_falls_back_to_submitted(self, raw):
        assert parse_bank_status(raw) == BankStatus.UNKNOWN
        assert map_order_status(raw) == OrderStatus.SUBMITTED_TO_BANK


class TestLineItemStatusMapping:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("TODO", LineItemStatus.WAIT_FOR_EXECUTION),
            ("REGISTERED", LineItemStatus.REGISTERED),
            ("INPROGRESS", LineItemStatus.WAIT_FOR_BANK),
            ("success", LineItemStatus.BANK_SUCCEEDED),
            ("Done", LineItemStatus.BANK_SUCCEEDED),
            ("REJECTED", LineItemStatus.BANK_REJECTED),
            ("ERROR", LineItemStatus.BANK_REJECTED),
            ("REVERSED", LineItemStatus.TRANSACTION_ROLLBACK),
            ("REFUNDED", LineItemStatus.TRANSACTION_ROLLBACK),
            ("CANCELLED", LineItemStatus.CANCELED),
            ("TIMEOUT", LineItemStatus.EXPIRED),
        ],
    )
    def test_known_statuses(self, raw, expected):
        assert map_line_item_status(raw) == expected

    @pytest.mark.parametrize("raw", [None, "", "WHATEVER"])
    def test_unknown_is_wait_for_bank(self, raw):
        assert map_line_item_status(raw) == LineItemStatus.WAIT_FOR_BANK


class TestPredicates:
    def test_final_statuses(self):
        for raw in ["DONE", "failed", ERROR_STATE, "Cancelled", "EXPIRED", "TIMEOUT"]:
            assert is_final(raw)
            assert not is_retryable(raw)

    def test_unknown_is_retryable(self):
        assert not is_final("MYSTERY")
        assert is_retryable("MYSTERY")
        assert is_retryable(None)

    def test_success_and_error(self):
        assert is_success_status("successful")
        assert not is_success_status("FAILED")
        assert is_error_status("rejected")
        assert not is_error_status("DONE")


class TestDescribeStatus:
    def test_known(self):
        assert describe_status(WAITING_STATE) == "Waiting for bank processing"
        assert describe_status("done") == "Completed"

    def test_unknown_echoes_raw(self):
        assert describe_status(" NewBankState ") == "NewBankState"

    @pytest.mark.parametrize("raw", [None, "", "   "])
    def test_empty(self, raw):
        assert describe_status(raw) == "Unknown"


class TestAggregation:
    def test_empty_is_submitted(self):
        assert determine_order_status_from_line_items([]) == OrderStatus.SUBMITTED_TO_BANK

    def test_all_succeeded(self):
        statuses = [LineItemStatus.BANK_SUCCEEDED] * 3
        assert determine_order_status_from_line_items(statuses) == OrderStatus.BANK_SUCCEEDED

    def test_all_rejected(self):
        statuses = [LineItemStatus.BANK_REJECTED] * 2
        assert determine_order_status_from_line_items(statuses) == OrderStatus.BANK_REJECTED

    def test_mixed_is_done_with_error(self):
        statuses = [LineItemStatus.BANK_SUCCEEDED, LineItemStatus.BANK_REJECTED, LineItemStatus.BANK_SUCCEEDED]
        assert determine_order_status_from_line_items(statuses) == OrderStatus.DONE_WITH_ERROR

    def test_all_canceled(self):
        statuses = [LineItemStatus.CANCELED] * 2
        assert determine_order_status_from_line_items(statuses) == OrderStatus.CANCELED

    def test_pending_line_keeps_order_submitted(self):
        statuses = [LineItemStatus.BANK_SUCCEEDED, LineItemStatus.WAIT_FOR_BANK]
        assert determine_order_status_from_line_items(statuses) == OrderStatus.SUBMITTED_TO_BANK

    def test_accepts_generator(self):
        statuses = (s for s in [LineItemStatus.BANK_SUCCEEDED])
        assert determine_order_status_from_line_items(statuses) == OrderStatus.BANK_SUCCEEDED
