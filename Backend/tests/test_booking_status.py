"""
Tests for the portal/database booking status vocabulary.

Run with: pytest tests/test_booking_status.py -v
"""
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from marketplace.booking_status import (
    map_status_to_database,
    map_status_to_provider,
    parse_status_filter,
    stage_for_status,
)


# ============================================================================
# STATUS MAPPING TESTS
# ============================================================================

class TestMapStatusToDatabase:
    """Tests for portal -> database status translation."""

    def test_portal_statuses(self):
        assert map_status_to_database("booked") == "confirmed"
        assert map_status_to_database("started") == "in_progress"
        assert map_status_to_database("completed") == "completed"
        assert map_status_to_database("cancelled") == "cancelled"
        assert map_status_to_database("no_show") == "no_show"

    def test_database_statuses_pass_through(self):
        for status in ("pending", "confirmed", "in_progress"):
            assert map_status_to_database(status) == status

    def test_unknown_status_defaults_to_confirmed(self):
        """Unrecognised and missing values fall back to confirmed."""
        assert map_status_to_database("rescheduled") == "confirmed"
        assert map_status_to_database(None) == "confirmed"

    def test_whitespace_and_case_ignored(self):
        assert map_status_to_database("  Started ") == "in_progress"


class TestMapStatusToProvider:
    """Tests for database -> portal status translation."""

    def test_renamed_statuses(self):
        assert map_status_to_provider("confirmed") == "booked"
        assert map_status_to_provider("in_progress") == "started"

    def test_other_statuses_unchanged(self):
        assert map_status_to_provider("pending") == "pending"
        assert map_status_to_provider("cancelled") == "cancelled"


def test_status_filter_is_deduplicated():
    assert parse_status_filter("booked, confirmed,started,,") == ["confirmed", "in_progress"]
    assert parse_status_filter(None) == []


# ============================================================================
# AT-HOME STAGE TESTS
# ============================================================================

class TestStageForStatus:

    def test_at_home_stage_follows_status(self):
        assert stage_for_status("at_home", "confirmed", None) == "confirmed"
        assert stage_for_status("at_home", "in_progress", "provider_arrived") == "service_started"
        assert stage_for_status("at_home", "completed", "service_started") == "service_completed"
        assert stage_for_status("at_home", "cancelled", "provider_on_way") is None

    def test_no_show_keeps_current_stage(self):
        assert stage_for_status("at_home", "no_show", "provider_on_way") == "provider_on_way"

    def test_at_salon_stage_is_untouched(self):
        assert stage_for_status("at_salon", "completed", None) is None
        assert stage_for_status("at_salon", "in_progress", "client_arrived") == "client_arrived"
