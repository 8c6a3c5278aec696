"""Tests for phone number helpers."""
from call_ledger.dialing import (
    format_phone_number_for_display,
    is_bare_number,
    separate_contact_info,
)


class TestDisplay:
    """Test display formatting."""

    def test_formats_number(self):
        """Should render (NNN)NNN-NNNN whatever the input formatting."""
        assert format_phone_number_for_display("+15551234567") == "(555)123-4567"
        assert format_phone_number_for_display("1-555-123-4567") == "(555)123-4567"
        assert format_phone_number_for_display("555.123.4567") == "(555)123-4567"

    def test_passes_through_other_text(self):
        """Should return non-numbers unchanged."""
        assert format_phone_number_for_display(" Anonymous ") == "Anonymous"
        assert format_phone_number_for_display(None) == ""

    def test_bare_number(self):
        assert is_bare_number("+1 (555) 123-4567") is True
        assert is_bare_number("Jane (555) 123-4567") is False


class TestSeparateContactInfo:
    """Test splitting names from numbers."""

    def test_bare_number_has_no_name(self):
        """Should leave the name empty for a number-only contact."""
        info = separate_contact_info("555-123-4567")

        assert info.display_number == "(555)123-4567"
        assert info.contact_name is None
        assert info.phone_key == "5551234567"

    def test_country_prefix_is_dropped_from_key(self):
        info = separate_contact_info("+1 (555) 123-4567")

        assert info.phone_key == "5551234567"

    def test_name_and_number(self):
        """Should split the name from the number."""
        info = separate_contact_info("Jane Doe (555) 123-4567")

        assert info.display_number == "(555)123-4567"
        assert info.contact_name == "Jane Doe"

    def test_number_only_in_row_text(self):
        """Should scan the row text when the contact is a name."""
        info = separate_contact_info("Jane Doe", "Jane Doe 5559876543 Missed call")

        assert info.display_number == "(555)987-6543"
        assert info.contact_name == "Jane Doe"
        assert info.phone_key == "5559876543"

    def test_no_number_anywhere(self):
        """Should key on the raw contact."""
        info = separate_contact_info("Anonymous", "Anonymous Missed call")

        assert info.display_number == "Anonymous"
        assert info.phone_key == "Anonymous"
