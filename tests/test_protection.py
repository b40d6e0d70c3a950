"""
Tests for the protection filter.

Tests cover:
- Placeholder substitution for URLs, emails, code, paths and variables
- Restoration, including placeholders mangled by models
- Custom, disabled and overridden filters
- Placeholder validation
"""

import pytest

from screentrans.protection import (
    FilterRule,
    ProtectionFilter,
    create_custom_filter,
    extract_placeholders,
    restore,
    validate_filter,
    validate_placeholders,
)


@pytest.fixture
def pf():
    return ProtectionFilter()


class TestProtect:
    """Test placeholder substitution."""

    def test_url(self, pf):
        """Test a URL becomes a URL placeholder."""
        processed, spans = pf.protect("Visit https://example.com/docs for details")

        assert processed == "Visit <<URL_000>> for details"
        assert spans[0].original_substring == "https://example.com/docs"

    def test_email(self, pf):
        """Test email addresses are protected."""
        processed, _ = pf.protect("Contact dev@example.org please")
        assert processed == "Contact <<EMAIL_000>> please"

    def test_inline_and_block_code(self, pf):
        """Test code is protected before anything inside it."""
        text = "Run `pip install x` then:\n```\ncurl https://example.com\n```"
        processed, spans = pf.protect(text)

        assert "<<CODE_000>>" in processed
        assert "<<CODEBLK_000>>" in processed
        assert "https://" not in processed
        assert len(spans) == 2

    def test_template_variables(self, pf):
        """Test {{var}} and %VAR% placeholders are protected."""
        processed, _ = pf.protect("Hello {{name}}, your home is %HOME%")
        assert "{{name}}" not in processed
        assert "%HOME%" not in processed

    def test_counters_per_prefix(self, pf):
        """Test each prefix numbers its own placeholders."""
        processed, _ = pf.protect("https://a.com and https://b.com")
        assert processed == "<<URL_000>> and <<URL_001>>"

    def test_literal_placeholder_in_source_not_reused(self, pf):
        """Test a placeholder the user typed is not clobbered on restore."""
        text = "Literal <<URL_000>> and https://example.com"
        processed, spans = pf.protect(text)

        assert spans[0].placeholder_token == "<<URL_001>>"
        assert restore(processed, spans) == text

    def test_plain_text_untouched(self, pf):
        """Test text with nothing to protect is returned unchanged."""
        assert pf.protect("Just a sentence") == ("Just a sentence", [])

    def test_disabled_filter(self):
        """Test a disabled built-in filter does nothing."""
        processed, spans = ProtectionFilter(disabled=["email"]).protect("Mail dev@example.org")
        assert processed == "Mail dev@example.org"
        assert spans == []

    def test_protection_off(self):
        """Test a disabled filter set returns the input."""
        assert ProtectionFilter(enabled=False).protect("https://example.com") == ("https://example.com", [])


class TestRestore:
    """Test placeholder restoration."""

    @pytest.mark.parametrize("text", [
        "Visit https://example.com/docs for details",
        "Run `make test` in /usr/local/src and mail dev@example.org",
        "Version v1.2.3 uses color #ff8800 and {{user}}",
    ])
    def test_round_trip(self, pf, text):
        """Test restore(protect(text)) gives back the text."""
        processed, spans = pf.protect(text)
        assert restore(processed, spans) == text

    def test_restore_into_translation(self, pf):
        """Test originals are placed into translated text."""
        _, spans = pf.protect("Visit https://example.com now")
        assert restore("现在访问 <<URL_000>>", spans) == "现在访问 https://example.com"

    def test_spaced_placeholder(self, pf):
        """Test placeholders with spaces added by a model are still restored."""
        _, spans = pf.protect("See https://example.com")
        assert restore("看 << URL_000 >>", spans) == "看 https://example.com"


class TestCustomFilters:
    """Test user-defined filters."""

    def test_custom_filter_applied(self):
        """Test a user filter protects its matches."""
        rule = create_custom_filter("ticket", r"JIRA-\d+", prefix="TICKET")
        processed, spans = ProtectionFilter([rule]).protect("Fix JIRA-123 today")

        assert processed == "Fix <<TICKET_000>> today"
        assert spans[0].original_substring == "JIRA-123"

    def test_prefix_from_name(self):
        """Test the prefix is derived from the name."""
        assert create_custom_filter("product code", r"PC\d+").prefix == "PRODUCTCODE"

    def test_invalid_regex(self):
        """Test an invalid pattern is rejected."""
        with pytest.raises(ValueError):
            create_custom_filter("broken", "(")

    def test_empty_name(self):
        """Test a filter needs a name."""
        with pytest.raises(ValueError):
            create_custom_filter("  ", r"\d+")

    def test_override_builtin(self):
        """Test a user filter replaces a built-in with the same name."""
        rule = create_custom_filter("email", r"nomatch-never", prefix="EMAIL")
        processed, _ = ProtectionFilter([rule]).protect("Mail dev@example.org")
        assert processed == "Mail dev@example.org"

    def test_validate_filter(self):
        """Test filter validation reports problems."""
        assert validate_filter(FilterRule("ok", r"\d+", "OK")) == []
        assert "pattern matches the empty string" in validate_filter(FilterRule("empty", r"\d*", "EMPTY"))
        assert "prefix must be uppercase letters" in validate_filter(FilterRule("bad", r"\d+", "bad"))


class TestValidation:
    """Test placeholder validation."""

    def test_missing_placeholders(self):
        """Test placeholders dropped by a model are reported."""
        processed = "A <<URL_000>> B <<EMAIL_000>>"
        assert validate_placeholders(processed, "A <<URL_000>> B") == ["<<EMAIL_000>>"]
        assert validate_placeholders(processed, processed) == []

    def test_extract(self):
        """Test placeholders are found in order."""
        assert extract_placeholders("<<URL_000>> x <<VAR_002>>") == ["<<URL_000>>", "<<VAR_002>>"]
