"""
Tests for payment e-mail to profile resolution.
"""

from unittest.mock import MagicMock

from predictvip.api.services.identity import IdentityResolver, normalize_email


class TestIdentityResolver:

    def test_match_is_case_insensitive(self, store, make_profile):
        user_id = make_profile("Alice@Example.com")
        resolver = IdentityResolver(store)

        assert resolver.find_user_id_by_email("alice@example.COM ") == user_id

    def test_unknown_email_returns_none(self, store, make_profile):
        make_profile("alice@example.com")
        assert IdentityResolver(store).find_user_id_by_email("bob@example.com") is None

    def test_blank_email_does_not_query(self):
        store = MagicMock()
        resolver = IdentityResolver(store)

        assert resolver.find_user_id_by_email("   ") is None
        assert resolver.find_user_id_by_email(None) is None
        store.find_profile_id_by_email.assert_not_called()

    def test_user_exists_and_email_lookup(self, store, make_profile):
        user_id = make_profile("carol@example.com")
        resolver = IdentityResolver(store)

        assert resolver.user_exists(user_id) is True
        assert resolver.user_exists("missing-user") is False
        assert resolver.user_exists("") is False
        assert resolver.email_for_user(user_id) == "carol@example.com"
        assert resolver.email_for_user(None) is None

    def test_normalize_email(self):
        assert normalize_email("  U@X.com ") == "u@x.com"
        assert normalize_email(None) == ""
