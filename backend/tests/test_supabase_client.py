"""Tests for the shared Supabase client."""

from unittest.mock import MagicMock, patch

import pytest

from src.core.exceptions import DatabaseError
from src.db.supabase import SupabaseClient


@pytest.fixture(autouse=True)
def fresh_client():
    SupabaseClient.reset_client()
    yield
    SupabaseClient.reset_client()


def test_client_is_created_once() -> None:
    """Later calls reuse the first client until it is reset."""
    with patch("src.db.supabase.create_client", side_effect=[MagicMock(), MagicMock()]) as create:
        first = SupabaseClient.get_client()
        assert SupabaseClient.get_client() is first

        SupabaseClient.reset_client()

        assert SupabaseClient.get_client() is not first
        assert create.call_count == 2


def test_initialization_failure_is_wrapped() -> None:
    """A bad URL or key surfaces as DatabaseError."""
    with (
        patch("src.db.supabase.create_client", side_effect=ValueError("Invalid URL")),
        pytest.raises(DatabaseError, match="Invalid URL"),
    ):
        SupabaseClient.get_client()
