"""
Test suite for the durable pattern repositories.

Tests cover:
- Supabase row shape for append and update
- Loading, ordering and skipping unreadable rows
- In-memory repository isolation per user
- Repository selection from settings
"""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from receipt_learning.models.receipt import FieldValues, LearnedPattern, Region
from receipt_learning.services.storage import (
    InMemoryPatternRepository,
    SupabasePatternRepository,
    default_repository,
)
from datetime import datetime, timezone
from decimal import Decimal
import pytest
from unittest.mock import Mock, patch


def _pattern(pattern_id="p1"):
    return LearnedPattern(
        id=pattern_id,
        merchant_name="Lidl",
        merchant_type="Supermarket",
        ocr_text="LIDL\nTOTAL 45,50",
        extracted_fields=FieldValues(amount=Decimal("45.50")),
        amount_region=Region.BOTTOM_RIGHT,
        success_rate=0.9,
        timestamp=datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc),
    )


class TestSupabasePatternRepository:
    """Supabase table access with a mocked client."""

    @patch('receipt_learning.services.storage.get_supabase_client')
    def test_load_all(self, mock_supabase):
        """Rows are read from the payload column, filtered by user and ordered."""
        mock_response = Mock()
        mock_response.data = [
            {'id': 'p1', 'payload': _pattern("p1").model_dump(mode='json')},
        ]

        mock_client = Mock()
        mock_client.table.return_value.select.return_value.eq.return_value.order.return_value.execute.return_value = mock_response
        mock_supabase.return_value = mock_client

        patterns = SupabasePatternRepository(table_name="learned_patterns").load_all("user-1")

        assert patterns == [_pattern("p1")]
        mock_client.table.assert_called_with("learned_patterns")
        mock_client.table.return_value.select.return_value.eq.assert_called_with('user_id', 'user-1')
        mock_client.table.return_value.select.return_value.eq.return_value.order.assert_called_with(
            'timestamp', desc=False
        )

    @patch('receipt_learning.services.storage.get_supabase_client')
    def test_load_all_skips_unreadable_rows(self, mock_supabase, caplog):
        mock_response = Mock()
        mock_response.data = [
            {'id': 'broken', 'payload': {'id': 'broken', 'success_rate': 5}},
            {'id': 'no-payload'},
            {'id': 'p1', 'payload': _pattern("p1").model_dump(mode='json')},
        ]

        mock_client = Mock()
        mock_client.table.return_value.select.return_value.eq.return_value.order.return_value.execute.return_value = mock_response
        mock_supabase.return_value = mock_client

        patterns = SupabasePatternRepository().load_all("user-1")

        assert [p.id for p in patterns] == ["p1"]
        assert "Skipping unreadable pattern row" in caplog.text

    @patch('receipt_learning.services.storage.get_supabase_client')
    def test_append_upserts_row(self, mock_supabase):
        mock_client = Mock()
        mock_supabase.return_value = mock_client

        SupabasePatternRepository().append_one("user-1", _pattern())

        row = mock_client.table.return_value.upsert.call_args[0][0]
        assert row['id'] == "p1"
        assert row['user_id'] == "user-1"
        assert row['merchant_name'] == "Lidl"
        assert row['success_rate'] == 0.9
        assert row['payload']['extracted_fields']['amount'] == "45.50"
        assert row['payload']['amount_region'] == "bottom-right"
        mock_client.table.return_value.upsert.return_value.execute.assert_called_once()

    @patch('receipt_learning.services.storage.get_supabase_client')
    def test_update_scoped_to_user(self, mock_supabase):
        mock_client = Mock()
        mock_supabase.return_value = mock_client

        SupabasePatternRepository().update_one("user-1", _pattern())

        update = mock_client.table.return_value.update
        assert set(update.call_args[0][0]) == {'success_rate', 'payload'}
        update.return_value.eq.assert_called_with('id', "p1")
        update.return_value.eq.return_value.eq.assert_called_with('user_id', "user-1")

    @patch('receipt_learning.services.storage.get_supabase_client')
    def test_load_errors_propagate(self, mock_supabase):
        """The pattern store decides how to degrade, not the repository."""
        mock_client = Mock()
        mock_client.table.side_effect = ConnectionError("down")
        mock_supabase.return_value = mock_client

        with pytest.raises(ConnectionError):
            SupabasePatternRepository().load_all("user-1")


class TestInMemoryPatternRepository:

    def test_users_are_isolated(self):
        repository = InMemoryPatternRepository()
        repository.append_one("user-1", _pattern("p1"))

        assert [p.id for p in repository.load_all("user-1")] == ["p1"]
        assert repository.load_all("user-2") == []

    def test_update_unknown_raises(self):
        with pytest.raises(KeyError):
            InMemoryPatternRepository().update_one("user-1", _pattern())


class TestDefaultRepository:

    @patch('receipt_learning.services.storage.settings')
    def test_in_memory_without_supabase_url(self, mock_settings):
        mock_settings.SUPABASE_URL = ""
        assert isinstance(default_repository(), InMemoryPatternRepository)

    @patch('receipt_learning.services.storage.get_supabase_client')
    @patch('receipt_learning.services.storage.settings')
    def test_supabase_when_configured(self, mock_settings, mock_supabase):
        mock_settings.SUPABASE_URL = "https://example.supabase.co"
        assert isinstance(default_repository(), SupabasePatternRepository)
