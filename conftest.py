"""
Root conftest — global safety nets for ALL test directories.
Prevents real Discord messages from any test.
"""
from unittest.mock import patch
import pytest


@pytest.fixture(autouse=True)
def _mock_all_notifications():
    """Mock the alert webhook everywhere it is imported."""
    with patch('core.notify.send_alert', return_value=True) as _mock, \
         patch('rangebot.engine.send_alert', return_value=True):
        yield _mock
