"""
Shared fixtures for rangebot tests.
All exchange/network calls are mocked — no real money touched.
"""
import sys
from pathlib import Path
from unittest.mock import patch

import pytest

ROOT_DIR = Path(__file__).parent.parent
sys.path.insert(0, str(ROOT_DIR))
sys.path.insert(0, str(Path(__file__).parent))

from helpers import make_config, make_gateway  # noqa: E402


@pytest.fixture
def config():
    return make_config()


@pytest.fixture
def gateway():
    return make_gateway()


@pytest.fixture(autouse=True)
def _block_real_side_effects(tmp_path, monkeypatch):
    """Global safety net: no real network, no real sleeps, no shared state.

    1. socket.socket.connect — any network call that slipped through fails loudly
    2. time.sleep — retry backoffs return immediately
    3. RANGEBOT_CONFIG_DIR / cwd — config and data files live in tmp_path
    """
    import socket as _socket

    def _blocked_connect(self, address):
        raise ConnectionError(
            f"🚨 TEST SAFETY NET: blocked real network connection to {address}. "
            f"Add @patch to mock the network call."
        )

    monkeypatch.setenv("RANGEBOT_CONFIG_DIR", str(tmp_path))
    monkeypatch.delenv("RANGEBOT_DISCORD_WEBHOOK", raising=False)
    monkeypatch.chdir(tmp_path)

    with patch('time.sleep') as _mock_sleep, \
         patch.object(_socket.socket, 'connect', _blocked_connect):
        yield {"time_sleep": _mock_sleep}
