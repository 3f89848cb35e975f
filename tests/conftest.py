import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

import pytest

from helpers import FakeClock
from models import PlaylistEndpoint


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def playlist():
    return PlaylistEndpoint(
        identifier="k7m2p9qa",
        name="Family Channels",
        origin_url="http://origin.example.com/family.m3u",
        max_devices=3,
    )
