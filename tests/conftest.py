"""
Shared pytest fixtures for the bowling manager tests.

Running tests:
    pytest tests/                  - full suite
    pytest tests/ -m "not slow"   - fast subset
"""
import pytest
import random
import sys
import os

# Add src directory to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from bowling.models import Bowler
from bowling.scoring import create_game_score


@pytest.fixture
def temp_data_dir(tmp_path, monkeypatch):
    """Point the app's data directory at an empty temporary directory."""
    import app as app_module

    data_dir = tmp_path / "data"
    data_dir.mkdir()
    monkeypatch.setattr(app_module, 'DATA_DIR', str(data_dir))
    return str(data_dir)


@pytest.fixture
def client(temp_data_dir):
    """Create a test client logged in as 'testuser'."""
    from app import app
    app.config['TESTING'] = True
    with app.test_client() as client:
        with client.session_transaction() as sess:
            sess['user'] = 'testuser'
        yield client


@pytest.fixture
def anonymous_client(temp_data_dir):
    """Create a test client with nobody logged in."""
    from app import app
    app.config['TESTING'] = True
    with app.test_client() as client:
        yield client


@pytest.fixture
def rng():
    """Deterministic random source."""
    return random.Random(1234)


@pytest.fixture
def eight_bowlers():
    """Eight bowlers with distinct averages, highest first."""
    averages = [210, 200, 190, 180, 170, 160, 150, 140]
    return [Bowler(id=f"b{i + 1}", name=f"Bowler {i + 1}", average=avg) for i, avg in enumerate(averages)]


@pytest.fixture
def three_game_scores():
    """Three games for four bowlers in event 'e1' (scratch, no handicap)."""
    pins = {
        'b1': [200, 180, 220],
        'b2': [190, 210, 160],
        'b3': [150, 150, 150],
        'b4': [220, 170, 190],
    }
    return [
        create_game_score(bowler_id, 'e1', game + 1, score)
        for bowler_id, games in pins.items()
        for game, score in enumerate(games)
    ]
