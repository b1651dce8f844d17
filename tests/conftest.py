import pathlib

import pytest

from jugglefest.juggler_assignment_algorithm import (
    AlgorithmConfig,
    Circuit,
    Juggler,
    _records_from_data,
)
from jugglefest.preprocess_data import parse_jugglefest_text

DATA_DIR = pathlib.Path(__file__).parent / "data"


@pytest.fixture
def example_path():
    return DATA_DIR / "jugglefest_example.txt"


@pytest.fixture
def example_records(example_path):
    """(jugglers, circuits) of the three-circuit, twelve-juggler example."""
    return _records_from_data(parse_jugglefest_text(example_path.read_text()))


@pytest.fixture
def quiet_config():
    return AlgorithmConfig(SHOW_PROGRESS=False, PLOT_PLACEMENTS=False)


def make_circuit(name, h=0, e=0, p=0):
    return Circuit(name=name, hand_eye=h, endurance=e, pizzazz=p)


def make_juggler(name, h=0, e=0, p=0, prefs=()):
    return Juggler(name=name, hand_eye=h, endurance=e, pizzazz=p, preferred_circuits=tuple(prefs))
