"""Unit tests for group label normalization."""
import random

import pytest

from processor.normalizer import normalize


@pytest.mark.parametrize('raw,expected', [
    ("Store A + add a guest", "Store A"),
    ("Store A - John", "Store A"),
    ("Store A", "Store A"),
    ("  The Bundclub Madrid  ", "The Bundclub Madrid"),
    ("- The Bundclub Sevilla", "The Bundclub Sevilla"),
    ("The Bundclub Sevilla -", "The Bundclub Sevilla"),
    ("-The Bundclub Bilbao + Solo quiero informarme", "The Bundclub Bilbao"),
    ("The Bundclub CDMX (Polanco) + Añadir 1 persona más", "The Bundclub CDMX (Polanco)"),
    ("Store-A", "Store-A"),
])
def test_normalize_examples(raw, expected):
    """Test normalization of representative vendor labels."""
    assert normalize(raw) == expected


def test_normalize_falls_back_to_raw_label_when_empty():
    """Test that a label reduced to nothing falls back to the raw label."""
    assert normalize("+ add a guest") == "+ add a guest"
    assert normalize("-") == "-"


def test_normalize_none_and_empty():
    """Test None and empty input."""
    assert normalize(None) == ''
    assert normalize('') == ''


def test_promotional_and_resource_suffixes_share_group():
    """Test that both suffix styles collapse to the same group key."""
    assert normalize("Store A - John") == normalize("Store A + add a guest")


@pytest.mark.parametrize('raw', [
    "A -+",
    " - - x - ",
    "--",
    "- + -",
    "Store A -  + guest",
    "  -  ",
    "a - b - c + d",
])
def test_normalize_idempotent_edge_cases(raw):
    """Test idempotence on inputs where a single pass would not settle."""
    once = normalize(raw)
    assert normalize(once) == once


def test_normalize_idempotent_random():
    """Test normalize(normalize(s)) == normalize(s) for random strings."""
    rng = random.Random(42)
    alphabet = 'ab -+ \t'
    for _ in range(2000):
        raw = ''.join(rng.choice(alphabet) for _ in range(rng.randint(0, 12)))
        once = normalize(raw)
        assert normalize(once) == once, repr(raw)
