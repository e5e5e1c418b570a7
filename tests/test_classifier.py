"""Unit tests for the appointment type classifier."""
import logging
import random

import pytest

from processor.classifier import Classifier, classify, fold
from processor.models import Category


class TestClassifier:
    """Test cases for Classifier class."""

    def test_scheduling_link_has_highest_priority(self):
        """Test that the scheduling link wins over the type label."""
        category = classify(
            "Fitting Madrid",
            None,
            "https://bund-appointments.as.me/medicion-madrid"
        )

        assert category == Category.MEASUREMENT

    def test_fitting_link(self):
        """Test fitting detection from the scheduling link."""
        assert classify("", None, "https://x.as.me/fitting-sevilla") == Category.FITTING

    def test_type_label_accent_insensitive(self):
        """Test that accented labels match unaccented keywords."""
        assert classify("The Bundclub Madrid - MEDICIÓN") == Category.MEASUREMENT
        assert classify("Toma de medidas") == Category.MEASUREMENT

    def test_type_label_fitting_keywords(self):
        """Test fitting keywords in the type label."""
        assert classify("Prueba final Bilbao") == Category.FITTING
        assert classify("Probador Valencia") == Category.FITTING

    def test_category_label_used_when_type_label_silent(self):
        """Test that the category label is consulted after the type label."""
        assert classify("The Bundclub Madrid", "Medición") == Category.MEASUREMENT

    def test_type_label_wins_over_category_label(self):
        """Test rule order: type label before category label."""
        assert classify("Fitting Madrid", "Medición") == Category.FITTING

    def test_default_when_nothing_matches(self, caplog):
        """Test that an unmatched type is defaulted and flagged."""
        classifier = Classifier()

        with caplog.at_level(logging.WARNING):
            category, defaulted = classifier.classify_with_flag("The Bundclub Murcia")

        assert category == Category.FITTING
        assert defaulted is True
        diagnostics = [getattr(r, 'diagnostic', None) for r in caplog.records]
        assert 'ClassificationAmbiguous' in diagnostics

    def test_unmatched_label_is_reported_once(self, caplog):
        """Test that repeated unmatched labels log one diagnostic until reset."""
        classifier = Classifier()

        with caplog.at_level(logging.WARNING):
            for _ in range(5):
                classifier.classify_with_flag("The Bundclub Murcia")
            classifier.classify_with_flag("The Bundclub Bilbao")
            classifier.reset()
            classifier.classify_with_flag("The Bundclub Murcia")

        messages = [r.getMessage() for r in caplog.records
                    if getattr(r, 'diagnostic', None) == 'ClassificationAmbiguous']
        assert len(messages) == 3
        assert sum('Murcia' in m for m in messages) == 2


    def test_configured_default_category(self):
        """Test that the default category is configurable."""
        classifier = Classifier(default_category=Category.MEASUREMENT)

        assert classifier.classify("Unknown type") == Category.MEASUREMENT

    def test_matched_type_is_not_flagged(self):
        """Test that a rule match reports defaulted=False."""
        _, defaulted = Classifier().classify_with_flag("Medición Sevilla")

        assert defaulted is False

    @pytest.mark.parametrize('type_label,category_label,link', [
        (None, None, None),
        ('', '', ''),
        ('   ', None, '   '),
        ('\x00\x01', '🙂', '%%%'),
        ('x' * 5000, None, None),
        (42, None, None),
    ])
    def test_classify_is_total(self, type_label, category_label, link):
        """Test that classify never raises and returns a Category."""
        assert classify(type_label, category_label, link) in set(Category)

    def test_classify_is_total_for_random_strings(self):
        """Test totality on random printable and accented input."""
        rng = random.Random(1234)
        alphabet = 'abcdefghijklmnopqrstuvwxyzÁÉÍÓÚáéíóúñ -+_/'
        for _ in range(200):
            values = [
                ''.join(rng.choice(alphabet) for _ in range(rng.randint(0, 30)))
                if rng.random() > 0.2 else None
                for _ in range(3)
            ]
            assert classify(*values) in set(Category)


def test_fold_strips_accents_and_case():
    """Test the accent/case folding helper."""
    assert fold("MEDICIÓN Málaga") == "medicion malaga"
    assert fold(None) == ''
