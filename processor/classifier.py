"""Heuristic classification of appointment types into business categories."""
import logging
import threading
import unicodedata
from typing import Optional, Sequence, Set, Tuple

from processor.errors import ClassificationAmbiguous
from processor.models import Category

logger = logging.getLogger(__name__)


# Keywords are matched as accent-free, lower-case substrings.
LINK_RULES: Sequence[Tuple[Category, Sequence[str]]] = (
    (Category.MEASUREMENT, ('medicion-', 'measurement-')),
    (Category.FITTING, ('fitting-',)),
)

LABEL_RULES: Sequence[Tuple[Category, Sequence[str]]] = (
    (Category.MEASUREMENT, ('medicion', 'medida', 'measurement', 'measure')),
    (Category.FITTING, ('fitting', 'prueba', 'probador')),
)


def fold(text: Optional[str]) -> str:
    """
    Lower-case and strip accents so that "Medición" matches "medicion".

    Args:
        text: Arbitrary input, may be None

    Returns:
        Folded string (empty for None)
    """
    if text is None:
        return ''
    decomposed = unicodedata.normalize('NFKD', str(text))
    stripped = ''.join(c for c in decomposed if not unicodedata.combining(c))
    return stripped.casefold()


class Classifier:
    """Maps appointment-type labels to a Category using ordered rules."""

    def __init__(
        self,
        default_category: Category = Category.FITTING,
        link_rules: Sequence[Tuple[Category, Sequence[str]]] = LINK_RULES,
        label_rules: Sequence[Tuple[Category, Sequence[str]]] = LABEL_RULES
    ):
        self.default_category = default_category
        self.link_rules = link_rules
        self.label_rules = label_rules
        self._reported: Set[str] = set()
        self._lock = threading.Lock()

    def reset(self) -> None:
        """Forget which unmatched labels were already reported."""
        with self._lock:
            self._reported.clear()

    def classify(
        self,
        type_label: Optional[str],
        category_label: Optional[str] = None,
        scheduling_link_hint: Optional[str] = None
    ) -> Category:
        """Return the category for a type. Never raises."""
        category, _ = self.classify_with_flag(
            type_label, category_label, scheduling_link_hint
        )
        return category

    def classify_with_flag(
        self,
        type_label: Optional[str],
        category_label: Optional[str] = None,
        scheduling_link_hint: Optional[str] = None
    ) -> Tuple[Category, bool]:
        """
        Classify a type and report whether the default was applied.

        The scheduling link is checked first, then the type label, then the
        category label. The first matching rule wins.

        Returns:
            Tuple of (category, defaulted)
        """
        candidates = (
            (fold(scheduling_link_hint), self.link_rules),
            (fold(type_label), self.label_rules),
            (fold(category_label), self.label_rules),
        )

        for text, rules in candidates:
            if not text:
                continue
            for category, keywords in rules:
                if any(keyword in text for keyword in keywords):
                    return category, False

        self._report_unmatched(type_label)
        return self.default_category, True

    def _report_unmatched(self, type_label: Optional[str]) -> None:
        # one warning per distinct label until reset
        with self._lock:
            if fold(type_label) in self._reported:
                return
            self._reported.add(fold(type_label))

        diagnostic = ClassificationAmbiguous(
            f"No category rule matched type '{type_label}'; "
            f"defaulting to {self.default_category.value}",
            identifier=str(type_label) if type_label else None
        )
        logger.warning(
            str(diagnostic),
            extra={'diagnostic': type(diagnostic).__name__}
        )


_default_classifier = Classifier()


def classify(
    type_label: Optional[str],
    category_label: Optional[str] = None,
    scheduling_link_hint: Optional[str] = None
) -> Category:
    """Classify with the default rule table and default category."""
    return _default_classifier.classify(
        type_label, category_label, scheduling_link_hint
    )
