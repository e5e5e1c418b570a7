"""Normalisation of vendor labels into canonical group (store) keys."""
import re
from typing import Optional

SUFFIX_DELIMITER = '+'
RESOURCE_SEPARATOR = ' - '

_LEADING_DASH = re.compile(r'^-\s*')
_TRAILING_DASH = re.compile(r'\s*-$')


def _normalize_once(label: str) -> str:
    label = label.strip()
    label = _LEADING_DASH.sub('', label, count=1)
    label = _TRAILING_DASH.sub('', label, count=1)

    # "Store A + add a guest" -> "Store A"
    plus_index = label.find(SUFFIX_DELIMITER)
    if plus_index != -1:
        label = label[:plus_index]

    # "Store A - John" -> "Store A"
    separator_index = label.find(RESOURCE_SEPARATOR)
    if separator_index != -1:
        label = label[:separator_index]

    return label.strip()


def normalize(raw_label: Optional[str]) -> str:
    """
    Collapse a raw store/type label to its canonical group key.

    Steps are applied until the label stops changing, which makes the
    function idempotent. If nothing is left the raw label is returned.

    Args:
        raw_label: Label as returned by the vendor

    Returns:
        Canonical group key
    """
    if raw_label is None:
        return ''

    raw_label = str(raw_label)
    label = raw_label
    while True:
        reduced = _normalize_once(label)
        if reduced == label:
            break
        label = reduced

    return label or raw_label
