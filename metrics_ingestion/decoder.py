"""
Metrics Ingestion - Sample Decoder.

============================================================
PURPOSE
============================================================
Turns exposition text into MetricSample values.

Line grammar:
    name[{key="value",...}] value [timestamp]

- Names match [a-zA-Z_:][a-zA-Z0-9_:]*
- Label keys are bare identifiers, values are double quoted
  without escaping
- Values are integer, decimal or exponential numbers
- NaN and +/-Inf are rejected as non-numeric

============================================================
FAILURE POLICY
============================================================
The feed is operational and of unknown completeness. A bad
line is skipped and counted, never raised.

============================================================
"""

import logging
import math
import re
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

from .models import MetricSample


logger = logging.getLogger(__name__)


_LINE_RE = re.compile(
    r'^(?P<name>[a-zA-Z_:][a-zA-Z0-9_:]*)'
    r'(?:\{(?P<labels>(?:[^"}]|"[^"]*")*)\})?'
    r'\s+(?P<value>\S+)'
    r'(?:\s+(?P<timestamp>-?\d+))?\s*$'
)

_LABEL_RE = re.compile(r'\s*([a-zA-Z_][a-zA-Z0-9_]*)\s*=\s*"([^"]*)"\s*(?:,|$)')

_VALUE_RE = re.compile(r'^[+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?$')


# ============================================================
# SKIP REASONS
# ============================================================

class DecodeSkip(Enum):
    """Why a non-blank, non-comment line produced no sample."""

    MALFORMED = "malformed"
    NON_NUMERIC = "non_numeric"
    DUPLICATE_LABEL = "duplicate_label"


@dataclass
class DecodedBody:
    """Samples of a whole exposition body plus skip accounting."""

    samples: List[MetricSample] = field(default_factory=list)
    lines_total: int = 0
    lines_skipped: int = 0
    skip_reasons: Dict[str, int] = field(default_factory=dict)


# ============================================================
# DECODING
# ============================================================

def _is_ignorable(line: str) -> bool:
    stripped = line.strip()
    return not stripped or stripped.startswith("#")


def _parse_labels(body: str) -> Optional[Tuple[Dict[str, str], bool]]:
    """
    Parse the text between braces.

    Returns:
        (labels, had_duplicate) or None if the body is malformed
    """
    labels: Dict[str, str] = {}
    duplicate = False
    pos = 0
    body = body.strip()

    while pos < len(body):
        match = _LABEL_RE.match(body, pos)
        if match is None or match.end() == pos:
            return None
        key, value = match.group(1), match.group(2)
        if key in labels:
            duplicate = True
        labels[key] = value
        pos = match.end()

    return labels, duplicate


def decode_with_reason(line: str) -> Tuple[Optional[MetricSample], Optional[DecodeSkip]]:
    """
    Decode one line and report why it was skipped.

    Blank and comment lines return (None, None).
    """
    if _is_ignorable(line):
        return None, None

    match = _LINE_RE.match(line.strip())
    if match is None:
        return None, DecodeSkip.MALFORMED

    labels: Dict[str, str] = {}
    if match.group("labels") is not None:
        parsed = _parse_labels(match.group("labels"))
        if parsed is None:
            return None, DecodeSkip.MALFORMED
        labels, duplicate = parsed
        if duplicate:
            return None, DecodeSkip.DUPLICATE_LABEL

    raw_value = match.group("value")
    if not _VALUE_RE.match(raw_value):
        return None, DecodeSkip.NON_NUMERIC

    try:
        value = float(raw_value)
    except ValueError:
        return None, DecodeSkip.NON_NUMERIC

    # Huge exponents overflow to inf
    if math.isinf(value) or math.isnan(value):
        return None, DecodeSkip.NON_NUMERIC

    return MetricSample(name=match.group("name"), labels=labels, value=value), None


def decode(line: str) -> Optional[MetricSample]:
    """Decode one exposition line, None for blank, comment or malformed lines."""
    sample, _ = decode_with_reason(line)
    return sample


def decode_lines(text: str) -> DecodedBody:
    """
    Decode a whole exposition body.

    Args:
        text: Raw response body of the metrics endpoint

    Returns:
        DecodedBody with samples in input order
    """
    result = DecodedBody()
    reasons: Counter = Counter()

    for line in text.splitlines():
        if _is_ignorable(line):
            continue
        result.lines_total += 1
        sample, reason = decode_with_reason(line)
        if sample is None:
            result.lines_skipped += 1
            reasons[reason.value] += 1
            continue
        result.samples.append(sample)

    result.skip_reasons = dict(sorted(reasons.items()))

    if result.lines_skipped:
        logger.debug(
            f"[decoder] Skipped {result.lines_skipped}/{result.lines_total} lines: "
            f"{result.skip_reasons}"
        )

    return result


__all__ = [
    "DecodeSkip",
    "DecodedBody",
    "decode",
    "decode_with_reason",
    "decode_lines",
]
