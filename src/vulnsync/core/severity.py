"""CVSS based severity normalization.

Sources report severity in different shapes: a free-form label, a CVSS v3
vector, a CVSS v2 vector, or only a base score. Everything is folded into
the Severity enum so stored vulnerabilities compare consistently.

Provides:
- severity_from_score: Map a CVSS base score to a Severity
- score_vector: CVSS base score for a v2 or v3.x vector string
- normalize_label: Map a source's severity label to a Severity
- resolve_severity: Pick the best severity from whatever a source reported
"""

from cvss import CVSS2, CVSS3
from cvss.exceptions import CVSSError

from vulnsync.core.records import Severity


# Labels seen across sources, mapped onto the normalized scale
LABEL_MAP = {
    "critical": Severity.CRITICAL,
    "high": Severity.HIGH,
    "important": Severity.HIGH,
    "moderate": Severity.MEDIUM,
    "medium": Severity.MEDIUM,
    "low": Severity.LOW,
    "info": Severity.INFO,
    "informational": Severity.INFO,
    "none": Severity.INFO,
}


def severity_from_score(score: float | None, version: int = 3) -> Severity:
    """Map a CVSS base score to a severity label.

    CVSS v3 bands: 0.0 info, <4.0 low, <7.0 medium, <9.0 high, else critical.
    CVSS v2 has no critical band: <4.0 low, <7.0 medium, else high.

    Args:
        score: CVSS base score (0.0 - 10.0), or None
        version: CVSS major version the score was computed with (2 or 3)

    Returns:
        Severity label (UNASSIGNED when score is None)

    Example:
        >>> severity_from_score(9.8)
        <Severity.CRITICAL: 'critical'>
        >>> severity_from_score(9.8, version=2)
        <Severity.HIGH: 'high'>
    """
    if score is None:
        return Severity.UNASSIGNED

    if version == 2:
        if score < 4.0:
            return Severity.LOW
        if score < 7.0:
            return Severity.MEDIUM
        return Severity.HIGH

    if score == 0.0:
        return Severity.INFO
    elif score < 4.0:
        return Severity.LOW
    elif score < 7.0:
        return Severity.MEDIUM
    elif score < 9.0:
        return Severity.HIGH
    return Severity.CRITICAL


def score_vector(vector: str | None) -> tuple[float | None, int]:
    """Calculate the base score of a CVSS vector.

    Vectors starting with "CVSS:3" are scored as v3.x, anything else as v2
    (v2 vectors may be wrapped in parentheses, as some feeds send them).

    Args:
        vector: CVSS vector string

    Returns:
        Tuple of (base score or None if the vector is unparseable, major version)
    """
    if not vector:
        return None, 3

    vector = vector.strip().strip("()")
    try:
        if vector.startswith("CVSS:3"):
            return float(CVSS3(vector).base_score), 3
        return float(CVSS2(vector).base_score), 2
    except (CVSSError, ValueError, KeyError):
        return None, 3


def normalize_label(label: str | None) -> Severity | None:
    """Map a source's severity label to a Severity, or None if unknown."""
    if not label:
        return None
    return LABEL_MAP.get(label.strip().lower())


def resolve_severity(
    label: str | None = None,
    cvss_v3_score: float | None = None,
    cvss_v2_score: float | None = None,
) -> Severity:
    """Choose a severity from what a source reported.

    Preference order: CVSS v3 score, explicit source label, CVSS v2 score.

    Example:
        >>> resolve_severity(label="moderate", cvss_v3_score=9.1)
        <Severity.CRITICAL: 'critical'>
        >>> resolve_severity(label="moderate")
        <Severity.MEDIUM: 'medium'>
    """
    if cvss_v3_score is not None:
        return severity_from_score(cvss_v3_score, version=3)

    normalized = normalize_label(label)
    if normalized is not None:
        return normalized

    if cvss_v2_score is not None:
        return severity_from_score(cvss_v2_score, version=2)

    return Severity.UNASSIGNED
