"""
AIKB - Redaction
=================
One-way scrubbing of personally identifiable information.

Two rule sets live here:

``redact_pii``
    Pattern-based PII removal (emails, SSNs, phone numbers, national
    ids).  Applied to every piece of text headed for the audit trail or
    the logs, and to document content before it is sent to the model.

``redact_fields``
    Key/value redaction (``salary: 120k`` → ``salary: [REDACTED]``)
    driven by the document's sensitivity label.  Applied at ingestion.

Redaction is lossy and is **never** applied to the answer returned to
the end user.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping

# ── Placeholder tokens ─────────────────────────────────────────────────
EMAIL_PLACEHOLDER = "[EMAIL REDACTED]"
PHONE_PLACEHOLDER = "[PHONE REDACTED]"
SSN_PLACEHOLDER = "[SSN REDACTED]"
ID_PLACEHOLDER = "[ID REDACTED]"
FIELD_PLACEHOLDER = "[REDACTED]"

# ── PII regex patterns ────────────────────────────────────────────────
# Emails, including "[at]" / "(dot)" obfuscations.
_RE_EMAIL = re.compile(r"[a-z0-9._%+\-]+\s*(?:@|\[at\]|\(at\))\s*[a-z0-9.\-]+\s*(?:\.|\[dot\]|\(dot\))\s*[a-z]{2,}", re.IGNORECASE)
_RE_SSN = re.compile(r"\b\d{3}[- ]?\d{2}[- ]?\d{4}\b")
_RE_PHONE = re.compile(r"(?<!\w)(?:\+?\d{1,3}[\s.\-]?)?\(?\d{3}\)?[\s.\-]?\d{3}[\s.\-]?\d{4}\b")
_RE_NATIONAL_ID = re.compile(r"\b[A-Z]{1,2}\d{6,9}\b", re.IGNORECASE)

# Order matters: SSNs are scrubbed before the broader phone pattern.
_PII_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (_RE_EMAIL, EMAIL_PLACEHOLDER),
    (_RE_SSN, SSN_PLACEHOLDER),
    (_RE_PHONE, PHONE_PLACEHOLDER),
    (_RE_NATIONAL_ID, ID_PLACEHOLDER),
)


def redact_pii(text: str) -> str:
    """Replace recognisable PII substrings with fixed placeholder tokens."""
    if not text:
        return text
    for pattern, placeholder in _PII_RULES:
        text = pattern.sub(placeholder, text)
    return text


def redact_fields(text: str, fields: Iterable[str]) -> str:
    """
    Redact ``field: value`` / ``field=value`` pairs for the given field names.

    The value runs to the end of the line or the next comma.  Matching is
    case-insensitive; the field label is kept so the reader still knows
    *what* was removed.
    """
    for field in fields:
        if not field:
            continue
        pattern = re.compile(rf"{re.escape(field)}\s*[:=]\s*[^\n,]+", re.IGNORECASE)
        text = pattern.sub(f"{field}: {FIELD_PLACEHOLDER}", text)
    return text


class Redactor:
    """
    Sensitivity-aware redactor.

    Parameters
    ----------
    rules
        Mapping of sensitivity label (``"CONFIDENTIAL"`` …) to the list of
        key/value fields that must be scrubbed from documents carrying
        that label.  Labels are matched case-insensitively.
    """

    __slots__ = ("_rules",)

    def __init__(self, rules: Mapping[str, Iterable[str]] | None = None) -> None:
        self._rules: dict[str, tuple[str, ...]] = {label.upper(): tuple(fields) for label, fields in (rules or {}).items()}


    def fields_for(self, sensitivity: str | None) -> tuple[str, ...]:
        if not sensitivity:
            return ()
        return self._rules.get(sensitivity.upper(), ())


    def redact_document(self, text: str, sensitivity: str | None) -> str:
        """Apply the field rules for *sensitivity* (ingestion path)."""
        fields = self.fields_for(sensitivity)
        return redact_fields(text, fields) if fields else text


    @staticmethod
    def redact_for_audit(text: str) -> str:
        """Scrub text destined for the audit trail or the logs."""
        return redact_pii(text)
