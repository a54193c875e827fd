"""Shared input validators for the scheduling orchestrator."""

from __future__ import annotations

import re

from src.shared.types import WorkflowStatus

_VALID_STATUSES = {status.value for status in WorkflowStatus}

OTP_LENGTH = 6


def validate_phone(phone: str) -> bool:
    """Validate a phone number has at least 10 digits.

    Args:
        phone: Raw phone input.

    Returns:
        True if the phone has at least 10 digits.
    """
    digits = re.sub(r"\D", "", phone)
    return len(digits) >= 10


def validate_zip_code(zip_code: str) -> bool:
    """Validate a US ZIP code (5 digits, optional +4).

    Args:
        zip_code: ZIP code string.

    Returns:
        True if ZIP or ZIP+4.
    """
    return bool(re.fullmatch(r"\d{5}(-\d{4})?", zip_code.strip()))


def validate_state_code(state: str) -> bool:
    """Validate a two-letter US state code.

    Args:
        state: Upper-cased state code.

    Returns:
        True if exactly two letters.
    """
    return bool(re.fullmatch(r"[A-Z]{2}", state))


def validate_workflow_status(status: str) -> bool:
    """Check a status against the workflow status allow-list.

    Args:
        status: Candidate status value.

    Returns:
        True if the value is a known workflow status.
    """
    return str(getattr(status, "value", status)) in _VALID_STATUSES


def normalize_otp(spoken: str) -> str | None:
    """Reduce a spoken passcode to its digits.

    Callers read codes as "5-4-3-2-1-0" or "543 210"; only the
    first six digits are kept.

    Args:
        spoken: Code as transcribed from the caller.

    Returns:
        Six-digit string, or None if fewer than six digits were heard.
    """
    digits = re.sub(r"\D", "", spoken)[:OTP_LENGTH]
    if len(digits) != OTP_LENGTH:
        return None
    return digits


def mask_phone(phone: str) -> str:
    """Mask all but the last four digits of a phone number for logs.

    Args:
        phone: Phone number.

    Returns:
        Masked phone string.
    """
    digits = re.sub(r"\D", "", phone)
    return f"***{digits[-4:]}" if len(digits) >= 4 else "***"
