"""Known structure of the third-party patient intake form.

Builds the ordered list of form steps a session runner performs, and
reads the verification and confirmation pages back out of captured
view text.
"""

import re
from dataclasses import dataclass, field
from typing import Any

from src.shared.errors import AutomationError
from src.shared.types import Gender, PatientType
from src.shared.workflow_models import PatientData

CONTINUE_BUTTON = 'button:has-text("Continue")'
OTP_INPUT = 'input[placeholder*="code"], input[type="text"][maxlength="6"]'
VERIFY_BUTTON = 'button:has-text("Verify and book"), button:has-text("Verify")'

OTP_STEP = "otp"
CONFIRMATION_STEP = "confirmation"

_INVALID_OTP_MARKERS = ("invalid code", "incorrect")
_CONFIRMATION_MARKERS = ("appointment has been booked", "confirmed")

_CONFIRMATION_RE = re.compile(
    r"confirmation\s*(?:number|no\.?|#)?\s*[:#]?\s*([A-Z0-9][A-Z0-9-]{5,})", re.IGNORECASE
)
_DATE_RE = re.compile(r"(Mon|Tue|Wed|Thu|Fri|Sat|Sun),\s+\w+\s+\d+")
_TIME_RE = re.compile(r"(\d{1,2}:\d{2}\s*(?:AM|PM))", re.IGNORECASE)


@dataclass(frozen=True)
class FieldAction:
    """One interaction with the form.

    Attributes:
        kind: "click", "fill" (click then type), or "key".
        target: Element selector, or key name for "key".
        value: Text typed by "fill".
        field: Form field name reported as progress, if any.
    """

    kind: str
    target: str
    value: str | None = None
    field: str | None = None


@dataclass(frozen=True)
class FormStep:
    """An ordered group of actions forming one form page.

    Attributes:
        name: Step label persisted as current_step.
        actions: Interactions performed in order.
        expects_any: Page text markers that show the step is ready.
        when_missing: Actions run first when none of the markers show.
    """

    name: str
    actions: tuple[FieldAction, ...]
    expects_any: tuple[str, ...] = ()
    when_missing: tuple[FieldAction, ...] = ()

    def filled_fields(self) -> dict[str, Any]:
        """Return the form fields this step fills."""
        return {a.field: a.value for a in self.actions if a.field and a.value is not None}


@dataclass(frozen=True)
class Confirmation:
    """Booking details read from the confirmation page."""

    confirmation_number: str | None
    appointment_details: dict[str, Any] = field(default_factory=dict)


def _click(target: str) -> FieldAction:
    return FieldAction(kind="click", target=target)


def _fill(target: str, value: str, name: str) -> FieldAction:
    return FieldAction(kind="fill", target=target, value=value, field=name)


def build_form_plan(
    patient: PatientData,
    patient_type: PatientType = PatientType.NEW,
    preferred_location: str | None = None,
    insurance_fallback: str = "Not Listed",
) -> list[FormStep]:
    """Lay out the form steps for one patient.

    Args:
        patient: Details collected during the call.
        patient_type: New or returning patient.
        preferred_location: Clinic the caller asked for, if any.
        insurance_fallback: Option chosen when no carrier was given.

    Returns:
        Steps in the order the form presents them.
    """
    patient_label = "New Patient" if patient_type == PatientType.NEW else "Returning Patient"
    patient_value = "NewPatient" if patient_type == PatientType.NEW else "ReturningPatient"

    if preferred_location:
        pick_location = (
            _click(f'[role="option"]:has-text("{preferred_location}")'),
        )
    else:
        pick_location = (
            FieldAction(kind="key", target="arrowdown"),
            FieldAction(kind="key", target="enter"),
        )

    gender_label = "Male" if patient.gender == Gender.MALE else "Female"
    info: list[FieldAction] = [
        _fill('input[name*="firstName"]', patient.first_name, "first_name"),
    ]
    if patient.middle_name:
        info.append(_fill('input[name*="middleName"]', patient.middle_name, "middle_name"))
    info += [
        _fill('input[name*="lastName"]', patient.last_name, "last_name"),
        _fill('input[type="date"], input[placeholder*="date of birth"]',
              patient.date_of_birth, "date_of_birth"),
        FieldAction(
            kind="click",
            target=f'input[value="{gender_label}"], label:has-text("{gender_label}")',
            value=patient.gender.value,
            field="gender",
        ),
        _fill('input[name*="address"]', patient.address, "address"),
        _fill('input[name*="zip"]', patient.zip, "zip"),
        _fill('input[name*="city"]', patient.city, "city"),
        _click('select[name*="state"]'),
        FieldAction(kind="click", target=f'option[value="{patient.state}"]',
                    value=patient.state, field="state"),
        _fill('input[name*="homePhone"]', patient.home_phone, "home_phone"),
        _fill('input[name*="mobilePhone"]', patient.mobile_phone, "mobile_phone"),
    ]
    if patient.email:
        info.append(_fill('input[type="email"]', patient.email, "email"))

    insurance = patient.insurance_company or insurance_fallback
    insurance_actions = [
        _click('select[name*="insurance"]'),
        FieldAction(kind="click", target=f'option:has-text("{insurance}")',
                    value=insurance, field="insurance_company"),
    ]
    if patient.policy_id:
        insurance_actions.append(_fill('input[name*="policy"]', patient.policy_id, "policy_id"))
    insurance_actions.append(_click('button:has-text("Continue to Verification")'))

    return [
        FormStep(
            name="patient_type",
            actions=(
                FieldAction(
                    kind="click",
                    target=f'input[value="{patient_value}"], label:has-text("{patient_label}")',
                    value=patient_type.value,
                    field="patient_type",
                ),
                _click(CONTINUE_BUTTON),
            ),
        ),
        FormStep(
            name="location",
            actions=(
                _click('select[name*="location"], [role="combobox"]'),
                *pick_location,
                _click('button:has-text("Search Available")'),
            ),
        ),
        FormStep(
            name="calendar",
            actions=(_click('button[class*="appointment"]:not([disabled])'),),
            expects_any=("AM", "PM"),
            when_missing=(_click('button:has-text("Next Week")'),),
        ),
        FormStep(name="patient_info", actions=tuple(info)),
        FormStep(name="insurance", actions=tuple(insurance_actions)),
    ]


def otp_actions(otp: str) -> list[FieldAction]:
    """Actions that enter the passcode and submit the booking."""
    return [
        FieldAction(kind="fill", target=OTP_INPUT, value=otp),
        _click(VERIFY_BUTTON),
    ]


def is_invalid_otp(page_text: str) -> bool:
    """Whether the verification page rejected the passcode."""
    lowered = page_text.lower()
    return any(marker in lowered for marker in _INVALID_OTP_MARKERS)


def extract_confirmation(page_text: str, preferred_location: str | None = None) -> Confirmation:
    """Read booking details from the confirmation page text.

    Args:
        page_text: Visible text of the final page.
        preferred_location: Location to report if named on the page.

    Returns:
        Confirmation with whatever details the page shows.

    Raises:
        AutomationError: If the page is not a booking confirmation.
    """
    lowered = page_text.lower()
    if not any(marker in lowered for marker in _CONFIRMATION_MARKERS):
        raise AutomationError("Confirmation page not reached")

    number = _CONFIRMATION_RE.search(page_text)
    date = _DATE_RE.search(page_text)
    time = _TIME_RE.search(page_text)
    location = "Unknown"
    if preferred_location and preferred_location.lower() in lowered:
        location = preferred_location
    return Confirmation(
        confirmation_number=number.group(1) if number else None,
        appointment_details={
            "date": date.group(0) if date else "Unknown",
            "time": time.group(0) if time else "Unknown",
            "location": location,
        },
    )
