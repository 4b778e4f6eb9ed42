"""
Pre-flight validation for patient records.

These checks run before any remote call is attempted, so a rejected save or
deletion leaves both storage and the database untouched.
"""
from __future__ import annotations
from typing import Dict, Optional, Tuple

from backend.app.models.schemas import Patient
from backend.app.services.exceptions import ValidationError


class PatientValidator:
    """
    Validator for patient records about to be persisted.

    Name and hospital number (HN) are required, as are the patient and clinic
    identifiers that scope every persistence call.
    """

    REQUIRED_FIELDS = ("id", "clinic_id", "name", "hn_code")

    @staticmethod
    def validate(patient: Patient) -> Tuple[bool, Dict]:
        """
        Validate a patient before saving.

        Args:
            patient: The patient as it would be persisted

        Returns:
            Tuple of (is_valid, details) where details lists the missing fields
            when validation fails
        """
        missing = [
            name for name in PatientValidator.REQUIRED_FIELDS
            if not str(getattr(patient, name) or "").strip()
        ]
        if missing:
            return False, {"reason": "missing_required_fields", "fields": missing}
        keys = [r.key for r in patient.history]
        if len(keys) != len(set(keys)):
            return False, {"reason": "duplicate_record_keys"}
        return True, {}


class IdentifierValidator:
    """Check the identifiers a caller passes before a destructive operation."""
    @staticmethod
    def validate(patient_id: Optional[str], clinic_id: Optional[str]) -> Tuple[bool, Dict]:
        missing = [
            name for name, value in (("patient_id", patient_id), ("clinic_id", clinic_id))
            if not (value or "").strip()
        ]
        if missing:
            return False, {"reason": "missing_identifiers", "fields": missing}
        return True, {}


def require_valid_patient(patient: Patient) -> None:
    ok, info = PatientValidator.validate(patient)
    if not ok:
        raise ValidationError("Patient failed validation", info)


def require_identifiers(patient_id: Optional[str], clinic_id: Optional[str]) -> None:
    ok, info = IdentifierValidator.validate(patient_id, clinic_id)
    if not ok:
        raise ValidationError("Patient and clinic identifiers are required", info)
