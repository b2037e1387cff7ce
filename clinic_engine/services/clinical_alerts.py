"""
Client-side clinical alerts derived from the active patient snapshot.

Alerts are recomputed whenever the snapshot changes and are never stored.
Their identifiers come from the cause (patient + allergy/condition), so
recomputing the same snapshot yields the same alerts.
"""
import json
import logging
import re
from typing import Any, Iterable, List, Optional

from ..core.errors import MalformedPayload
from ..schemas.notification import ClinicalAlert
from ..schemas.patient import PatientSnapshot

logger = logging.getLogger(__name__)

# Canonical name -> spellings looked for in the medical history.
# Legacy records use French.
CRITICAL_CONDITIONS = (
    ("diabetes", ("diabetes", "diabète", "diabete")),
    ("hypertension", ("hypertension",)),
    ("asthma", ("asthma", "asthme")),
    ("epilepsy", ("epilepsy", "épilepsie", "epilepsie")),
    ("cardiac disease", ("cardiac disease", "heart disease", "cardiopathie")),
)

_DELIMITERS = re.compile(r"[,;]|\s+and\s+|\s+et\s+", re.IGNORECASE)
_ARTIFACTS = "\"'[] \t\r\n"


def _clean(value: Any) -> str:
    return str(value).strip(_ARTIFACTS)


def _from_sequence(items: Iterable[Any]) -> List[str]:
    names = []
    for item in items:
        if item is None:
            continue
        if isinstance(item, dict):
            if not item.get("name"):
                raise MalformedPayload(f"Allergy entry without a name: {item!r}")
            names.append(_clean(item["name"]))
        elif isinstance(item, str):
            names.extend(_from_text(item, split=False))
        elif isinstance(item, (list, tuple)):
            names.extend(_from_sequence(item))
        else:
            names.append(_clean(item))
    return names


def _from_text(text: str, split: bool = True) -> List[str]:
    text = text.strip()
    if not text:
        return []
    try:
        parsed = json.loads(text)
    except ValueError:
        if not split:
            return [_clean(text)]
        return [_clean(part) for part in _DELIMITERS.split(text)]

    if parsed is None:
        return []
    if isinstance(parsed, list):
        return _from_sequence(parsed)
    if isinstance(parsed, str) and parsed.strip() != text:
        # JSON-encoded string, e.g. "\"[\\\"Peanuts\\\"]\""
        return _from_text(parsed, split=split)
    return [_clean(text)]


def normalize_allergies(raw: Any) -> List[str]:
    """Turn any allergy representation into a clean list of names.

    Accepts a native list (of strings, JSON strings or ``{"name": ...}``
    mappings), a JSON array, a JSON-encoded string holding an array, or
    free text separated by commas, semicolons or "and". Empty entries are
    dropped and duplicates removed, keeping the first spelling.
    """
    if raw is None or raw == "":
        return []

    try:
        if isinstance(raw, str):
            names = _from_text(raw)
        elif isinstance(raw, (list, tuple)):
            names = _from_sequence(raw)
        elif isinstance(raw, dict):
            names = _from_sequence([raw])
        else:
            names = [_clean(raw)]
    except MalformedPayload as e:
        logger.warning(f"Unparseable allergy payload, keeping it verbatim: {e}")
        literal = _clean(raw) if isinstance(raw, str) else _clean(json.dumps(raw, default=str))
        return [literal] if literal else []

    unique = []
    seen = set()
    for name in names:
        key = name.casefold()
        if name and key not in seen:
            seen.add(key)
            unique.append(name)
    return unique


def find_critical_conditions(medical_history: Optional[str]) -> List[str]:
    """Critical conditions mentioned in a free-text history, in vocabulary order."""
    if not medical_history or not isinstance(medical_history, str):
        return []
    history = medical_history.lower()
    return [
        name
        for name, spellings in CRITICAL_CONDITIONS
        if any(spelling in history for spelling in spellings)
    ]


def derive_clinical_alerts(patient: Optional[PatientSnapshot]) -> List[ClinicalAlert]:
    """Compute the clinical alerts for a patient snapshot."""
    if patient is None:
        return []

    alerts = []

    allergies = normalize_allergies(patient.allergies)
    if allergies:
        alerts.append(ClinicalAlert(
            id=f"allergy-alert-{patient.id}",
            kind="allergy",
            title="Known allergies",
            message=f"Patient has allergies: {', '.join(allergies)}",
            values=allergies,
            patient_id=patient.id,
            patient_name=patient.name,
        ))

    for condition in find_critical_conditions(patient.medical_history):
        slug = condition.replace(" ", "-")
        alerts.append(ClinicalAlert(
            id=f"condition-alert-{patient.id}-{slug}",
            kind="condition",
            title="Critical medical condition",
            message=f"Patient has a critical condition: {condition}",
            values=[condition],
            patient_id=patient.id,
            patient_name=patient.name,
        ))

    return alerts
