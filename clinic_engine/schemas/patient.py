from pydantic import BaseModel
from typing import Any, Optional

class PatientSnapshot(BaseModel):
    """Patient fields the clinical alert deriver reads.

    ``allergies`` is kept exactly as the patient service returned it.
    """

    id: str
    name: Optional[str] = None
    allergies: Any = None
    medical_history: Optional[str] = None
