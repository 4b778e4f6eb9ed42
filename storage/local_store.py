import json, os
from typing import Dict, Any, Optional

PATIENTS_FILE = "patients_index.json"

class PatientStore:
    """JSON-file persistence for patients, keyed by clinic then patient id."""

    def __init__(self, data_dir: str):
        self.data_dir = data_dir
        self._file = os.path.join(data_dir, PATIENTS_FILE)

    def _load_index(self) -> Dict[str, Dict[str, Any]]:
        if not os.path.exists(self._file):
            return {}
        with open(self._file, "r", encoding="utf-8") as f:
            return json.load(f)

    def _save_index(self, idx: Dict[str, Dict[str, Any]]) -> None:
        os.makedirs(self.data_dir, exist_ok=True)
        tmp = self._file + ".tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(idx, f, ensure_ascii=False, indent=2)
        os.replace(tmp, self._file)

    def put_patient(self, clinic_id: str, patient_id: str, data: Dict[str, Any]) -> None:
        idx = self._load_index()
        idx.setdefault(clinic_id, {})[patient_id] = {**data, "id": patient_id, "clinic_id": clinic_id}
        self._save_index(idx)

    def load_patient(self, clinic_id: str, patient_id: str) -> Optional[Dict[str, Any]]:
        return self._load_index().get(clinic_id, {}).get(patient_id)

    def save_patient(self, clinic_id: str, patient_id: str, data: Dict[str, Any]) -> bool:
        """Overwrite an existing patient; False when it no longer exists."""
        idx = self._load_index()
        clinic = idx.get(clinic_id, {})
        if patient_id not in clinic:
            return False
        clinic[patient_id] = {**data, "id": patient_id, "clinic_id": clinic_id}
        self._save_index(idx)
        return True

    def delete_patient(self, clinic_id: str, patient_id: str) -> bool:
        idx = self._load_index()
        clinic = idx.get(clinic_id, {})
        if clinic.pop(patient_id, None) is None:
            return False
        self._save_index(idx)
        return True

    def list_patients(self, clinic_id: str) -> Dict[str, Dict[str, Any]]:
        return dict(self._load_index().get(clinic_id, {}))
