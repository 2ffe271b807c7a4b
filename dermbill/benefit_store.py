"""File-backed storage for per-patient insurance benefit snapshots.

Snapshots are persisted under <root>/benefits/<patient_id>.json. The billing
calculator never writes here itself; callers load a snapshot, run the
waterfall and save the ``updated_benefits`` it returns.
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path

from dermbill.billing_calculator import validate_benefits
from dermbill.config import DATA_ROOT
from dermbill.models import InsuranceBenefitState

LOGGER = logging.getLogger(__name__)

_SAFE_ID_PATTERN = re.compile(r"^[A-Za-z0-9._-]+$")


class BenefitStore:
    """Repository of benefit snapshots keyed by patient id."""

    def __init__(self, root: Path | str = DATA_ROOT) -> None:
        self.root = Path(root)

    def _path(self, patient_id: str) -> Path:
        patient_id = str(patient_id or "").strip()
        if not patient_id:
            raise ValueError("patient_id is required")
        if not _SAFE_ID_PATTERN.match(patient_id) or patient_id in {".", ".."}:
            raise ValueError(f"invalid patient_id '{patient_id}'")
        return self.root / "benefits" / f"{patient_id}.json"

    def exists(self, patient_id: str) -> bool:
        return self._path(patient_id).exists()

    def save(self, patient_id: str, benefits: InsuranceBenefitState) -> InsuranceBenefitState:
        validate_benefits(benefits)

        path = self._path(patient_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = benefits.model_dump(mode="json", by_alias=True)
        with open(path, "w", encoding="utf-8") as fh:
            json.dump(payload, fh, indent=2, ensure_ascii=False)

        LOGGER.info(
            "Stored benefits for patient %s (deductible %.2f/%.2f, oop %.2f/%s)",
            patient_id,
            benefits.deductible_met,
            benefits.deductible_total,
            benefits.oop_met,
            benefits.oop_max,
        )
        return benefits

    def load(self, patient_id: str) -> InsuranceBenefitState:
        path = self._path(patient_id)
        if not path.exists():
            raise FileNotFoundError(f"benefits not found for patient {patient_id}")
        with open(path, "r", encoding="utf-8") as fh:
            return InsuranceBenefitState.model_validate(json.load(fh))

    def delete(self, patient_id: str) -> bool:
        path = self._path(patient_id)
        if not path.exists():
            return False
        path.unlink()
        LOGGER.info("Removed stored benefits for patient %s", patient_id)
        return True
