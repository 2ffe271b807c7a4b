"""CPT code catalog for dermatology charges: service categories, labels and default fees."""

from __future__ import annotations

from typing import Iterable

from dermbill.models import ServiceCategory

_EM = ServiceCategory.EVALUATION_MANAGEMENT
_SURGICAL = ServiceCategory.SURGICAL
_PATHOLOGY = ServiceCategory.PATHOLOGY
_DESTRUCTIVE = ServiceCategory.DESTRUCTIVE


def _tag(codes: Iterable[str], category: ServiceCategory) -> dict[str, ServiceCategory]:
    return {code: category for code in codes}


CPT_CATEGORIES: dict[str, ServiceCategory] = {
    # Office visits, new and established, plus online digital E&M
    **_tag(["99201", "99202", "99203", "99204", "99205"], _EM),
    **_tag(["99211", "99212", "99213", "99214", "99215"], _EM),
    **_tag(["99421", "99422", "99423"], _EM),
    # Excisions: benign (114xx) and malignant (116xx) lesions
    **_tag([f"114{site}{size}" for site in "024" for size in "012346"], _SURGICAL),
    **_tag([f"116{site}{size}" for site in "024" for size in "012346"], _SURGICAL),
    # Mohs
    **_tag(["17311", "17312", "17313", "17314", "17315"], _SURGICAL),
    # Biopsies and path interpretation
    **_tag(["11102", "11103", "11104", "11105", "11106", "11107"], _PATHOLOGY),
    **_tag(["88305", "88307"], _PATHOLOGY),
    # Cryotherapy, electrosurgery, lesion destruction
    **_tag(["17000", "17003", "17004", "17110", "17111"], _DESTRUCTIVE),
    **_tag([f"17{block}{size}" for block in ("26", "27", "28") for size in "01234"], _DESTRUCTIVE),
    # Skin tag removal
    **_tag(["11300", "11301", "11302", "11303"], _DESTRUCTIVE),
}

CATEGORY_ORDER: tuple[ServiceCategory, ...] = (
    ServiceCategory.EVALUATION_MANAGEMENT,
    ServiceCategory.SURGICAL,
    ServiceCategory.PATHOLOGY,
    ServiceCategory.DESTRUCTIVE,
    ServiceCategory.OTHER,
)

_CATEGORY_LABELS: dict[ServiceCategory, str] = {
    ServiceCategory.EVALUATION_MANAGEMENT: "Office Visit (E&M)",
    ServiceCategory.SURGICAL: "Surgical Procedures",
    ServiceCategory.PATHOLOGY: "Pathology/Biopsy",
    ServiceCategory.DESTRUCTIVE: "Destructive Procedures",
    ServiceCategory.OTHER: "Other Services",
}

DEFAULT_FEES: dict[str, float] = {
    "99203": 175.0,
    "99204": 250.0,
    "99205": 350.0,
    "99213": 150.0,
    "99214": 200.0,
    "99215": 275.0,
    "11102": 250.0,
    "11104": 200.0,
    "11300": 175.0,
    "11301": 200.0,
    "11302": 225.0,
    "11303": 250.0,
    "17000": 150.0,
    "17110": 175.0,
    "17111": 225.0,
}


def classify_procedure(code: str | None) -> ServiceCategory:
    """Return the service category for a CPT code, ``other`` when unknown."""

    if not code:
        return ServiceCategory.OTHER
    return CPT_CATEGORIES.get(code.strip(), ServiceCategory.OTHER)


def category_label(category: ServiceCategory) -> str:
    return _CATEGORY_LABELS[category]


def category_rank(category: ServiceCategory) -> int:
    return CATEGORY_ORDER.index(category)


def default_fee(code: str) -> float | None:
    return DEFAULT_FEES.get(code.strip())
