"""Normalize X12 271 eligibility responses (JSON form) into benefit snapshots.

The response is expected to have been fetched already by the clearinghouse
client; this module only reads it. Only individual, in-network benefit rows
are considered, matching how the practice quotes patients at checkout.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Iterable, Mapping, Sequence

from dermbill.billing_calculator import BillingError
from dermbill.config import HDHP_DEDUCTIBLE_THRESHOLD
from dermbill.models import InsuranceBenefitState, ParsedEligibility, ServiceCategory

LOGGER = logging.getLogger(__name__)

# 271 EB01 benefit codes
ACTIVE_COVERAGE = "1"
COINSURANCE = "A"
COPAYMENT = "B"
DEDUCTIBLE = "C"
OUT_OF_POCKET = "G"

# EB06 time period qualifiers
REMAINING = "29"
YEAR_TO_DATE = "32"

# EB03 service types: office visit / medical care, specialist / consultation
_OFFICE_VISIT_TYPES = ("98", "1")
_SPECIALIST_TYPES = ("A4", "3")
_DEFAULT_COINSURANCE_PERCENT = 20.0
_NUMBER_PATTERN = re.compile(r"[^0-9.]")


class EligibilityParseError(BillingError):
    """Raised when an eligibility payload cannot be interpreted."""


def _parse_number(raw: Any) -> float | None:
    if raw is None:
        return None
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        return float(raw)
    cleaned = _NUMBER_PATTERN.sub("", str(raw))
    if not cleaned:
        return None
    try:
        return float(cleaned)
    except ValueError:
        return None


def _find_benefit(
    benefits: Sequence[Mapping[str, Any]],
    code: str,
    time_qualifier: str | None = None,
    exclude_qualifiers: Iterable[str] = (),
) -> Mapping[str, Any] | None:
    excluded = set(exclude_qualifiers)
    for entry in benefits:
        if entry.get("code") != code:
            continue
        if entry.get("coverageLevelCode") not in (None, "IND"):
            continue
        if entry.get("inPlanNetworkIndicatorCode") not in (None, "Y"):
            continue
        qualifier = entry.get("timeQualifierCode")
        if time_qualifier is not None and qualifier != time_qualifier:
            continue
        if qualifier in excluded:
            continue
        return entry
    return None


def _find_copay(benefits: Sequence[Mapping[str, Any]], service_types: Sequence[str]) -> float | None:
    for entry in benefits:
        if entry.get("code") != COPAYMENT or entry.get("inPlanNetworkIndicatorCode") != "Y":
            continue
        if any(code in service_types for code in entry.get("serviceTypeCodes") or []):
            return _parse_number(entry.get("benefitAmount"))
    return None


def _has_coverage(benefits: Sequence[Mapping[str, Any]], service_types: Sequence[str]) -> bool:
    return any(
        entry.get("code") == ACTIVE_COVERAGE
        and any(code in service_types for code in entry.get("serviceTypeCodes") or [])
        for entry in benefits
    )


def _requires_prior_auth(benefits: Sequence[Mapping[str, Any]]) -> bool:
    for entry in benefits:
        for info in entry.get("additionalInformation") or []:
            text = str((info or {}).get("description") or "").lower()
            if "prior auth" in text or "preauthorization" in text:
                return True
    return False


def _detect_plan_type(plan_info: Mapping[str, Any]) -> str:
    combined = " ".join(
        str(plan_info.get(key) or "") for key in ("planNumber", "planDescription", "groupName")
    ).upper()
    if "HDHP" in combined or "HSA" in combined:
        return "HDHP"
    for plan_type in ("HMO", "PPO", "EPO", "POS"):
        if plan_type in combined:
            return plan_type
    return "OTHER"


def _accumulator(
    benefits: Sequence[Mapping[str, Any]], code: str
) -> tuple[float | None, float]:
    """Return (total, met) for a deductible or out-of-pocket accumulator; total is None when not reported."""

    def _amount(entry: Mapping[str, Any] | None) -> float | None:
        return _parse_number(entry.get("benefitAmount")) if entry else None

    total = _amount(_find_benefit(benefits, code, exclude_qualifiers=(REMAINING, YEAR_TO_DATE)))
    remaining = _amount(_find_benefit(benefits, code, time_qualifier=REMAINING))
    met = _amount(_find_benefit(benefits, code, time_qualifier=YEAR_TO_DATE))

    if total is None:
        return None, max(met or 0.0, 0.0)
    if met is None:
        met = total - remaining if remaining is not None else 0.0
    return total, min(max(met, 0.0), total)


def parse_eligibility_response(payload: Mapping[str, Any]) -> ParsedEligibility:
    """Turn a 271 eligibility response into plan status, coverage flags and a benefit snapshot."""

    if not isinstance(payload, Mapping):
        raise EligibilityParseError("Eligibility response must be a JSON object")

    raw_benefits = payload.get("benefitsInformation") or []
    if not isinstance(raw_benefits, list):
        raise EligibilityParseError("benefitsInformation must be a list")
    benefits = [entry for entry in raw_benefits if isinstance(entry, Mapping)]

    statuses = payload.get("planStatus") or []
    plan_status = statuses[0] if isinstance(statuses, list) and statuses and isinstance(statuses[0], Mapping) else {}
    status_text = str(plan_status.get("status") or "")
    is_active = plan_status.get("statusCode") == "1" or "active" in status_text.lower()
    if "inactive" in status_text.lower():
        is_active = False

    plan_info = payload.get("planInformation") or {}
    subscriber = payload.get("subscriber") or {}
    payer = payload.get("payer") or {}

    deductible_total, deductible_met = _accumulator(benefits, DEDUCTIBLE)
    if deductible_total is None:
        deductible_total, deductible_met = 0.0, 0.0
    oop_max, oop_met = _accumulator(benefits, OUT_OF_POCKET)
    if oop_max is None:
        LOGGER.warning("Eligibility response has no out-of-pocket maximum; patient cost sharing will be uncapped")

    coinsurance_entry = _find_benefit(benefits, COINSURANCE)
    coinsurance_fraction = _parse_number((coinsurance_entry or {}).get("benefitPercent"))
    coinsurance_percent = (
        round(coinsurance_fraction * 100, 2) if coinsurance_fraction is not None else _DEFAULT_COINSURANCE_PERCENT
    )

    copays: dict[str, float] = {}
    office_copay = _find_copay(benefits, _OFFICE_VISIT_TYPES)
    specialist_copay = _find_copay(benefits, _SPECIALIST_TYPES)
    visit_copay = specialist_copay if specialist_copay is not None else office_copay
    if visit_copay is not None:
        copays[ServiceCategory.EVALUATION_MANAGEMENT.value] = visit_copay

    plan_type = _detect_plan_type(plan_info)
    is_hdhp = plan_type == "HDHP" or deductible_total >= HDHP_DEDUCTIBLE_THRESHOLD

    member_id = str(subscriber.get("memberId") or "")
    first = str(subscriber.get("firstName") or "").strip()
    last = str(subscriber.get("lastName") or "").strip()

    snapshot = InsuranceBenefitState(
        carrier=payer.get("name"),
        plan=plan_info.get("planNumber") or plan_info.get("planDescription"),
        member_id=member_id or None,
        deductible_total=deductible_total,
        deductible_met=deductible_met,
        oop_max=oop_max,
        oop_met=oop_met,
        coinsurance_percent=coinsurance_percent,
        copays=copays,
        is_hdhp=is_hdhp,
    )

    LOGGER.info(
        "Parsed eligibility for member %s: active=%s plan_type=%s hdhp=%s",
        member_id or "<unknown>",
        is_active,
        plan_type,
        is_hdhp,
    )

    return ParsedEligibility(
        is_active=is_active,
        status_message=status_text or ("Active Coverage" if is_active else "Inactive or Unknown"),
        plan_name=plan_info.get("planNumber"),
        group_number=plan_info.get("groupNumber"),
        group_name=plan_info.get("groupName"),
        member_id=member_id,
        subscriber_name=f"{first} {last}".strip(),
        plan_type=plan_type,  # type: ignore[arg-type]
        is_hdhp=is_hdhp,
        benefits=snapshot,
        coverage={
            "preventive_care": _has_coverage(benefits, ("A7",)),
            "dermatology_visits": _has_coverage(benefits, ("98", "1", "A4")),
            "surgical_procedures": _has_coverage(benefits, ("2",)),
            "diagnostic_lab": _has_coverage(benefits, ("5",)),
        },
        prior_auth_required=_requires_prior_auth(benefits),
    )
