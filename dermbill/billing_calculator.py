"""Deductible waterfall, copay/coinsurance allocation and self-pay pricing for visit charges."""

from __future__ import annotations

import logging
import math
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Iterable, Mapping, Sequence

from dermbill.config import SELF_PAY_DISCOUNT_PERCENT
from dermbill.models import (
	CalculationResult,
	CalculationTotals,
	Charge,
	ChargeAllocation,
	ChargeCategory,
	DeductibleAllocation,
	InsuranceBenefitState,
	ProcedureLine,
	SelfPayLine,
	SelfPayResult,
	ServiceCategory,
)
from dermbill.procedure_codes import category_label, category_rank, classify_procedure, default_fee

LOGGER = logging.getLogger(__name__)

_CENT = Decimal("0.01")
_COPAY_KEYS = {category.value for category in ServiceCategory} | {ChargeCategory.MEDICAL.value}


class BillingError(ValueError):
	"""Base class for billing input-validation failures."""


class InvalidChargeError(BillingError):
	"""Raised when a charge is malformed, non-positive or duplicated."""


class InconsistentBenefitStateError(BillingError):
	"""Raised when a benefit snapshot violates its accumulator invariants."""


def _cents(value: float) -> float:
	return float(Decimal(repr(value)).quantize(_CENT, rounding=ROUND_HALF_UP)) + 0.0


def format_currency(amount: float) -> str:
	"""Render a USD amount such as ``$1,234.50``."""

	value = _cents(amount)
	if value < 0:
		return f"-${abs(value):,.2f}"
	return f"${value:,.2f}"


def _format_percent(value: float) -> str:
	return f"{value:g}%"


def _validate_charges(charges: Sequence[Charge]) -> None:
	if not charges:
		raise InvalidChargeError("At least one charge is required")

	seen: set[str] = set()
	for charge in charges:
		if not math.isfinite(charge.amount) or _cents(charge.amount) <= 0:
			raise InvalidChargeError(
				f"Charge '{charge.id}' has invalid amount {charge.amount!r}; amounts must be positive"
			)
		if charge.id in seen:
			raise InvalidChargeError(f"Duplicate charge id '{charge.id}'")
		seen.add(charge.id)


def validate_benefits(benefits: InsuranceBenefitState) -> None:
	"""Reject benefit snapshots whose accumulators or cost-sharing rules are impossible."""

	for name in ("deductible_total", "deductible_met", "oop_max", "oop_met", "coinsurance_percent"):
		value = getattr(benefits, name)
		if value is None:
			continue
		if not math.isfinite(value) or value < 0:
			raise InconsistentBenefitStateError(f"{name} must be a non-negative number, got {value!r}")

	if benefits.deductible_met > benefits.deductible_total:
		raise InconsistentBenefitStateError(
			f"deductible_met ({benefits.deductible_met:.2f}) exceeds deductible_total "
			f"({benefits.deductible_total:.2f})"
		)
	if benefits.oop_max is not None and benefits.oop_met > benefits.oop_max:
		raise InconsistentBenefitStateError(
			f"oop_met ({benefits.oop_met:.2f}) exceeds oop_max ({benefits.oop_max:.2f})"
		)
	if benefits.coinsurance_percent > 100:
		raise InconsistentBenefitStateError("coinsurance_percent must be between 0 and 100")

	for key, amount in benefits.copays.items():
		if key not in _COPAY_KEYS:
			raise InconsistentBenefitStateError(f"Unknown copay category '{key}'")
		if not math.isfinite(amount) or amount < 0:
			raise InconsistentBenefitStateError(f"copays.{key} must be a non-negative number")


def _copay_for(service: ServiceCategory, copays: Mapping[str, float]) -> float | None:
	if service.value in copays:
		return copays[service.value]
	return copays.get(ChargeCategory.MEDICAL.value)


def _not_covered_allocation(charge: Charge) -> ChargeAllocation:
	amount = _cents(charge.amount)
	return ChargeAllocation(
		id=charge.id,
		code=charge.code,
		category=charge.category,
		amount=amount,
		to_not_covered=amount,
		patient_responsibility=amount,
		breakdown=[
			f"Fee: {format_currency(amount)}",
			f"{charge.category.value.capitalize()} service not covered by insurance",
		],
	)


def _totals(allocations: Iterable[ChargeAllocation]) -> CalculationTotals:
	totals: dict[str, float] = {
		"amount": 0.0,
		"deductible": 0.0,
		"coinsurance": 0.0,
		"copay": 0.0,
		"not_covered": 0.0,
		"hsa_eligible": 0.0,
		"insurer_paid": 0.0,
		"patient_responsibility": 0.0,
	}
	for item in allocations:
		totals["amount"] += item.amount
		totals["deductible"] += item.to_deductible
		totals["coinsurance"] += item.to_coinsurance
		totals["copay"] += item.to_copay
		totals["not_covered"] += item.to_not_covered
		totals["hsa_eligible"] += item.to_hsa_eligible
		totals["insurer_paid"] += item.insurer_paid
		totals["patient_responsibility"] += item.patient_responsibility
	return CalculationTotals(**{key: _cents(value) for key, value in totals.items()})


def calculate_patient_responsibility(
	charges: Sequence[Charge],
	benefits: InsuranceBenefitState,
) -> CalculationResult:
	"""Run the deductible waterfall over ``charges`` in the order supplied.

	Each medical charge first draws down the remaining deductible, then pays a
	copay when the plan has one for the charge's category, otherwise coinsurance
	on what is left. Patient cost sharing stops once the out-of-pocket maximum
	is reached. Cosmetic and product charges are not covered and are passed to
	the patient in full without touching the accumulators.

	The input snapshot is left untouched; the accumulators after the last charge
	are returned as ``updated_benefits`` for the caller to persist.
	"""

	charges = list(charges)
	_validate_charges(charges)
	validate_benefits(benefits)

	deductible_total = benefits.deductible_total
	oop_max = benefits.oop_max
	deductible_met = benefits.deductible_met
	oop_met = benefits.oop_met
	coinsurance_rate = benefits.coinsurance_percent / 100.0

	allocations: list[ChargeAllocation] = []
	waterfall: dict[ServiceCategory, dict[str, float]] = {}
	summary: list[str] = []
	oop_noted = False

	for position, charge in enumerate(charges, start=1):
		if charge.category is not ChargeCategory.MEDICAL:
			allocation = _not_covered_allocation(charge)
			allocations.append(allocation)
			summary.append(
				f"Charge {position} ({charge.category.value}) not covered by insurance: "
				f"{format_currency(allocation.amount)} due from patient"
			)
			continue

		amount = _cents(charge.amount)
		service = classify_procedure(charge.code)
		remaining_deductible = max(0.0, _cents(deductible_total - deductible_met))
		# no out-of-pocket maximum on file means cost sharing is uncapped
		remaining_oop = math.inf if oop_max is None else max(0.0, _cents(oop_max - oop_met))

		if remaining_oop <= 0 and not oop_noted:
			summary.append(f"Out-of-pocket maximum already met before charge {position}; insurance pays 100%")
			oop_noted = True

		to_deductible = _cents(min(amount, remaining_deductible, remaining_oop))
		after_deductible = _cents(amount - to_deductible)
		cost_share_cap = max(0.0, remaining_oop - to_deductible)

		copay = _copay_for(service, benefits.copays)
		to_copay = 0.0
		to_coinsurance = 0.0
		if after_deductible > 0:
			if copay is not None:
				to_copay = _cents(min(after_deductible, copay, cost_share_cap))
			else:
				to_coinsurance = _cents(min(_cents(after_deductible * coinsurance_rate), cost_share_cap))

		patient_responsibility = _cents(to_deductible + to_copay + to_coinsurance)
		insurer_paid = _cents(amount - patient_responsibility)
		to_hsa_eligible = patient_responsibility if benefits.is_hdhp else 0.0

		deductible_met = min(deductible_total, _cents(deductible_met + to_deductible))
		if oop_max is None:
			oop_met = _cents(oop_met + patient_responsibility)
		else:
			oop_before = oop_met
			oop_met = min(oop_max, _cents(oop_met + patient_responsibility))
			if oop_before < oop_max and oop_met >= oop_max:
				summary.append(f"Out-of-pocket maximum reached on charge {position}")
				oop_noted = True

		breakdown = [f"Fee: {format_currency(amount)}"]
		if to_deductible > 0:
			breakdown.append(f"Deductible applied: {format_currency(to_deductible)}")
		if to_copay > 0:
			breakdown.append(f"{category_label(service)} copay: {format_currency(to_copay)}")
		if to_coinsurance > 0:
			breakdown.append(
				f"{_format_percent(benefits.coinsurance_percent)} coinsurance: {format_currency(to_coinsurance)}"
			)
		if insurer_paid > 0:
			breakdown.append(f"Insurance pays: {format_currency(insurer_paid)}")

		allocations.append(
			ChargeAllocation(
				id=charge.id,
				code=charge.code,
				category=charge.category,
				service_category=service,
				amount=amount,
				to_deductible=to_deductible,
				to_coinsurance=to_coinsurance,
				to_copay=to_copay,
				to_hsa_eligible=to_hsa_eligible,
				insurer_paid=insurer_paid,
				patient_responsibility=patient_responsibility,
				breakdown=breakdown,
			)
		)

		bucket = waterfall.setdefault(service, {"charges": 0.0, "applied": 0.0, "remaining": 0.0})
		bucket["charges"] += amount
		bucket["applied"] += to_deductible
		bucket["remaining"] = max(0.0, _cents(deductible_total - deductible_met))

	totals = _totals(allocations)
	deductible_waterfall = [
		DeductibleAllocation(
			service_category=service,
			label=category_label(service),
			charges_in_category=_cents(bucket["charges"]),
			deductible_applied=_cents(bucket["applied"]),
			remaining_after=bucket["remaining"],
		)
		for service, bucket in waterfall.items()
	]

	updated_benefits = benefits.model_copy(update={"deductible_met": deductible_met, "oop_met": oop_met}, deep=True)

	if totals.deductible > 0:
		summary.append(f"{format_currency(totals.deductible)} applied to deductible")
		summary.append(
			f"Deductible remaining after visit: {format_currency(updated_benefits.deductible_remaining)}"
		)
	if totals.copay > 0:
		summary.append(f"Copays collected: {format_currency(totals.copay)}")
	if totals.coinsurance > 0:
		summary.append(
			f"Patient coinsurance ({_format_percent(benefits.coinsurance_percent)}): "
			f"{format_currency(totals.coinsurance)}"
		)
	if benefits.is_hdhp:
		summary.append(f"HSA-eligible amount: {format_currency(totals.hsa_eligible)}")
	if oop_max is None and any(item.service_category is not None for item in allocations):
		summary.append("No out-of-pocket maximum on file; patient cost sharing is not capped")

	LOGGER.debug(
		"Calculated %d charge(s): patient %.2f, insurer %.2f, deductible met %.2f/%.2f, oop met %.2f/%s",
		len(allocations),
		totals.patient_responsibility,
		totals.insurer_paid,
		deductible_met,
		deductible_total,
		oop_met,
		oop_max,
	)

	return CalculationResult(
		charges=allocations,
		totals=totals,
		deductible_waterfall=deductible_waterfall,
		updated_benefits=updated_benefits,
		summary=summary,
	)


def order_charges_by_category(charges: Iterable[Charge]) -> list[Charge]:
	"""Stable-sort medical charges E&M -> surgical -> pathology -> destructive -> other, non-medical last."""

	def _key(charge: Charge) -> tuple[int, int]:
		if charge.category is not ChargeCategory.MEDICAL:
			return (1, 0)
		return (0, category_rank(classify_procedure(charge.code)))

	return sorted(charges, key=_key)


def build_charges(
	procedures: Iterable[ProcedureLine],
	fee_schedule: Mapping[str, float] | None = None,
) -> list[Charge]:
	"""Price coded procedures from the practice fee schedule, falling back to default fees."""

	charges: list[Charge] = []
	for index, line in enumerate(procedures, start=1):
		code = line.code.strip()
		if line.units < 1:
			raise InvalidChargeError(f"Procedure {code} must be billed for at least one unit")

		fee: float | None
		if fee_schedule is not None and code in fee_schedule:
			fee = fee_schedule[code]
		else:
			fee = default_fee(code)
		if fee is None:
			raise InvalidChargeError(f"No fee on file for CPT {code}")

		charges.append(
			Charge(
				id=line.id or str(index),
				amount=_cents(fee * line.units),
				category=ChargeCategory.MEDICAL,
				code=code,
				description=line.description,
			)
		)
	return charges


def calculate_self_pay(
	charges: Sequence[Charge],
	discount_percent: float | None = None,
) -> SelfPayResult:
	"""Apply the self-pay discount to medical charges; cosmetic and product lines stay at list price."""

	percent = SELF_PAY_DISCOUNT_PERCENT if discount_percent is None else discount_percent
	charges = list(charges)
	_validate_charges(charges)
	if not math.isfinite(percent) or not (0.0 <= percent <= 100.0):
		raise InvalidChargeError("discount_percent must be between 0 and 100")

	lines: list[SelfPayLine] = []
	for charge in charges:
		amount = _cents(charge.amount)
		discount = _cents(amount * percent / 100.0) if charge.category is ChargeCategory.MEDICAL else 0.0
		lines.append(
			SelfPayLine(
				id=charge.id,
				code=charge.code,
				category=charge.category,
				amount=amount,
				discount=discount,
				patient_responsibility=_cents(amount - discount),
			)
		)

	subtotal = _cents(sum(line.amount for line in lines))
	total_discount = _cents(sum(line.discount for line in lines))
	return SelfPayResult(
		charges=lines,
		subtotal=subtotal,
		discount_percent=percent,
		total_discount=total_discount,
		total_due=_cents(subtotal - total_discount),
	)


def result_payload(result: CalculationResult | SelfPayResult) -> dict[str, Any]:
	"""JSON-ready camelCase form of a calculation result."""

	return result.model_dump(mode="json", by_alias=True)
