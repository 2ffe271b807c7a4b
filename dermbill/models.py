"""Shared data models for DermBill's billing services."""

from __future__ import annotations

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator
from pydantic.alias_generators import to_camel


class ChargeCategory(str, Enum):
	"""Billing bucket a charge belongs to; only medical charges are insurable."""

	MEDICAL = "medical"
	COSMETIC = "cosmetic"
	PRODUCT = "product"


class ServiceCategory(str, Enum):
	"""Procedure family derived from the CPT code of a medical charge."""

	EVALUATION_MANAGEMENT = "evaluation_management"
	SURGICAL = "surgical"
	PATHOLOGY = "pathology"
	DESTRUCTIVE = "destructive"
	OTHER = "other"


class CamelModel(BaseModel):
	"""Base model exchanging camelCase JSON while keeping snake_case attributes."""

	model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _coerce_id(value: Any) -> Any:
	if isinstance(value, (int, float)) and not isinstance(value, bool):
		return str(value)
	return value


class Charge(CamelModel):
	"""A priced billable event submitted for calculation."""

	model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

	id: str
	amount: float
	category: ChargeCategory = ChargeCategory.MEDICAL
	code: str | None = None
	description: str | None = None

	@field_validator("id", mode="before")
	@classmethod
	def normalize_id(cls, value: Any) -> Any:
		return _coerce_id(value)


class InsuranceBenefitState(CamelModel):
	"""Snapshot of a patient's plan accumulators and cost-sharing rules."""

	model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

	carrier: str | None = None
	plan: str | None = None
	member_id: str | None = None
	deductible_total: float
	deductible_met: float = 0.0
	# None when the payer reports no out-of-pocket maximum; cost sharing is then uncapped
	oop_max: float | None = None
	oop_met: float = 0.0
	coinsurance_percent: float = 0.0
	copays: dict[str, float] = Field(default_factory=dict)
	is_hdhp: bool = Field(default=False, alias="isHDHP")

	@computed_field(alias="deductibleRemaining")  # type: ignore[prop-decorator]
	@property
	def deductible_remaining(self) -> float:
		return round(max(0.0, self.deductible_total - self.deductible_met), 2)

	@computed_field(alias="oopRemaining")  # type: ignore[prop-decorator]
	@property
	def oop_remaining(self) -> float | None:
		if self.oop_max is None:
			return None
		return round(max(0.0, self.oop_max - self.oop_met), 2)


class ChargeAllocation(CamelModel):
	"""How a single charge was split between the patient and the insurer."""

	id: str
	code: str | None = None
	category: ChargeCategory
	service_category: ServiceCategory | None = None
	amount: float
	to_deductible: float = 0.0
	to_coinsurance: float = 0.0
	to_copay: float = 0.0
	to_not_covered: float = 0.0
	to_hsa_eligible: float = 0.0
	insurer_paid: float = 0.0
	patient_responsibility: float = 0.0
	breakdown: list[str] = Field(default_factory=list)


class CalculationTotals(CamelModel):
	amount: float = 0.0
	deductible: float = 0.0
	coinsurance: float = 0.0
	copay: float = 0.0
	not_covered: float = 0.0
	hsa_eligible: float = 0.0
	insurer_paid: float = 0.0
	patient_responsibility: float = 0.0


class DeductibleAllocation(CamelModel):
	"""Deductible consumed by one service category during the waterfall."""

	service_category: ServiceCategory
	label: str
	charges_in_category: float
	deductible_applied: float
	remaining_after: float


class CalculationResult(CamelModel):
	"""Deductible waterfall, totals and notes for one calculation run."""

	charges: list[ChargeAllocation]
	totals: CalculationTotals
	deductible_waterfall: list[DeductibleAllocation] = Field(default_factory=list)
	updated_benefits: InsuranceBenefitState
	summary: list[str] = Field(default_factory=list)


class SelfPayLine(CamelModel):
	id: str
	code: str | None = None
	category: ChargeCategory
	amount: float
	discount: float
	patient_responsibility: float


class SelfPayResult(CamelModel):
	"""Discounted pricing for a patient without insurance."""

	charges: list[SelfPayLine]
	subtotal: float
	discount_percent: float
	total_discount: float
	total_due: float


class ProcedureLine(CamelModel):
	"""A coded procedure from an encounter, priced later from a fee schedule."""

	code: str
	units: int = 1
	description: str | None = None
	id: str | None = None

	@field_validator("id", mode="before")
	@classmethod
	def normalize_id(cls, value: Any) -> Any:
		return _coerce_id(value)


class ParsedEligibility(CamelModel):
	"""Normalized view of a 271 eligibility response."""

	is_active: bool
	status_message: str
	plan_name: str | None = None
	group_number: str | None = None
	group_name: str | None = None
	member_id: str = ""
	subscriber_name: str = ""
	plan_type: Literal["PPO", "HMO", "HDHP", "EPO", "POS", "OTHER"] = "OTHER"
	is_hdhp: bool = Field(default=False, alias="isHDHP")
	benefits: InsuranceBenefitState
	coverage: dict[str, bool] = Field(default_factory=dict)
	prior_auth_required: bool = False


OrderMode = Literal["supplied", "category"]


class CalculateRequest(CamelModel):
	"""Charges plus the benefit snapshot they should be adjudicated against."""

	charges: list[Charge]
	benefits: InsuranceBenefitState
	order: OrderMode = "supplied"


class ExplainRequest(CalculateRequest):
	persona: str = "patient"
	language: str = "en"


class ExportRequest(ExplainRequest):
	patient_name: str | None = None


class ApplyRequest(CamelModel):
	"""Charges to run against a patient's stored benefit state."""

	charges: list[Charge]
	order: OrderMode = "supplied"


class SelfPayRequest(CamelModel):
	charges: list[Charge]
	discount_percent: float | None = None


class EstimateRequest(CamelModel):
	"""Checkout estimate from coded procedures; self-pay when no benefits are supplied."""

	procedures: list[ProcedureLine]
	fee_schedule: dict[str, float] | None = None
	benefits: InsuranceBenefitState | None = None
	order: OrderMode = "supplied"
	discount_percent: float | None = None


class EligibilityParseRequest(CamelModel):
	response: dict[str, Any]
	patient_id: str | None = None
