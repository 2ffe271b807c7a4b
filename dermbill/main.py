"""FastAPI application exposing DermBill's checkout billing services."""

from __future__ import annotations

import hashlib
import json
import logging
from io import BytesIO
from typing import Any, Callable, TypeVar

from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import RedirectResponse, StreamingResponse

from dermbill.benefit_store import BenefitStore
from dermbill.billing_calculator import (
	BillingError,
	build_charges,
	calculate_patient_responsibility,
	calculate_self_pay,
	order_charges_by_category,
	result_payload,
)
from dermbill.config import DATA_ROOT, LOG_LEVEL, USE_GEMINI
from dermbill.copywriter import explain_estimate
from dermbill.eligibility import parse_eligibility_response
from dermbill.exporter import build_estimate_docx, build_estimate_pdf
from dermbill.llm_adapters.gemini_adapter import NotConfigured, verbalize
from dermbill.models import (
	ApplyRequest,
	CalculateRequest,
	CalculationResult,
	Charge,
	EligibilityParseRequest,
	EstimateRequest,
	ExplainRequest,
	ExportRequest,
	InsuranceBenefitState,
	OrderMode,
	SelfPayRequest,
)
from dermbill.procedure_codes import category_label, classify_procedure, default_fee

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
LOGGER = logging.getLogger(__name__)

VERSION = "0.1.0"
DOCX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"

T = TypeVar("T")


def _with_audit_hash(payload: dict[str, Any]) -> dict[str, Any]:
	material = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
	hash_value = hashlib.sha256(material.encode("utf-8")).hexdigest()
	response = dict(payload)
	response["auditHash"] = hash_value
	return response


def _billing_call(func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
	"""Run a billing operation, translating input-validation failures into HTTP 400."""

	try:
		return func(*args, **kwargs)
	except BillingError as exc:
		LOGGER.info("Rejected billing request: %s: %s", type(exc).__name__, exc)
		raise HTTPException(status_code=400, detail=f"{type(exc).__name__}: {exc}") from exc


def _ordered(charges: list[Charge], order: OrderMode) -> list[Charge]:
	if order == "category":
		return order_charges_by_category(charges)
	return list(charges)


def _calculate(charges: list[Charge], benefits: InsuranceBenefitState, order: OrderMode) -> CalculationResult:
	return _billing_call(calculate_patient_responsibility, _ordered(charges, order), benefits)


def get_benefit_store() -> BenefitStore:
	return BenefitStore(DATA_ROOT)


app = FastAPI(title="DermBill", version=VERSION)

app.add_middleware(
	CORSMiddleware,
	allow_origins=["*"],
	allow_credentials=True,
	allow_methods=["*"],
	allow_headers=["*"],
)


@app.get("/", include_in_schema=False)
def root() -> RedirectResponse:
	"""Redirect callers to the interactive documentation."""
	return RedirectResponse(url="/docs")


@app.get("/health")
async def health_check() -> dict[str, object]:
	"""Return readiness metadata for external monitors."""
	return {"ok": True, "service": "DermBill", "version": VERSION}


@app.get("/codes/{code}")
async def code_lookup(code: str) -> dict[str, object]:
	"""Return the service category, label and default fee for a CPT code."""

	category = classify_procedure(code)
	return {
		"code": code,
		"serviceCategory": category.value,
		"label": category_label(category),
		"defaultFee": default_fee(code),
	}


@app.post("/billing/calculate")
async def billing_calculate(request: CalculateRequest) -> dict[str, object]:
	"""Run the deductible waterfall for the supplied charges and benefit snapshot."""

	result = _calculate(request.charges, request.benefits, request.order)
	return _with_audit_hash(result_payload(result))


@app.post("/billing/self_pay")
async def billing_self_pay(request: SelfPayRequest) -> dict[str, object]:
	"""Price charges for an uninsured patient with the self-pay discount."""

	result = _billing_call(calculate_self_pay, request.charges, request.discount_percent)
	return _with_audit_hash(result_payload(result))


@app.post("/billing/estimate")
async def billing_estimate(request: EstimateRequest) -> dict[str, object]:
	"""Checkout estimate from coded procedures; insured when benefits are given, self-pay otherwise."""

	charges = _billing_call(build_charges, request.procedures, request.fee_schedule)
	if request.benefits is None:
		result = _billing_call(calculate_self_pay, charges, request.discount_percent)
		return _with_audit_hash({"mode": "self_pay", "result": result_payload(result)})

	insured = _calculate(charges, request.benefits, request.order)
	return _with_audit_hash({"mode": "insured", "result": result_payload(insured)})


@app.post("/billing/explain")
async def billing_explain(request: ExplainRequest) -> dict[str, object]:
	"""Calculate and return a plain-language explanation alongside the result."""

	result = _calculate(request.charges, request.benefits, request.order)
	try:
		explanation = explain_estimate(result, persona=request.persona, language=request.language)
	except ValueError as exc:
		raise HTTPException(status_code=400, detail=str(exc)) from exc

	source = "template"
	if USE_GEMINI:
		try:
			explanation = verbalize(request.persona, result_payload(result))
			source = "gemini"
		except NotConfigured as exc:
			LOGGER.warning("Gemini explanation unavailable, using template copy: %s", exc)
		except Exception as exc:
			LOGGER.warning("Gemini explanation failed, using template copy: %s: %s", type(exc).__name__, exc)

	payload = result_payload(result)
	payload["explanation"] = explanation
	payload["explanationSource"] = source
	return _with_audit_hash(payload)


@app.get("/patients/{patient_id}/benefits")
async def benefits_get(patient_id: str, store: BenefitStore = Depends(get_benefit_store)) -> dict[str, object]:
	"""Return the stored benefit snapshot for a patient."""

	try:
		benefits = store.load(patient_id)
	except FileNotFoundError:
		raise HTTPException(status_code=404, detail="benefits not found")
	except ValueError as exc:
		raise HTTPException(status_code=400, detail=str(exc)) from exc

	return _with_audit_hash(
		{"patientId": patient_id, "benefits": benefits.model_dump(mode="json", by_alias=True)}
	)


@app.put("/patients/{patient_id}/benefits")
async def benefits_put(
	patient_id: str,
	benefits: InsuranceBenefitState,
	store: BenefitStore = Depends(get_benefit_store),
) -> dict[str, object]:
	"""Store or replace a patient's benefit snapshot."""

	try:
		saved = store.save(patient_id, benefits)
	except ValueError as exc:
		# BillingError is a ValueError; both are caller mistakes here
		raise HTTPException(status_code=400, detail=f"{type(exc).__name__}: {exc}") from exc

	return _with_audit_hash(
		{"status": "ok", "patientId": patient_id, "benefits": saved.model_dump(mode="json", by_alias=True)}
	)


@app.post("/patients/{patient_id}/benefits/apply")
async def benefits_apply(
	patient_id: str,
	request: ApplyRequest,
	store: BenefitStore = Depends(get_benefit_store),
) -> dict[str, object]:
	"""Adjudicate charges against the stored snapshot and persist the updated accumulators."""

	try:
		benefits = store.load(patient_id)
	except FileNotFoundError:
		raise HTTPException(status_code=404, detail="benefits not found")
	except ValueError as exc:
		raise HTTPException(status_code=400, detail=str(exc)) from exc

	result = _calculate(request.charges, benefits, request.order)
	store.save(patient_id, result.updated_benefits)
	LOGGER.info(
		"Applied %d charge(s) for patient %s; patient responsibility %.2f",
		len(result.charges),
		patient_id,
		result.totals.patient_responsibility,
	)
	return _with_audit_hash({"patientId": patient_id, "result": result_payload(result)})


@app.post("/eligibility/parse")
async def eligibility_parse(
	request: EligibilityParseRequest,
	store: BenefitStore = Depends(get_benefit_store),
) -> dict[str, object]:
	"""Normalize a 271 eligibility response; store the snapshot when a patient id is supplied."""

	parsed = _billing_call(parse_eligibility_response, request.response)
	stored = False
	if request.patient_id:
		try:
			store.save(request.patient_id, parsed.benefits)
		except ValueError as exc:
			raise HTTPException(status_code=400, detail=f"{type(exc).__name__}: {exc}") from exc
		stored = True

	payload = parsed.model_dump(mode="json", by_alias=True)
	payload["stored"] = stored
	return _with_audit_hash(payload)


def _export(request: ExportRequest, builder: Callable[..., bytes]) -> bytes:
	result = _calculate(request.charges, request.benefits, request.order)
	try:
		return builder(
			result,
			persona=request.persona,
			language=request.language,
			patient_name=request.patient_name,
		)
	except ValueError as exc:
		raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.post("/export/estimate_docx")
async def export_estimate_docx(request: ExportRequest) -> StreamingResponse:
	"""Export the checkout estimate as a DOCX file."""

	docx_bytes = _export(request, build_estimate_docx)
	headers = {"Content-Disposition": 'attachment; filename="estimate.docx"'}
	return StreamingResponse(BytesIO(docx_bytes), media_type=DOCX_MEDIA_TYPE, headers=headers)


@app.post("/export/estimate_pdf")
async def export_estimate_pdf(request: ExportRequest) -> StreamingResponse:
	"""Export the checkout estimate as a PDF."""

	pdf_bytes = _export(request, build_estimate_pdf)
	headers = {"Content-Disposition": 'attachment; filename="estimate.pdf"'}
	return StreamingResponse(BytesIO(pdf_bytes), media_type="application/pdf", headers=headers)
