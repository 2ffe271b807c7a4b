from __future__ import annotations

import logging
from io import BytesIO

import pytest
from fastapi.testclient import TestClient

from dermbill import main
from dermbill.benefit_store import BenefitStore
from dermbill.main import DOCX_MEDIA_TYPE, app, get_benefit_store


client = TestClient(app)

BENEFITS = {
	"deductibleTotal": 500,
	"deductibleMet": 0,
	"oopMax": 4000,
	"oopMet": 0,
	"coinsurancePercent": 20,
	"copays": {},
}
CHARGES = [
	{"id": 1, "amount": 300, "category": "medical"},
	{"id": 2, "amount": 400, "category": "medical"},
]


@pytest.fixture()
def store(tmp_path) -> BenefitStore:
	benefit_store = BenefitStore(tmp_path)
	app.dependency_overrides[get_benefit_store] = lambda: benefit_store
	yield benefit_store
	app.dependency_overrides.pop(get_benefit_store, None)


def test_health() -> None:
	response = client.get("/health")
	assert response.status_code == 200
	assert response.json()["ok"] is True


def test_code_lookup() -> None:
	payload = client.get("/codes/99213").json()
	assert payload["serviceCategory"] == "evaluation_management"
	assert payload["label"] == "Office Visit (E&M)"
	assert payload["defaultFee"] == 150.0

	unknown = client.get("/codes/J3301").json()
	assert unknown["serviceCategory"] == "other"
	assert unknown["defaultFee"] is None


def test_calculate_uses_camel_case_and_audit_hash() -> None:
	response = client.post("/billing/calculate", json={"charges": CHARGES, "benefits": BENEFITS})
	assert response.status_code == 200
	data = response.json()

	first, second = data["charges"]
	assert first["toDeductible"] == 300.0
	assert first["patientResponsibility"] == 300.0
	assert second["toDeductible"] == 200.0
	assert second["toCoinsurance"] == 40.0
	assert second["patientResponsibility"] == 240.0

	assert data["totals"]["patientResponsibility"] == 540.0
	assert data["updatedBenefits"]["deductibleMet"] == 500.0
	assert data["updatedBenefits"]["deductibleRemaining"] == 0.0
	assert data["updatedBenefits"]["isHDHP"] is False
	assert len(data["auditHash"]) == 64


def test_audit_hash_is_stable() -> None:
	body = {"charges": CHARGES, "benefits": BENEFITS}
	first = client.post("/billing/calculate", json=body).json()
	second = client.post("/billing/calculate", json=body).json()
	assert first["auditHash"] == second["auditHash"]


def test_category_order_runs_office_visit_first() -> None:
	charges = [
		{"id": "cryo", "amount": 150, "code": "17000"},
		{"id": "visit", "amount": 150, "code": "99213"},
	]
	data = client.post(
		"/billing/calculate",
		json={"charges": charges, "benefits": BENEFITS, "order": "category"},
	).json()

	assert [item["id"] for item in data["charges"]] == ["visit", "cryo"]
	assert data["deductibleWaterfall"][0]["label"] == "Office Visit (E&M)"


def test_calculate_rejects_inconsistent_benefits() -> None:
	benefits = {**BENEFITS, "deductibleMet": 600}
	response = client.post("/billing/calculate", json={"charges": CHARGES, "benefits": benefits})

	assert response.status_code == 400
	assert response.json()["detail"].startswith("InconsistentBenefitStateError")


def test_calculate_rejects_non_positive_amount() -> None:
	response = client.post(
		"/billing/calculate",
		json={"charges": [{"id": 1, "amount": 0}], "benefits": BENEFITS},
	)
	assert response.status_code == 400
	assert response.json()["detail"].startswith("InvalidChargeError")


def test_calculate_rejects_unknown_category() -> None:
	response = client.post(
		"/billing/calculate",
		json={"charges": [{"id": 1, "amount": 100, "category": "laser"}], "benefits": BENEFITS},
	)
	assert response.status_code == 422


def test_self_pay() -> None:
	response = client.post(
		"/billing/self_pay",
		json={"charges": [{"id": "a", "amount": 200}], "discountPercent": 10},
	)
	assert response.status_code == 200
	data = response.json()
	assert data["totalDiscount"] == 20.0
	assert data["totalDue"] == 180.0
	assert "auditHash" in data


def test_estimate_self_pay_without_benefits() -> None:
	body = {"procedures": [{"code": "99213"}, {"code": "17000", "units": 2}], "discountPercent": 20}
	data = client.post("/billing/estimate", json=body).json()

	assert data["mode"] == "self_pay"
	assert data["result"]["subtotal"] == 450.0
	assert data["result"]["totalDue"] == 360.0


def test_estimate_insured_with_copay() -> None:
	benefits = {**BENEFITS, "deductibleTotal": 0, "copays": {"evaluation_management": 40}}
	body = {
		"procedures": [{"code": "99213"}, {"code": "17000", "units": 2}],
		"benefits": benefits,
	}
	data = client.post("/billing/estimate", json=body).json()

	assert data["mode"] == "insured"
	visit, cryo = data["result"]["charges"]
	assert visit["toCopay"] == 40.0
	assert cryo["amount"] == 300.0
	assert cryo["toCoinsurance"] == 60.0
	assert data["result"]["totals"]["patientResponsibility"] == 100.0


def test_estimate_rejects_unpriced_code() -> None:
	response = client.post("/billing/estimate", json={"procedures": [{"code": "99999"}]})
	assert response.status_code == 400


def test_explain_returns_template_copy() -> None:
	response = client.post(
		"/billing/explain",
		json={"charges": CHARGES, "benefits": BENEFITS, "persona": "staff"},
	)
	assert response.status_code == 200
	data = response.json()
	assert data["explanationSource"] == "template"
	assert "Collect $540.00 from patient." in data["explanation"]


def test_explain_rejects_unknown_persona() -> None:
	response = client.post(
		"/billing/explain",
		json={"charges": CHARGES, "benefits": BENEFITS, "persona": "payer"},
	)
	assert response.status_code == 400


def test_benefits_round_trip_and_apply(store: BenefitStore) -> None:
	assert client.get("/patients/p-100/benefits").status_code == 404

	put = client.put("/patients/p-100/benefits", json=BENEFITS)
	assert put.status_code == 200
	assert put.json()["benefits"]["deductibleRemaining"] == 500.0

	fetched = client.get("/patients/p-100/benefits").json()
	assert fetched["benefits"]["deductibleTotal"] == 500.0

	applied = client.post("/patients/p-100/benefits/apply", json={"charges": CHARGES})
	assert applied.status_code == 200
	assert applied.json()["result"]["totals"]["patientResponsibility"] == 540.0

	saved = store.load("p-100")
	assert saved.deductible_met == 500.0
	assert saved.oop_met == 540.0

	# the next visit starts from the persisted accumulators
	again = client.post("/patients/p-100/benefits/apply", json={"charges": [{"id": 3, "amount": 100}]}).json()
	assert again["result"]["charges"][0]["toDeductible"] == 0.0
	assert again["result"]["charges"][0]["toCoinsurance"] == 20.0


def test_benefits_apply_without_snapshot(store: BenefitStore) -> None:
	response = client.post("/patients/nobody/benefits/apply", json={"charges": CHARGES})
	assert response.status_code == 404


def test_benefits_put_rejects_bad_state(store: BenefitStore) -> None:
	response = client.put("/patients/p-100/benefits", json={**BENEFITS, "oopMet": 5000})
	assert response.status_code == 400
	assert not store.exists("p-100")


def test_eligibility_parse_stores_snapshot(store: BenefitStore) -> None:
	response_271 = {
		"planStatus": [{"statusCode": "1", "status": "Active Coverage"}],
		"planInformation": {"planNumber": "HMO Silver"},
		"payer": {"name": "Cigna"},
		"benefitsInformation": [
			{"code": "C", "coverageLevelCode": "IND", "inPlanNetworkIndicatorCode": "Y", "benefitAmount": "750"},
			{"code": "G", "coverageLevelCode": "IND", "inPlanNetworkIndicatorCode": "Y", "benefitAmount": "3500"},
			{"code": "A", "coverageLevelCode": "IND", "inPlanNetworkIndicatorCode": "Y", "benefitPercent": "0.3"},
		],
	}
	response = client.post("/eligibility/parse", json={"response": response_271, "patientId": "p-200"})
	assert response.status_code == 200
	data = response.json()

	assert data["isActive"] is True
	assert data["planType"] == "HMO"
	assert data["stored"] is True
	assert data["benefits"]["coinsurancePercent"] == 30.0
	assert store.load("p-200").carrier == "Cigna"


def test_estimate_docx_export() -> None:
	docx_module = pytest.importorskip("docx")

	response = client.post(
		"/export/estimate_docx",
		json={"charges": CHARGES, "benefits": BENEFITS, "patientName": "Ana Lopez"},
	)
	assert response.status_code == 200
	assert response.headers.get("content-type") == DOCX_MEDIA_TYPE
	assert "estimate.docx" in response.headers.get("content-disposition", "")

	doc = docx_module.Document(BytesIO(response.content))
	assert doc.paragraphs[0].text == "Visit estimate - Ana Lopez"


def test_estimate_pdf_export() -> None:
	response = client.post("/export/estimate_pdf", json={"charges": CHARGES, "benefits": BENEFITS})
	assert response.status_code == 200
	assert response.headers.get("content-type") == "application/pdf"
	assert response.content.startswith(b"%PDF")


def test_explain_falls_back_to_template_without_gemini_key(monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture) -> None:
	monkeypatch.setattr(main, "USE_GEMINI", True)
	monkeypatch.delenv("GEMINI_API_KEY", raising=False)

	with caplog.at_level(logging.WARNING, logger="dermbill.main"):
		response = client.post("/billing/explain", json={"charges": CHARGES, "benefits": BENEFITS})

	assert response.status_code == 200
	data = response.json()
	assert data["explanationSource"] == "template"
	assert "Your estimated share today is $540.00." in data["explanation"]
	assert any("Gemini explanation unavailable" in record.getMessage() for record in caplog.records)


def test_explain_falls_back_to_template_when_gemini_fails(monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture) -> None:
	def _empty_reply(persona: str, payload: dict) -> str:
		raise RuntimeError("Gemini response did not contain any text output")

	monkeypatch.setattr(main, "USE_GEMINI", True)
	monkeypatch.setattr(main, "verbalize", _empty_reply)

	with caplog.at_level(logging.WARNING, logger="dermbill.main"):
		response = client.post("/billing/explain", json={"charges": CHARGES, "benefits": BENEFITS})

	assert response.status_code == 200
	assert response.json()["explanationSource"] == "template"
	assert any("Gemini explanation failed" in record.getMessage() for record in caplog.records)


def test_explain_uses_gemini_text_when_available(monkeypatch: pytest.MonkeyPatch) -> None:
	monkeypatch.setattr(main, "USE_GEMINI", True)
	monkeypatch.setattr(main, "verbalize", lambda persona, payload: "- You owe $540.00 today.")

	data = client.post("/billing/explain", json={"charges": CHARGES, "benefits": BENEFITS}).json()

	assert data["explanationSource"] == "gemini"
	assert data["explanation"] == "- You owe $540.00 today."
