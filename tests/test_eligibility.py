from __future__ import annotations

import copy

import pytest

from dermbill.billing_calculator import calculate_patient_responsibility
from dermbill.eligibility import EligibilityParseError, parse_eligibility_response
from dermbill.models import Charge

IN_NETWORK = {"coverageLevelCode": "IND", "inPlanNetworkIndicatorCode": "Y"}

SAMPLE_271: dict = {
	"planStatus": [{"statusCode": "1", "status": "Active Coverage"}],
	"planInformation": {"planNumber": "PPO Gold", "groupNumber": "G-1234", "groupName": "Acme Corp"},
	"subscriber": {"memberId": "W123456789", "firstName": "Ana", "lastName": "Lopez"},
	"payer": {"name": "Aetna"},
	"benefitsInformation": [
		{"code": "1", "serviceTypeCodes": ["30", "98", "A4", "5"]},
		{"code": "C", **IN_NETWORK, "benefitAmount": "1000"},
		{"code": "C", **IN_NETWORK, "timeQualifierCode": "29", "benefitAmount": "750"},
		{"code": "C", "coverageLevelCode": "FAM", "inPlanNetworkIndicatorCode": "Y", "benefitAmount": "2000"},
		{"code": "G", **IN_NETWORK, "benefitAmount": "5000"},
		{"code": "G", **IN_NETWORK, "timeQualifierCode": "32", "benefitAmount": "400"},
		{"code": "A", **IN_NETWORK, "benefitPercent": "0.2"},
		{"code": "B", "inPlanNetworkIndicatorCode": "Y", "serviceTypeCodes": ["98"], "benefitAmount": "25"},
		{"code": "B", "inPlanNetworkIndicatorCode": "Y", "serviceTypeCodes": ["A4"], "benefitAmount": "50"},
	],
}


@pytest.fixture()
def sample() -> dict:
	return copy.deepcopy(SAMPLE_271)


def test_parses_plan_and_subscriber(sample: dict) -> None:
	parsed = parse_eligibility_response(sample)

	assert parsed.is_active is True
	assert parsed.status_message == "Active Coverage"
	assert parsed.plan_type == "PPO"
	assert parsed.is_hdhp is False
	assert parsed.group_number == "G-1234"
	assert parsed.member_id == "W123456789"
	assert parsed.subscriber_name == "Ana Lopez"


def test_builds_benefit_snapshot_from_in_network_individual_rows(sample: dict) -> None:
	benefits = parse_eligibility_response(sample).benefits

	assert benefits.carrier == "Aetna"
	assert benefits.deductible_total == 1000.0
	assert benefits.deductible_met == 250.0
	assert benefits.oop_max == 5000.0
	assert benefits.oop_met == 400.0
	assert benefits.coinsurance_percent == pytest.approx(20.0)
	# specialist copay wins over the office visit copay
	assert benefits.copays == {"evaluation_management": 50.0}


def test_coverage_flags(sample: dict) -> None:
	coverage = parse_eligibility_response(sample).coverage

	assert coverage["dermatology_visits"] is True
	assert coverage["diagnostic_lab"] is True
	assert coverage["surgical_procedures"] is False
	assert coverage["preventive_care"] is False


def test_office_copay_used_without_specialist_copay(sample: dict) -> None:
	sample["benefitsInformation"] = [
		entry for entry in sample["benefitsInformation"] if entry.get("serviceTypeCodes") != ["A4"]
	]
	assert parse_eligibility_response(sample).benefits.copays == {"evaluation_management": 25.0}


def test_missing_coinsurance_defaults_to_twenty_percent(sample: dict) -> None:
	sample["benefitsInformation"] = [entry for entry in sample["benefitsInformation"] if entry["code"] != "A"]
	assert parse_eligibility_response(sample).benefits.coinsurance_percent == 20.0


def test_hdhp_detected_from_plan_description(sample: dict) -> None:
	sample["planInformation"] = {"planDescription": "Bronze HSA Plan"}
	parsed = parse_eligibility_response(sample)

	assert parsed.plan_type == "HDHP"
	assert parsed.is_hdhp is True
	assert parsed.benefits.is_hdhp is True


def test_hdhp_detected_from_high_deductible(sample: dict) -> None:
	sample["benefitsInformation"][1]["benefitAmount"] = "$3,000.00"
	sample["benefitsInformation"][2]["benefitAmount"] = "3000"
	parsed = parse_eligibility_response(sample)

	assert parsed.plan_type == "PPO"
	assert parsed.is_hdhp is True
	assert parsed.benefits.deductible_total == 3000.0
	assert parsed.benefits.deductible_met == 0.0


def test_inactive_status(sample: dict) -> None:
	sample["planStatus"] = [{"statusCode": "6", "status": "Inactive"}]
	parsed = parse_eligibility_response(sample)

	assert parsed.is_active is False
	assert parsed.status_message == "Inactive"


def test_prior_authorization_flag(sample: dict) -> None:
	sample["benefitsInformation"][0]["additionalInformation"] = [
		{"description": "Prior authorization required for Mohs surgery"}
	]
	assert parse_eligibility_response(sample).prior_auth_required is True


def test_empty_response_yields_inactive_uncapped_snapshot() -> None:
	parsed = parse_eligibility_response({})

	assert parsed.is_active is False
	assert parsed.status_message == "Inactive or Unknown"
	assert parsed.benefits.deductible_total == 0.0
	assert parsed.benefits.oop_max is None


@pytest.mark.parametrize("payload", [[], {"benefitsInformation": "not-a-list"}])
def test_malformed_payload_is_rejected(payload: object) -> None:
	with pytest.raises(EligibilityParseError):
		parse_eligibility_response(payload)  # type: ignore[arg-type]


def test_missing_out_of_pocket_rows_leave_cost_sharing_uncapped(sample: dict) -> None:
	sample["benefitsInformation"] = [
		{"code": "C", **IN_NETWORK, "benefitAmount": "500"},
		{"code": "A", **IN_NETWORK, "benefitPercent": "0.2"},
	]
	benefits = parse_eligibility_response(sample).benefits

	assert benefits.oop_max is None
	assert benefits.oop_met == 0.0
	assert benefits.oop_remaining is None

	result = calculate_patient_responsibility([Charge(id="1", amount=300.0), Charge(id="2", amount=400.0)], benefits)
	first, second = result.charges
	assert first.patient_responsibility == pytest.approx(300.0, abs=0.01)
	assert second.patient_responsibility == pytest.approx(240.0, abs=0.01)
	assert result.updated_benefits.oop_met == pytest.approx(540.0, abs=0.01)
	assert "No out-of-pocket maximum on file; patient cost sharing is not capped" in result.summary
