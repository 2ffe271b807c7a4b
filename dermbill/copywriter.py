"""Deterministic microcopy for plain-language checkout estimates."""

from __future__ import annotations

from dermbill.billing_calculator import format_currency
from dermbill.models import CalculationResult

_ALLOWED_PERSONAS = {"patient", "staff"}
_ALLOWED_LANGUAGES = {"en", "es"}
_MAX_LINES = 6

_STYLE: dict[str, dict[str, str]] = {
    "patient": {
        "total_line": "Today's visit comes to {total}, and your plan is expected to pay {insurer} of it.",
        "deductible_line": "{deductible} goes toward your deductible, leaving {remaining} before your plan starts sharing costs.",
        "deductible_done_line": "{deductible} goes toward your deductible, which is now fully met for the year.",
        "cost_share_both": "After the deductible you pay {copay} in copays and {coinsurance} in coinsurance.",
        "cost_share_copay": "After the deductible you pay a copay of {copay}.",
        "cost_share_coinsurance": "After the deductible you pay {coinsurance} in coinsurance.",
        "not_covered_line": "{not_covered} is for cosmetic services or products your plan does not cover.",
        "patient_line": "Your estimated share today is {patient}.",
        "hsa_line": "You can pay {hsa} of that from your HSA.",
        "oop_line": "You have reached your out-of-pocket maximum, so your plan covers the rest of this year's covered care.",
    },
    "staff": {
        "total_line": "Visit charges {total}; expected insurer payment {insurer}.",
        "deductible_line": "Deductible applied {deductible}; remaining after visit {remaining}.",
        "deductible_done_line": "Deductible applied {deductible}; deductible now satisfied.",
        "cost_share_both": "Copay {copay}, coinsurance {coinsurance}.",
        "cost_share_copay": "Copay {copay}.",
        "cost_share_coinsurance": "Coinsurance {coinsurance}.",
        "not_covered_line": "Non-covered cosmetic/product charges {not_covered}.",
        "patient_line": "Collect {patient} from patient.",
        "hsa_line": "HSA-eligible {hsa}.",
        "oop_line": "OOP max reached; remaining covered charges adjudicate at 100%.",
    },
}

_LANGUAGE_OVERRIDES: dict[str, dict[str, str]] = {
    "es": {
        "total_line": "La visita de hoy suma {total} y se espera que su plan pague {insurer}.",
        "deductible_line": "{deductible} se aplica a su deducible; quedan {remaining} por cubrir.",
        "deductible_done_line": "{deductible} se aplica a su deducible, que ya está cubierto este año.",
        "cost_share_both": "Después del deducible paga {copay} de copago y {coinsurance} de coseguro.",
        "cost_share_copay": "Después del deducible paga un copago de {copay}.",
        "cost_share_coinsurance": "Después del deducible paga {coinsurance} de coseguro.",
        "not_covered_line": "{not_covered} corresponde a servicios cosméticos o productos que su plan no cubre.",
        "patient_line": "Su parte estimada hoy es {patient}.",
        "hsa_line": "Puede pagar {hsa} con su cuenta HSA.",
        "oop_line": "Alcanzó su máximo de gastos de bolsillo; su plan cubre el resto de la atención cubierta.",
    },
}

_ACRONYM_MAP = {
    "HSA": "Health Savings Account (HSA)",
    "OOP": "out-of-pocket",
}


def explain_estimate(
    result: CalculationResult,
    persona: str = "patient",
    language: str = "en",
) -> str:
    """Return a bullet list describing who pays what, using only figures from ``result``."""

    persona_key = persona.lower().strip()
    language_key = language.lower().strip()

    if persona_key not in _ALLOWED_PERSONAS:
        raise ValueError(f"Unsupported persona '{persona}'.")
    if language_key not in _ALLOWED_LANGUAGES:
        raise ValueError(f"Unsupported language '{language}'.")

    style = _STYLE[persona_key]
    totals = result.totals

    def line(key: str, **values: float) -> str:
        template = _resolve_template(style, key, language_key)
        return template.format(**{name: format_currency(amount) for name, amount in values.items()})

    lines = [line("total_line", total=totals.amount, insurer=totals.insurer_paid)]

    if totals.deductible > 0:
        remaining = result.updated_benefits.deductible_remaining
        if remaining > 0:
            lines.append(line("deductible_line", deductible=totals.deductible, remaining=remaining))
        else:
            lines.append(line("deductible_done_line", deductible=totals.deductible))

    if totals.copay > 0 and totals.coinsurance > 0:
        lines.append(line("cost_share_both", copay=totals.copay, coinsurance=totals.coinsurance))
    elif totals.copay > 0:
        lines.append(line("cost_share_copay", copay=totals.copay))
    elif totals.coinsurance > 0:
        lines.append(line("cost_share_coinsurance", coinsurance=totals.coinsurance))

    if totals.not_covered > 0:
        lines.append(line("not_covered_line", not_covered=totals.not_covered))

    patient_line = line("patient_line", patient=totals.patient_responsibility)
    if totals.hsa_eligible > 0:
        patient_line = f"{patient_line} {line('hsa_line', hsa=totals.hsa_eligible)}"
    lines.append(patient_line)

    oop_remaining = result.updated_benefits.oop_remaining
    if oop_remaining is not None and oop_remaining <= 0 and any(
        charge.service_category is not None for charge in result.charges
    ):
        lines.append(line("oop_line"))

    # staff copy keeps billing shorthand such as HSA and OOP
    if language_key == "en" and persona_key == "patient":
        lines = [_expand_acronyms(item) for item in lines]

    return "\n".join(f"- {item.strip()}" for item in lines[:_MAX_LINES] if item.strip())


def _expand_acronyms(text: str) -> str:
    updated = text
    for token, replacement in _ACRONYM_MAP.items():
        if token in updated and replacement not in updated:
            updated = updated.replace(token, replacement)
    return updated


def _resolve_template(style: dict[str, str], key: str, language: str) -> str:
    if language != "en":
        template = _LANGUAGE_OVERRIDES.get(language, {}).get(key)
        if template:
            return template
    return style[key]
