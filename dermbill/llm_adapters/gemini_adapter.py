"""Gemini adapter for verbalizing checkout estimates."""

from __future__ import annotations

import json
import os
from typing import Any, Dict

import google.generativeai as genai

from dermbill.config import GEMINI_MODEL


class NotConfigured(RuntimeError):
	"""Raised when the Gemini adapter cannot run due to missing setup."""


def verbalize(persona: str, payload: Dict[str, Any]) -> str:
	"""Return a short Gemini-written explanation constrained to the estimate's figures."""

	api_key = os.getenv("GEMINI_API_KEY")
	if not api_key:
		raise NotConfigured("GEMINI_API_KEY is not configured")

	genai.configure(api_key=api_key)

	instruction = (
		"You explain a dermatology visit cost estimate. Only describe numbers & facts present "
		"in the payload. Do not invent amounts, give medical advice or promise final billing. "
		f"Audience={persona}. Answer in at most five short bullet points."
	)
	serialized_payload = json.dumps(payload, indent=2, sort_keys=True)

	model = genai.GenerativeModel(GEMINI_MODEL, system_instruction=instruction)
	reply = model.generate_content(serialized_payload)

	text = _extract_text(reply)
	if not text:
		raise RuntimeError("Gemini response did not contain any text output")

	return text.strip()


def _extract_text(response: Any) -> str:
	"""Best-effort extraction of plain text from a Gemini response payload."""

	if response is None:
		return ""
	try:
		text = getattr(response, "text", None)
	except ValueError:
		# .text raises when the candidate was blocked or has no parts
		text = None
	if text:
		return str(text)

	candidates = getattr(response, "candidates", None)
	if candidates:
		for candidate in candidates:
			parts = getattr(candidate, "content", None)
			if parts and getattr(parts, "parts", None):
				for part in parts.parts:
					text = getattr(part, "text", None)
					if text:
						return str(text)

	return ""


__all__ = ["NotConfigured", "verbalize"]
