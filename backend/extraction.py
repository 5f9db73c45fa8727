"""
extraction.py
-------------
Prescription extraction through a multimodal OpenAI model. Accepts one image or
PDF and returns the medications found on it as ParsedMedication records.

Failure conditions are distinct exception types so the API can tell "nothing
came back" from "something unreadable came back" from "the service failed".
A successful call that finds no medications returns an empty list.
"""

import asyncio
import base64
import json
import logging
import os
import re
from typing import Any, Dict, List, Optional

from openai import OpenAI

from tracker import ParsedMedication

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-4o"
SUPPORTED_MIME_PREFIXES = ("image/",)
SUPPORTED_MIME_TYPES = {"application/pdf"}

SYSTEM_MESSAGE = """You are an expert medical assistant. Analyze the provided prescription file (image or PDF).
Extract the following details for each medication listed: name, dosage, quantity, and the full instructions for taking the medication.
Ignore all personal patient information and general advice.

OUTPUT SCHEMA (return ONLY this JSON object):
{
  "medications": [
    {
      "name": "Full name including the brand name in parentheses if available, e.g. 'Cefprozil (MESOGOLD)'",
      "dosage": "Dosage strength, e.g. '500mg'",
      "quantity": "Total quantity as written, e.g. '20 tablets'",
      "instructions": "How and when to take the medication, as written"
    }
  ]
}
Return an empty medications list when the file contains no medications. No text outside the JSON object.
"""


class ExtractionError(Exception):
    """Base class for extraction failures."""


class EmptyResultError(ExtractionError):
    pass


class MalformedResponseError(ExtractionError):
    pass


class ExtractionServiceError(ExtractionError):
    pass


class ExtractionNotConfiguredError(ExtractionServiceError):
    pass


def is_supported_mime(mime_type: Optional[str]) -> bool:
    if not mime_type:
        return False
    return mime_type in SUPPORTED_MIME_TYPES or mime_type.startswith(SUPPORTED_MIME_PREFIXES)


def parse_quantity(value: Any) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, str):
        match = re.search(r"(\d+(?:\.\d+)?)", value.replace(",", ""))
        if not match:
            return None
        value = match.group(1)
    try:
        qty = int(round(float(value)))
    except (TypeError, ValueError):
        return None
    return qty if qty > 0 else None


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def build_file_part(data: bytes, mime_type: str, filename: str = "prescription") -> Dict[str, Any]:
    encoded = base64.b64encode(data).decode("ascii")
    data_uri = f"data:{mime_type};base64,{encoded}"
    if mime_type == "application/pdf":
        name = filename if filename.lower().endswith(".pdf") else f"{filename}.pdf"
        return {"type": "file", "file": {"filename": name, "file_data": data_uri}}
    return {"type": "image_url", "image_url": {"url": data_uri}}


def parse_extraction_response(response_text: Optional[str]) -> List[ParsedMedication]:
    if response_text is None or not response_text.strip():
        raise EmptyResultError("The extraction service returned an empty response")
    try:
        payload = json.loads(response_text)
    except ValueError as exc:
        raise MalformedResponseError(f"Response is not valid JSON: {exc}") from exc

    if isinstance(payload, dict):
        entries = payload.get("medications")
    else:
        entries = payload
    if not isinstance(entries, list):
        raise MalformedResponseError("Response does not contain a medications list")

    medications: List[ParsedMedication] = []
    for entry in entries:
        if not isinstance(entry, dict):
            raise MalformedResponseError("Medication entries must be objects")
        quantity = _text(entry.get("quantity"))
        total = entry.get("totalQuantity", entry.get("total_quantity"))
        medications.append(ParsedMedication(
            name=_text(entry.get("name")),
            dosage=_text(entry.get("dosage")),
            quantity=quantity,
            instructions=_text(entry.get("instructions")),
            total_quantity=parse_quantity(total) if total is not None else parse_quantity(quantity),
        ))
    return medications


async def extract_medications(
    data: bytes,
    mime_type: str,
    filename: str = "prescription",
    client: Optional[Any] = None,
) -> List[ParsedMedication]:
    """Send one prescription file to the model and return the parsed medications."""
    if client is None:
        api_key = os.environ.get("OPENAI_API_KEY")
        if not api_key:
            raise ExtractionNotConfiguredError("OPENAI_API_KEY is not set")
        client = OpenAI(api_key=api_key)
    model = os.environ.get("OPENAI_OCR_MODEL", DEFAULT_MODEL)

    content = [
        {"type": "text", "text": "Extract the medications from this prescription."},
        build_file_part(data, mime_type, filename),
    ]
    try:
        completion = await asyncio.to_thread(
            lambda: client.chat.completions.create(
                model=model,
                messages=[
                    {"role": "system", "content": SYSTEM_MESSAGE},
                    {"role": "user", "content": content},
                ],
                response_format={"type": "json_object"},
                temperature=0.2,
            )
        )
    except Exception as exc:
        logger.error("[extract] OpenAI request failed: %s", exc)
        raise ExtractionServiceError(str(exc)) from exc

    if not completion.choices:
        raise EmptyResultError("The extraction service returned no choices")
    response_text = completion.choices[0].message.content
    logger.info("[extract] model=%s response_chars=%d", model, len(response_text or ""))
    medications = parse_extraction_response(response_text)
    logger.info("[extract] medications found: %d", len(medications))
    return medications
