import json
import logging
import re
from typing import Any, Dict

import google.generativeai as genai

from models import (
    AnalysisError,
    AnalysisResult,
    ConfigurationError,
    StagedImage,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

MISSING_KEY_MESSAGE = "GEMINI_API_KEY is not configured. Please add it to your environment variables."
INVALID_KEY_MESSAGE = "Invalid Gemini API Key. Please check your configuration."
EMPTY_RESPONSE_MESSAGE = "No response received from AI model."
INVALID_JSON_MESSAGE = "AI model returned an invalid response."

ANALYSIS_PROMPT = """
Analyze this trading chart and provide a fast, professional analysis.
Identify the Pair and Timeframe.

Apply these methods:
1. SNR (Support & Resistance): Identify key levels.
2. ICT (Inner Circle Trader): Look for Order Blocks (OB), Fair Value Gaps (FVG), Liquidity pools, and Market Structure Shift (MSS).
3. STD (Standard Deviation): Assess volatility.
4. Alchemist X MSNR: Identify manipulation SNR and market cycles.
5. Macro: Briefly mention latest high-impact events relevant to this pair.

Provide a clear Signal: BUY, SELL, or NEUTRAL.
Include Entry, Take Profit (TP), and Stop Loss (SL) levels.

IMPORTANT: Return ONLY a valid JSON object with this exact structure:
{
  "signal": {
    "pair": "string",
    "action": "BUY" | "SELL" | "NEUTRAL",
    "entry": "string",
    "tp": "string",
    "sl": "string",
    "confidence": number,
    "reasoning": "string"
  },
  "technical": { "snr": "string", "ict": "string", "std": "string", "alchemist": "string" },
  "fundamental": "string"
}
"""


def build_model(api_key: str, model_name: str):
    genai.configure(api_key=api_key)
    return genai.GenerativeModel(model_name)


def strip_code_fences(text: str) -> str:
    text = re.sub(r"```json\s*", "", text)
    text = re.sub(r"```\s*", "", text)
    return text.strip()


def parse_analysis_json(text: str) -> Dict[str, Any]:
    cleaned = strip_code_fences(text)
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError:
        # Models sometimes wrap the object in prose; fall back to the outermost braces.
        match = re.search(r"\{.*\}", cleaned, re.DOTALL)
        if not match:
            raise AnalysisError(INVALID_JSON_MESSAGE)
        try:
            data = json.loads(match.group())
        except json.JSONDecodeError as e:
            raise AnalysisError(INVALID_JSON_MESSAGE) from e
    if not isinstance(data, dict):
        raise AnalysisError(INVALID_JSON_MESSAGE)
    return data


def _response_text(response) -> str:
    try:
        return response.text or ""
    except ValueError:
        # Raised by the SDK when the candidate has no text parts (e.g. blocked).
        return ""


def analyze_chart(image: StagedImage, api_key: str, model_name: str, model_factory=build_model) -> AnalysisResult:
    if not api_key:
        raise ConfigurationError(MISSING_KEY_MESSAGE)

    try:
        model = model_factory(api_key, model_name)
        response = model.generate_content(
            [ANALYSIS_PROMPT, {"mime_type": image.mime_type, "data": image.data}],
            generation_config=genai.types.GenerationConfig(
                response_mime_type="application/json",
                temperature=0.2,
            ),
        )
    except Exception as e:
        msg = str(e)
        logger.error("Gemini API error: %s", msg)
        if "API_KEY_INVALID" in msg or "API key not valid" in msg:
            raise ConfigurationError(INVALID_KEY_MESSAGE) from e
        raise AnalysisError(msg) from e

    text = _response_text(response)
    logger.debug("Model response text: %s", text)
    if not text.strip():
        raise AnalysisError(EMPTY_RESPONSE_MESSAGE)

    return AnalysisResult.from_dict(parse_analysis_json(text), timestamp=utc_now_iso())
