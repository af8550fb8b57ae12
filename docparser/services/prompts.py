# docparser/services/prompts.py
"""
Prompt templates for every LLM step. Pure functions of their inputs.
Bump PROMPT_VERSION when wording changes so stored analyses can be told apart.
"""
from __future__ import annotations

import json
from typing import List

from docparser.schemas.contract import AnalysisMilestone
from docparser.schemas.validation import CONTRACT_ELEMENTS

PROMPT_VERSION = "2024.1"

JSON_ONLY_SYSTEM = (
    "You are a strict JSON generator. Respond with a single valid JSON object "
    "and nothing else: no markdown fences, no commentary, no trailing text."
)

COMPLIANCE_SYSTEM = (
    "You are a legal compliance expert specializing in contract law across "
    "jurisdictions. Answer only with the requested JSON object."
)


def _block(text: str) -> str:
    return f'"""\n{(text or "").strip()}\n"""'


def contract_analysis(text: str) -> str:
    return f"""You are a legal document analysis expert. Analyze the following contract and extract key information in JSON format.

CONTRACT TEXT:
{_block(text)}

INSTRUCTIONS:
1. Extract the contract title, the buyer name and the seller name
2. Extract the full mailing address of both buyer and seller, including country
3. Identify the total contract value and currency
4. List all payment obligations with amounts, percentages and trigger conditions
5. Identify any risk factors or concerns
6. Determine the nature of goods/services (physical, digital, services)
7. Extract the effective date, termination date and governing jurisdiction when stated

Return a JSON object with this structure:
{{
  "contract_name": "string",
  "buyer": "string",
  "buyer_address": "string",
  "buyer_country": "string",
  "seller": "string",
  "seller_address": "string",
  "seller_country": "string",
  "total_value": number,
  "currency": "string",
  "effective_date": "string",
  "termination_date": "string",
  "jurisdiction": "string",
  "milestones": [
    {{
      "description": "string",
      "amount": number,
      "percentage": number,
      "trigger_condition": "string",
      "due_date": "string"
    }}
  ],
  "risk_factors": [
    {{
      "type": "string",
      "description": "string",
      "severity": "low|medium|high|critical"
    }}
  ],
  "goods_nature": "physical|digital|services"
}}

Only return the JSON, no additional text."""


def multimodal_contract_analysis() -> str:
    return """You are a legal document analysis expert with financial calculation capabilities. Analyze the contract shown in the attached page images and extract key information in JSON format.

CRITICAL REQUIREMENTS:
1. Extract ALL payment amounts, advances, percentages and financial obligations
2. Convert written amounts (like "fifty thousand" or "Rs. 50,000") to numbers
3. Compute percentages of the total yourself and check them against the stated figures

REQUIRED JSON STRUCTURE - use these exact field names:
{
  "contract_name": "string",
  "buyer": "string",
  "buyer_address": "string",
  "buyer_country": "string",
  "seller": "string",
  "seller_address": "string",
  "seller_country": "string",
  "total_value": "50000",
  "currency": "USD",
  "effective_date": "string",
  "termination_date": "string",
  "jurisdiction": "string",
  "milestones": [{"description": "string", "amount": "25000", "percentage": 50.0, "trigger_condition": "string", "due_date": "string"}],
  "risk_factors": [{"type": "string", "description": "string", "severity": "low|medium|high|critical"}],
  "goods_nature": "physical|digital|services"
}

IMPORTANT: Return ONLY valid JSON matching this structure. All monetary amounts must be strings."""


def validation(text: str) -> str:
    elements = "\n".join(f"- {e}" for e in CONTRACT_ELEMENTS)
    return f"""You are a legal expert. Decide whether the following document is a legally meaningful contract.

DOCUMENT:
{_block(text)}

Check the document for these contract elements (use these exact tags):
{elements}

Return a JSON object:
{{
  "is_valid_contract": true,
  "reason": "short explanation",
  "confidence": 0.0,
  "contract_type": "string",
  "detected_elements": ["tag"],
  "missing_elements": ["tag"]
}}

confidence is a number between 0.0 and 1.0. Only use tags from the list above.
Only return the JSON, no additional text."""


def element_detection(text: str) -> str:
    return f"""You are a contract analyst. Extract the parties, obligations and key terms from the contract below.

CONTRACT TEXT:
{_block(text)}

Return a JSON object:
{{
  "parties": [{{"name": "string", "role": "string", "address": "string", "contact": "string"}}],
  "obligations": [{{"party": "string", "description": "string", "type": "string", "deadline": "string"}}],
  "terms": [{{"type": "string", "description": "string", "value": "string"}}],
  "confidence": 0.0
}}

Only return the JSON, no additional text."""


def milestone_sequencing(milestones: List[AnalysisMilestone]) -> str:
    payload = json.dumps(
        [
            {"id": str(i + 1), **m.model_dump(mode="json")}
            for i, m in enumerate(milestones)
        ]
    )
    return f"""You are a project management expert. Sequence the following contract milestones in chronological and logical order.

MILESTONES:
{payload}

INSTRUCTIONS:
1. Analyze the trigger conditions for each milestone
2. Sequence them chronologically based on the contract timeline
3. Identify dependencies between milestones (by id)
4. Group related milestones by functional category
5. Keep the percentages so that they sum to 100%

Return a JSON object:
{{
  "milestones": [
    {{
      "id": "string",
      "description": "string",
      "sequence_order": number,
      "category": "string",
      "dependencies": ["id"],
      "percentage": number
    }}
  ]
}}

Only return the JSON, no additional text."""


def risk_assessment(text: str, industry_standards: str) -> str:
    standards = industry_standards.strip() or "No specific industry standards available."
    return f"""You are a risk management expert. Assess the following contract for potential risks and vulnerabilities.

CONTRACT TEXT:
{_block(text)}

INDUSTRY STANDARDS:
{_block(standards)}

INSTRUCTIONS:
1. Compare the contract against industry best practices
2. Identify missing contractual elements or clauses
3. Assess risks for both buyer and seller
4. Suggest specific improvements with legal reasoning
5. Categorize risks by severity

Return a JSON object:
{{
  "missing_clauses": ["string"],
  "risks": [
    {{
      "party": "buyer|seller",
      "type": "string",
      "severity": "low|medium|high|critical",
      "description": "string",
      "recommendation": "string"
    }}
  ],
  "compliance_score": number,
  "suggestions": ["string"]
}}

Only return the JSON, no additional text."""


def compliance(text: str, jurisdiction: str) -> str:
    return f"""Check the following contract for legal compliance in the jurisdiction: {jurisdiction}.

CONTRACT TEXT:
{_block(text)}

Return a JSON object:
{{
  "jurisdiction": "{jurisdiction}",
  "required_clauses": ["string"],
  "missing_clauses": ["string"],
  "compliance_level": "full|partial|minimal|non-compliant",
  "recommendations": ["string"],
  "risk_level": "low|medium|high|critical"
}}

Only return the JSON, no additional text."""


def industry_classification(text: str) -> str:
    excerpt = (text or "").strip()[:4000]
    return f"""Classify the industry this contract belongs to (for example: construction, software, manufacturing, healthcare, logistics, real_estate, finance, retail, energy, general).

CONTRACT EXCERPT:
{_block(excerpt)}

Return a JSON object: {{"industry": "string"}}. Use a single lower-case word or snake_case tag."""


def ocr_instruction() -> str:
    return (
        "Extract all readable text from this document image, preserving the reading order "
        "and line breaks. Respond with a JSON object containing two keys: 'text' for the "
        "extracted text, and 'confidence' (a float between 0.0 and 1.0) for your "
        "confidence in the extraction accuracy."
    )
