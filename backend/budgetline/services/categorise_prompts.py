"""Prompt templates and response parsing for AI categorisation."""

import json
from dataclasses import dataclass

from pydantic import BaseModel, ConfigDict, Field, field_validator

SINGLE_CATEGORISE_PROMPT = """You are categorising a UK financial transaction.

Transaction:
- Date: {date}
- Description: {description}
- Amount: {amount}

Available categories:
{categories_list}

Select the most appropriate category for this transaction. Consider:
- The merchant or payee name in the description
- Common UK transaction patterns (DIRECT DEBIT, CARD PAYMENT, FASTER PAYMENT, etc.)
- Amount sign: negative = expense, positive = income

Respond ONLY with valid JSON (no markdown, no explanation):
{{
  "categoryId": "id of best match",
  "categoryName": "name for verification",
  "confidence": 0.0 to 1.0,
  "reasoning": "brief explanation",
  "alternatives": [
    {{"categoryId": "id", "categoryName": "name", "confidence": 0.X}}
  ]
}}"""

BATCH_CATEGORISE_PROMPT = """You are categorising multiple UK financial transactions.

Transactions:
{transactions_list}

Available categories:
{categories_list}

For each transaction, select the most appropriate category. Consider:
- The merchant or payee name in the description
- Common UK transaction patterns (DIRECT DEBIT, CARD PAYMENT, FASTER PAYMENT, etc.)
- Amount sign: negative = expense, positive = income

Respond ONLY with a valid JSON array (no markdown, no explanation), one item per transaction:
[
  {{
    "index": 0,
    "categoryId": "id",
    "categoryName": "name",
    "confidence": 0.0 to 1.0,
    "reasoning": "brief explanation"
  }}
]"""


@dataclass(frozen=True)
class CategoryInfo:
    id: str
    name: str
    group_name: str
    is_income: bool


@dataclass(frozen=True)
class TransactionForCategorisation:
    date: str
    description: str
    amount: float


# ── Formatting ─────────────────────────────────────


def format_amount(amount: float) -> str:
    if amount >= 0:
        return f"+£{amount:.2f}"
    return f"-£{abs(amount):.2f}"


def format_categories_list(categories: list[CategoryInfo]) -> str:
    """Categories grouped by group name, income categories tagged."""
    groups: dict[str, list[CategoryInfo]] = {}
    for cat in categories:
        groups.setdefault(cat.group_name, []).append(cat)

    lines: list[str] = []
    for group_name, cats in groups.items():
        lines.append(f"\n{group_name}:")
        for cat in cats:
            income_tag = " [INCOME]" if cat.is_income else ""
            lines.append(f"  - {cat.name} (id: {cat.id}){income_tag}")
    return "\n".join(lines)


def format_transaction(tx: TransactionForCategorisation) -> str:
    return f'Date: {tx.date}, Amount: {format_amount(tx.amount)}, Description: "{tx.description}"'


def format_transactions_list(transactions: list[TransactionForCategorisation]) -> str:
    return "\n".join(f"{i}. {format_transaction(tx)}" for i, tx in enumerate(transactions))


def build_single_prompt(tx: TransactionForCategorisation, categories: list[CategoryInfo]) -> str:
    kind = "income" if tx.amount >= 0 else "expense"
    return SINGLE_CATEGORISE_PROMPT.format(
        date=tx.date,
        description=tx.description,
        amount=f"{format_amount(tx.amount)} ({kind})",
        categories_list=format_categories_list(categories),
    )


def build_batch_prompt(
    transactions: list[TransactionForCategorisation], categories: list[CategoryInfo]
) -> str:
    return BATCH_CATEGORISE_PROMPT.format(
        transactions_list=format_transactions_list(transactions),
        categories_list=format_categories_list(categories),
    )


# ── Parsing & validation ───────────────────────────


class AIAlternativePayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    category_id: str = Field(alias="categoryId")
    category_name: str = Field(alias="categoryName")
    confidence: float

    @field_validator("category_id", mode="before")
    @classmethod
    def _coerce_id(cls, value):
        # models sometimes echo numeric ids back as numbers
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value


class AISinglePayload(AIAlternativePayload):
    reasoning: str
    alternatives: list[AIAlternativePayload] | None = None


class AIBatchItemPayload(AIAlternativePayload):
    index: int
    reasoning: str


def strip_code_fences(text: str) -> str:
    cleaned = text.strip()
    if cleaned.startswith("```json"):
        cleaned = cleaned[7:]
    elif cleaned.startswith("```"):
        cleaned = cleaned[3:]
    if cleaned.endswith("```"):
        cleaned = cleaned[:-3]
    return cleaned.strip()


def parse_json_reply(text: str):
    """Decode a model reply, tolerating a markdown code fence around it.

    Raises ``ValueError`` (``json.JSONDecodeError``) on malformed JSON.
    """
    return json.loads(strip_code_fences(text))


def validate_single_reply(payload) -> AISinglePayload:
    """Raises ``ValidationError`` when required fields are missing or mistyped."""
    return AISinglePayload.model_validate(payload)


def validate_batch_reply(payload) -> list[AIBatchItemPayload]:
    if not isinstance(payload, list):
        raise TypeError("batch reply must be a JSON array")
    return [AIBatchItemPayload.model_validate(item) for item in payload]
