"""Keyword-rule categorization of bank transactions.

The rule table is an explicit, immutable ``CategoryRuleSet`` passed in by the
caller; ``DEFAULT_RULE_SET`` is only the built-in starting point. All
functions here are pure: they return suggestions and plans, and the service
layer decides what gets written.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Iterable, Optional, Sequence

from errors import ValidationError


@dataclass(frozen=True)
class KeywordRule:
    keywords: tuple[str, ...]
    category_name: str
    weight: float

    def __post_init__(self) -> None:
        if not self.keywords:
            raise ValidationError("A keyword rule needs at least one keyword")
        if not 0 < self.weight <= 1:
            raise ValidationError("Rule weight must be within (0, 1]")


@dataclass(frozen=True)
class ProviderMapping:
    provider_keywords: tuple[str, ...]
    category_name: str


@dataclass(frozen=True)
class CategoryRuleSet:
    rules: tuple[KeywordRule, ...]
    provider_mappings: tuple[ProviderMapping, ...] = field(default_factory=tuple)
    provider_confidence: float = 0.6
    auto_apply_threshold: float = 0.7
    suggestion_threshold: float = 0.5
    min_suggestion_hits: int = 2


DEFAULT_RULE_SET = CategoryRuleSet(
    rules=(
        KeywordRule(("grocery", "market", "food", "supermarket"), "Groceries", 0.9),
        KeywordRule(("gas", "fuel", "station", "shell", "chevron"), "Transportation", 0.9),
        KeywordRule(("restaurant", "cafe", "dining", "food"), "Dining Out", 0.8),
        KeywordRule(("pharmacy", "medical", "hospital", "doctor"), "Healthcare", 0.9),
        KeywordRule(("amazon", "target", "walmart", "retail"), "Shopping", 0.8),
        KeywordRule(("electric", "utility", "water", "gas bill"), "Utilities", 0.9),
        KeywordRule(("mortgage", "rent", "housing"), "Housing", 0.9),
    ),
    provider_mappings=(
        ProviderMapping(("food", "grocery", "restaurant"), "groceries"),
        ProviderMapping(("gas", "transportation"), "transportation"),
        ProviderMapping(("retail", "shopping"), "shopping"),
        ProviderMapping(("utility", "electric", "water"), "utilities"),
        ProviderMapping(("medical", "healthcare"), "healthcare"),
    ),
)


@dataclass(frozen=True)
class CategorizableTransaction:
    id: int
    description: str
    merchant_name: Optional[str] = None
    provider_category: Optional[str] = None
    spending_category_id: Optional[int] = None
    user_categorized: bool = False

    @classmethod
    def from_model(cls, txn) -> "CategorizableTransaction":
        return cls(
            id=txn.id,
            description=txn.description or "",
            merchant_name=txn.merchant_name,
            provider_category=txn.provider_category,
            spending_category_id=txn.spending_category_id,
            user_categorized=bool(txn.user_categorized),
        )


@dataclass(frozen=True)
class CategorySnapshot:
    id: int
    name: str
    is_active: bool = True

    @classmethod
    def from_model(cls, category) -> "CategorySnapshot":
        return cls(id=category.id, name=category.name, is_active=bool(category.is_active))


@dataclass(frozen=True)
class CategorySuggestion:
    category_id: int
    category_name: str
    confidence: float
    reason: str


@dataclass(frozen=True)
class CategoryAssignment:
    transaction_id: int
    suggestion: CategorySuggestion


@dataclass(frozen=True)
class CategoryFrequency:
    category_id: int
    category_name: str
    hits: int
    confidence: float
    reason: str


def find_category(
    categories: Sequence[CategorySnapshot], name_fragment: str
) -> Optional[CategorySnapshot]:
    needle = name_fragment.strip().lower()
    if not needle:
        return None
    for category in categories:
        if category.is_active and needle in category.name.lower():
            return category
    return None


def _score_rules(
    text_fields: tuple[str, str],
    categories: Sequence[CategorySnapshot],
    rule_set: CategoryRuleSet,
) -> Optional[CategorySuggestion]:
    description, merchant = text_fields
    best: Optional[CategorySuggestion] = None
    best_score = 0.0
    for rule in rule_set.rules:
        matched = [
            kw
            for kw in rule.keywords
            if kw.lower() in description or kw.lower() in merchant
        ]
        if not matched:
            continue
        score = round(len(matched) / len(rule.keywords) * rule.weight, 4)
        if score <= best_score:
            continue
        # A rule only counts if the family actually has its category.
        category = find_category(categories, rule.category_name)
        if category is None:
            continue
        best = CategorySuggestion(
            category_id=category.id,
            category_name=category.name,
            confidence=score,
            reason=f"Matched keywords: {', '.join(matched)}",
        )
        best_score = score
    return best


def _map_provider_category(
    provider_category: str,
    categories: Sequence[CategorySnapshot],
    rule_set: CategoryRuleSet,
) -> Optional[CategorySuggestion]:
    hint = provider_category.lower()
    for mapping in rule_set.provider_mappings:
        if not any(kw.lower() in hint for kw in mapping.provider_keywords):
            continue
        category = find_category(categories, mapping.category_name)
        if category is None:
            return None
        return CategorySuggestion(
            category_id=category.id,
            category_name=category.name,
            confidence=rule_set.provider_confidence,
            reason=f"Mapped from provider category: {provider_category}",
        )
    return None


def categorize_transaction(
    txn: CategorizableTransaction,
    categories: Sequence[CategorySnapshot],
    rule_set: CategoryRuleSet = DEFAULT_RULE_SET,
) -> Optional[CategorySuggestion]:
    text_fields = ((txn.description or "").lower(), (txn.merchant_name or "").lower())
    suggestion = _score_rules(text_fields, categories, rule_set)
    if suggestion is None and txn.provider_category:
        suggestion = _map_provider_category(txn.provider_category, categories, rule_set)
    return suggestion


def plan_category_updates(
    transactions: Iterable[CategorizableTransaction],
    categories: Sequence[CategorySnapshot],
    rule_set: CategoryRuleSet = DEFAULT_RULE_SET,
) -> list[CategoryAssignment]:
    """Assignments confident enough to write automatically.

    Transactions a user categorized are never part of the plan.
    """
    plan: list[CategoryAssignment] = []
    for txn in transactions:
        if txn.user_categorized:
            continue
        suggestion = categorize_transaction(txn, categories, rule_set)
        if suggestion is None or suggestion.confidence < rule_set.auto_apply_threshold:
            continue
        plan.append(CategoryAssignment(transaction_id=txn.id, suggestion=suggestion))
    return plan


def generate_category_suggestions(
    transactions: Iterable[CategorizableTransaction],
    categories: Sequence[CategorySnapshot],
    rule_set: CategoryRuleSet = DEFAULT_RULE_SET,
) -> list[CategoryFrequency]:
    hits: Counter[int] = Counter()
    names: dict[int, str] = {}
    for txn in transactions:
        suggestion = categorize_transaction(txn, categories, rule_set)
        if suggestion and suggestion.confidence >= rule_set.suggestion_threshold:
            hits[suggestion.category_id] += 1
            names[suggestion.category_id] = suggestion.category_name

    results = [
        CategoryFrequency(
            category_id=category_id,
            category_name=names[category_id],
            hits=count,
            confidence=min(count / 10, 1.0),
            reason=f"{count} similar transactions found",
        )
        for category_id, count in hits.items()
        if count >= rule_set.min_suggestion_hits
    ]
    results.sort(key=lambda s: (-s.confidence, s.category_name.lower(), s.category_id))
    return results
