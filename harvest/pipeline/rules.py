"""Field extraction rule sets and the category classifier.

Rule sets are loaded once at import time into a read-only registry. Selectors are
kept for documentation only; matching is text based (see heuristic.py).
"""

from __future__ import annotations

from enum import Enum
from types import MappingProxyType

from pydantic import BaseModel, field_validator


class MatchStrategy(str, Enum):
    """How a rule locates its value in the page text."""

    TITLE = "title"
    PRICE = "price"
    DESCRIPTION = "description"
    RATING = "rating"
    IMAGES = "images"
    LINKS = "links"
    GENERIC = "generic"


class ExtractionRule(BaseModel):
    """A single named field rule."""

    name: str
    match_strategy: MatchStrategy = MatchStrategy.GENERIC
    required: bool = False
    multiple: bool = False
    selector: str = ""

    model_config = {"frozen": True}


class RuleSet(BaseModel):
    """Ordered rules for one site category. Rule names are unique."""

    category: str
    rules: tuple[ExtractionRule, ...]

    model_config = {"frozen": True}

    @field_validator("rules")
    @classmethod
    def _validate_unique_names(
        cls, value: tuple[ExtractionRule, ...]
    ) -> tuple[ExtractionRule, ...]:
        names = [rule.name for rule in value]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"Duplicate rule names: {duplicates}")
        return value

    @property
    def required_rules(self) -> tuple[ExtractionRule, ...]:
        return tuple(rule for rule in self.rules if rule.required)

    def __len__(self) -> int:
        return len(self.rules)


CUSTOM_CATEGORY = "custom"
GENERAL_CATEGORY = "general"


def strategy_for_field(name: str) -> MatchStrategy:
    """Pick a match strategy from a field name; unknown names use GENERIC."""
    try:
        return MatchStrategy(name.lower())
    except ValueError:
        return MatchStrategy.GENERIC


def rules_from_selectors(selectors: dict[str, str]) -> RuleSet:
    """Build a caller-supplied override rule set from field name -> selector."""
    rules: list[ExtractionRule] = []
    for name, selector in selectors.items():
        strategy = strategy_for_field(name)
        rules.append(
            ExtractionRule(
                name=name,
                match_strategy=strategy,
                multiple=strategy in (MatchStrategy.IMAGES, MatchStrategy.LINKS),
                selector=selector,
            )
        )
    return RuleSet(category=CUSTOM_CATEGORY, rules=tuple(rules))


def _rule(
    name: str,
    selector: str,
    strategy: MatchStrategy = MatchStrategy.GENERIC,
    required: bool = False,
    multiple: bool = False,
) -> ExtractionRule:
    return ExtractionRule(
        name=name,
        match_strategy=strategy,
        required=required,
        multiple=multiple,
        selector=selector,
    )


_DEFAULT_RULE_SETS = (
    RuleSet(
        category="ecommerce",
        rules=(
            _rule("title", 'h1, .product-title, [data-testid="product-title"]',
                  MatchStrategy.TITLE, required=True),
            _rule("price", '.price, .product-price, [data-testid="price"]',
                  MatchStrategy.PRICE, required=True),
            _rule("description", '.description, .product-description, [data-testid="description"]',
                  MatchStrategy.DESCRIPTION),
            _rule("images", 'img[src*="product"], .product-image img',
                  MatchStrategy.IMAGES, multiple=True),
            _rule("rating", '.rating, .stars, [data-testid="rating"]', MatchStrategy.RATING),
            _rule("reviews", ".review, .customer-review", multiple=True),
        ),
    ),
    RuleSet(
        category="realestate",
        rules=(
            _rule("address", '.address, .property-address, [data-testid="address"]',
                  required=True),
            _rule("price", '.price, .property-price, [data-testid="price"]',
                  MatchStrategy.PRICE, required=True),
            _rule("bedrooms", '.beds, .bedrooms, [data-testid="beds"]'),
            _rule("bathrooms", '.baths, .bathrooms, [data-testid="baths"]'),
            _rule("sqft", '.sqft, .square-feet, [data-testid="sqft"]'),
            _rule("images", ".property-image img, .listing-image img",
                  MatchStrategy.IMAGES, multiple=True),
        ),
    ),
    RuleSet(
        category="travel",
        rules=(
            _rule("destination", ".destination, .hotel-name, .flight-destination", required=True),
            _rule("price", '.price, .cost, [data-testid="price"]',
                  MatchStrategy.PRICE, required=True),
            _rule("dates", ".dates, .check-in, .departure-date"),
            _rule("rating", '.rating, .stars, [data-testid="rating"]', MatchStrategy.RATING),
            _rule("amenities", ".amenities li, .features li", multiple=True),
        ),
    ),
    RuleSet(
        category="healthcare",
        rules=(
            _rule("drugName", ".drug-name, .medication-name, h1", required=True),
            _rule("price", '.price, .cost, [data-testid="price"]', MatchStrategy.PRICE),
            _rule("dosage", ".dosage, .strength"),
            _rule("manufacturer", ".manufacturer, .brand"),
            _rule("sideEffects", ".side-effects li, .warnings li", multiple=True),
        ),
    ),
    RuleSet(
        category=GENERAL_CATEGORY,
        rules=(
            _rule("title", "h1, title, .main-title", MatchStrategy.TITLE),
            _rule("content", ".content, .main-content, article, .post-content"),
            _rule("links", "a[href]", MatchStrategy.LINKS, multiple=True),
            _rule("images", "img[src]", MatchStrategy.IMAGES, multiple=True),
        ),
    ),
)

RULE_SETS: MappingProxyType[str, RuleSet] = MappingProxyType(
    {rule_set.category: rule_set for rule_set in _DEFAULT_RULE_SETS}
)

# Category -> (URL keywords, content keywords). Tuple order is the priority order.
CATEGORY_KEYWORDS: tuple[tuple[str, tuple[str, ...], tuple[str, ...]], ...] = (
    (
        "ecommerce",
        ("shop", "store", "product", "buy", "cart", "amazon", "ebay"),
        ("add to cart", "buy now", "price", "$", "product"),
    ),
    (
        "realestate",
        ("realtor", "zillow", "realty", "homes", "property"),
        ("bedrooms", "bathrooms", "sqft", "listing", "mls"),
    ),
    (
        "travel",
        ("booking", "hotel", "flight", "travel", "expedia", "airbnb"),
        ("check-in", "check-out", "nights", "guests", "amenities"),
    ),
    (
        "healthcare",
        ("drug", "medication", "pharmacy", "health", "medical"),
        ("dosage", "side effects", "prescription", "mg", "tablet"),
    ),
)


def _contains_any(text: str, keywords: tuple[str, ...]) -> bool:
    return any(keyword in text for keyword in keywords)


def detect_rule_set(url: str, content: str) -> RuleSet:
    """Select a rule set from URL and page text keyword signals.

    Categories are tried in fixed priority order; the first with any URL or
    content keyword wins regardless of how many keywords match. Falls back to
    the general rule set.
    """
    url_lower = url.lower()
    content_lower = content.lower()

    for category, url_keywords, content_keywords in CATEGORY_KEYWORDS:
        if _contains_any(url_lower, url_keywords) or _contains_any(
            content_lower, content_keywords
        ):
            return RULE_SETS[category]

    return RULE_SETS[GENERAL_CATEGORY]
