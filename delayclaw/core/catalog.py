"""
Product catalogues and amount parsing.

A catalogue is a YAML list of product terms:

    - id: 1
      label: Domestic Basic (60m, $100)
      delay_threshold_minutes: 60
      coverage_amount: 100_000_000     # fixed point, 6 decimals
      premium_rate_bps: 120
      claim_window_hours: 24
"""

from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import List, Union

import yaml

from delayclaw.core.exceptions import ConfigurationError, ValidationError
from delayclaw.core.models import BASIS_POINTS, FIXED_POINT_SCALE, Product

_REQUIRED = (
    "id",
    "delay_threshold_minutes",
    "coverage_amount",
    "premium_rate_bps",
    "claim_window_hours",
)


def load_product_catalog(path: Union[str, Path]) -> List[Product]:
    path = Path(path)
    try:
        data = yaml.safe_load(path.read_text())
    except OSError as exc:
        raise ConfigurationError(f"Cannot read catalogue {path}: {exc}")
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Invalid YAML in {path}: {exc}")
    if not isinstance(data, list) or not data:
        raise ConfigurationError(f"Catalogue {path} must be a non-empty list of products")

    products: List[Product] = []
    seen = set()
    for index, entry in enumerate(data):
        if not isinstance(entry, dict):
            raise ConfigurationError(f"Catalogue entry {index} is not a mapping")
        missing = [k for k in _REQUIRED if k not in entry]
        if missing:
            raise ConfigurationError(
                f"Catalogue entry {index} is missing {', '.join(missing)}"
            )
        try:
            product = Product(
                id=                      int(entry["id"]),
                delay_threshold_minutes= int(entry["delay_threshold_minutes"]),
                coverage_amount=         int(entry["coverage_amount"]),
                premium_rate_bps=        int(entry["premium_rate_bps"]),
                claim_window_hours=      int(entry["claim_window_hours"]),
                label=                   str(entry.get("label", "")),
            )
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"Catalogue entry {index}: {exc}")
        if product.premium_rate_bps > BASIS_POINTS:
            raise ConfigurationError(f"Catalogue entry {index}: premium_rate_bps above {BASIS_POINTS}")
        if product.id in seen:
            raise ConfigurationError(f"Catalogue lists product {product.id} twice")
        seen.add(product.id)
        products.append(product)
    return products


def parse_amount(value: str) -> int:
    """'12.5' USDC -> 12_500_000 fixed-point units. Sub-unit precision is rejected."""
    try:
        amount = Decimal(str(value)) * FIXED_POINT_SCALE
    except InvalidOperation:
        raise ValidationError(f"Invalid amount {value!r}")
    if amount <= 0 or amount != amount.to_integral_value():
        raise ValidationError(
            f"Amount must be positive with at most 6 decimals, got {value!r}"
        )
    return int(amount)


def format_amount(units: int) -> str:
    """12_500_000 -> '12.5'"""
    text = f"{Decimal(units) / FIXED_POINT_SCALE:f}"
    return text.rstrip("0").rstrip(".") if "." in text else text
