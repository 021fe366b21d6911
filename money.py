from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Optional, Sequence, Union

Numericish = Union[Decimal, float, int, str, None]

CENT = Decimal("0.01")
ZERO = Decimal("0")
# largest value a Numeric(14, 2) column holds
MAX_AMOUNT = Decimal("999999999999.99")


class AmountOutOfRange(ValueError):
    pass


def to_number(value: Numericish) -> Decimal:
    """Coerce a database or user value into a Decimal; bad input becomes 0."""
    if value is None or isinstance(value, bool):
        return ZERO
    if isinstance(value, Decimal):
        return value if value.is_finite() else ZERO
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        # str() keeps the shortest repr instead of the binary expansion
        parsed = Decimal(str(value))
        return parsed if parsed.is_finite() else ZERO
    try:
        parsed = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return ZERO
    return parsed if parsed.is_finite() else ZERO


def round_money(value: Numericish) -> Decimal:
    return to_number(value).quantize(CENT, rounding=ROUND_HALF_UP)


def to_money_string(value: Numericish) -> str:
    return f"{round_money(value):.2f}"


def normalize_planned_amount(value: Numericish) -> Decimal:
    amount = to_number(value)
    if amount > MAX_AMOUNT:
        raise AmountOutOfRange(f"Amount must not exceed {MAX_AMOUNT}")
    return amount


def normalize_note(note: Optional[str]) -> Optional[str]:
    if not note:
        return None
    trimmed = note.strip()
    return trimmed or None


def allocate(amount: Numericish, weights: Sequence[Numericish]) -> list[Decimal]:
    """
    Split ``amount`` into cent shares proportional to ``weights``.

    Uses the largest-remainder method so the shares always add up to the
    rounded amount. Ties go to the earlier position. All-zero weights split
    evenly.
    """
    if not weights:
        return []
    total_cents = int(round_money(amount) * 100)
    weight_cents = [max(0, int(round_money(w) * 100)) for w in weights]
    if sum(weight_cents) == 0:
        weight_cents = [1] * len(weights)
    weight_total = sum(weight_cents)

    floors: list[int] = []
    remainders: list[tuple[int, int]] = []
    for idx, weight in enumerate(weight_cents):
        share, remainder = divmod(total_cents * weight, weight_total)
        floors.append(share)
        remainders.append((remainder, idx))

    leftover = total_cents - sum(floors)
    for _, idx in sorted(remainders, key=lambda item: (-item[0], item[1]))[:leftover]:
        floors[idx] += 1
    return [(Decimal(cents) / 100).quantize(CENT) for cents in floors]
