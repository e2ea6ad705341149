"""
Cost and creator-reward calculations.

Pure functions: nothing here touches the store or the ledger. The correlator
feeds in timestamps, the captured cost rate and the owning creators, and gets
back the amounts to settle.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional


UNIT_SECONDS: Dict[str, int] = {
    "s": 1,
    "sec": 1,
    "second": 1,
    "seconds": 1,
    "minute": 60,
    "minutes": 60,
    "hour": 3600,
    "hours": 3600,
}


@dataclass(frozen=True)
class RewardShare:
    """One creator's slice of the surcharge."""
    account_id: str
    shares: int
    amount: Decimal


@dataclass(frozen=True)
class SettlementQuote:
    """What a successful generation costs and who gets paid."""
    base_cost: Decimal
    surcharge: Decimal
    rewards: List[RewardShare] = field(default_factory=list)

    @property
    def total_rewards(self) -> Decimal:
        return sum((r.amount for r in self.rewards), Decimal("0"))

    @property
    def total_charge(self) -> Decimal:
        # The consumer pays only what is actually distributed on top of base cost.
        return self.base_cost + self.total_rewards


def quantum(places: int) -> Decimal:
    return Decimal(1).scaleb(-max(0, int(places)))


def to_money(value: Any, places: int = 6, rounding: str = ROUND_HALF_UP) -> Decimal:
    """Coerce a number or numeric string to a fixed-point amount.

    Raises:
        ValueError: If the value is not a finite number
    """
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValueError(f"Invalid amount: {value!r}") from exc
    if not amount.is_finite():
        raise ValueError(f"Invalid amount: {value!r}")
    return amount.quantize(quantum(places), rounding=rounding)


def run_duration_seconds(started_at: Optional[datetime], ended_at: Optional[datetime]) -> Decimal:
    """Elapsed seconds between start and end, clamped to zero.

    A missing start or end yields zero so a record with broken timing can never
    produce a negative or unbounded charge.
    """
    if started_at is None or ended_at is None:
        return Decimal("0")
    delta = Decimal(str((ended_at - started_at).total_seconds()))
    return delta if delta > 0 else Decimal("0")


def compute_cost(duration_seconds: Decimal, amount: Any, unit: str, places: int = 6) -> Optional[Decimal]:
    """Base cost for a run, or None when the rate unit is not time-based."""
    seconds_per_unit = UNIT_SECONDS.get(str(unit or "").strip().lower())
    if seconds_per_unit is None:
        return None
    rate = to_money(amount, places=max(places, 12))
    if rate < 0:
        return None
    return to_money(duration_seconds * rate / Decimal(seconds_per_unit), places)


def creator_shares(owner_ids: Iterable[Optional[str]], consumer_id: str) -> Dict[str, int]:
    """Count one share per owned asset, skipping the consumer's own assets."""
    shares: Dict[str, int] = {}
    for owner in owner_ids:
        if not owner:
            continue
        owner = str(owner)
        if owner == str(consumer_id):
            continue
        shares[owner] = shares.get(owner, 0) + 1
    return shares


def quote_settlement(
    base_cost: Decimal,
    fee_pct: Any,
    owner_ids: Iterable[Optional[str]],
    consumer_id: str,
    places: int = 6,
) -> SettlementQuote:
    base_cost = to_money(base_cost, places)
    shares = creator_shares(owner_ids, consumer_id)
    total_shares = sum(shares.values())
    if base_cost <= 0 or total_shares == 0:
        return SettlementQuote(base_cost=base_cost, surcharge=Decimal("0"))
    pct = Decimal(str(fee_pct))
    if pct <= 0:
        return SettlementQuote(base_cost=base_cost, surcharge=Decimal("0"))
    surcharge = to_money(base_cost * pct, places, rounding=ROUND_DOWN)
    per_share = to_money(surcharge / Decimal(total_shares), places, rounding=ROUND_DOWN)
    if per_share <= 0:
        return SettlementQuote(base_cost=base_cost, surcharge=surcharge)
    rewards = [
        RewardShare(account_id=owner, shares=count, amount=per_share * count)
        for owner, count in shares.items()
    ]
    return SettlementQuote(base_cost=base_cost, surcharge=surcharge, rewards=rewards)
