"""Restore snapshots captured at reservation time.

A swap job stores one of two variants, tagged by ``kind`` in its JSON form:

- ``FullRestore``: the exact Holding row a sell reserved against, written back
  verbatim on rollback.
- ``PartialRestore``: what a buy took out of the ledger (the reserved balance
  and the pending inbound amount), handed back on rollback.
"""

import json
from dataclasses import asdict, dataclass
from decimal import Decimal
from typing import ClassVar, Union


@dataclass(frozen=True)
class FullRestore:
    """Pre-reservation Holding row of a sell."""

    kind: ClassVar[str] = "full"

    asset: str
    amount: Decimal
    total_cost_basis: Decimal
    average_entry_price: Decimal
    # Row state right after the reservation; used to detect later changes
    amount_after: Decimal
    cost_basis_after: Decimal

    @property
    def amount_reserved(self) -> Decimal:
        return self.amount - self.amount_after

    @property
    def cost_basis_reserved(self) -> Decimal:
        return self.total_cost_basis - self.cost_basis_after


@dataclass(frozen=True)
class PartialRestore:
    """Balance and pending inbound amount taken by a buy."""

    kind: ClassVar[str] = "partial"

    asset: str
    balance_refund: Decimal
    pending_amount: Decimal


RestoreSnapshot = Union[FullRestore, PartialRestore]

_VARIANTS = {cls.kind: cls for cls in (FullRestore, PartialRestore)}


def dump_snapshot(snapshot: RestoreSnapshot) -> str:
    """Serialize a snapshot with its variant tag."""
    data = {key: str(value) if isinstance(value, Decimal) else value
            for key, value in asdict(snapshot).items()}
    data["kind"] = snapshot.kind
    return json.dumps(data, sort_keys=True)


def load_snapshot(raw: str) -> RestoreSnapshot:
    """Parse a stored snapshot back into its variant."""
    data = json.loads(raw)
    kind = data.pop("kind", None)
    cls = _VARIANTS.get(kind)
    if cls is None:
        raise ValueError(f"Unknown restore snapshot kind: {kind!r}")
    fields = {
        key: value if key == "asset" else Decimal(value)
        for key, value in data.items()
    }
    return cls(**fields)
