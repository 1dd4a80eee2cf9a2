from __future__ import annotations

from typing import Iterable

from caseflow.schemas.production import ShipmentRef
from caseflow.services.production_errors import ShipmentLockedError


def locked_shipment_ids(selection: Iterable[ShipmentRef]) -> list[str]:
    return [ref.shipment_id for ref in selection if ref.production_uploaded]


def ensure_unlocked(selection: Iterable[ShipmentRef]) -> None:
    """
    Refuse a batch when any selected shipment already carries production data.

    Advisory only: the backend enforces the same transition atomically.
    """
    locked = locked_shipment_ids(selection)
    if locked:
        raise ShipmentLockedError(shipment_ids=locked)
