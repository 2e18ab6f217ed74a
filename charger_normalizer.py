"""
Charger Normalizer: Open Charge Map POI → canonical Charger.

Open Charge Map records are community-maintained and wildly inconsistent:
power, cost, status and access fields are each optional, and sometimes
contradict one another.  This module parses a raw POI into typed
optional-field records first, then derives every canonical attribute
through a small rule chain with an explicit fallback at the end.

Nothing here raises on missing or malformed upstream data.  The worst case
is a Charger with level1 power, paid cost, UNKNOWN status and UNKNOWN
access.

Derivation rules:
  - Power tier: max positive connector kW; <=3.7 level1, <=22 level2,
    >22 dc_fast.
  - Free: cost text mentions "free" AND not pay-at-location.  Missing cost
    is never free; over-reporting free chargers is the worse error.
  - Operational: status title / site flag / connector flags, in that order;
    UNKNOWN when nothing is reported.
  - Access: membership flag, access-key flag, then usage-title keywords.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from charger_config import CHARGER_MODEL
from models import (
    AccessCategory,
    Charger,
    Connector,
    OperationalStatus,
    PowerTier,
    coerce_float,
    parse_coordinate,
)

logger = logging.getLogger(__name__)

SPEED_LABELS = {
    PowerTier.LEVEL1: "Level 1",
    PowerTier.LEVEL2: "Level 2",
    PowerTier.DC_FAST: "DC Fast",
    PowerTier.UNKNOWN: "Unknown",
}

# Usage-type title keywords, checked in order after the flag rules
_ACCESS_TITLE_KEYWORDS = (
    ("parking", AccessCategory.PARKING),
    ("public", AccessCategory.PUBLIC),
    ("private", AccessCategory.PRIVATE),
    ("restricted", AccessCategory.RESTRICTED),
)


# =============================================================================
# UPSTREAM RECORDS
# =============================================================================

def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _as_str(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


def _as_flag(value: Any) -> Optional[bool]:
    """Upstream booleans: only real True/False count, anything else is None."""
    return value if isinstance(value, bool) else None


def _as_usage_flag(value: Any) -> Optional[bool]:
    """Usage-type flags also arrive as 0/1 from some upstream records."""
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    return None


@dataclass
class RawStatusType:
    id: Any = None
    title: Optional[str] = None
    is_operational: Optional[bool] = None

    @classmethod
    def from_dict(cls, data: Any) -> Optional["RawStatusType"]:
        if not isinstance(data, dict):
            return None
        return cls(
            id=data.get("ID"),
            title=_as_str(data.get("Title")),
            is_operational=_as_flag(data.get("IsOperational")),
        )


@dataclass
class RawUsageType:
    title: Optional[str] = None
    is_membership_required: Optional[bool] = None
    is_access_key_required: Optional[bool] = None
    is_pay_at_location: Optional[bool] = None

    @classmethod
    def from_dict(cls, data: Any) -> Optional["RawUsageType"]:
        if not isinstance(data, dict):
            return None
        return cls(
            title=_as_str(data.get("Title")),
            is_membership_required=_as_usage_flag(data.get("IsMembershipRequired")),
            is_access_key_required=_as_usage_flag(data.get("IsAccessKeyRequired")),
            is_pay_at_location=_as_usage_flag(data.get("IsPayAtLocation")),
        )


@dataclass
class RawAddressInfo:
    title: Optional[str] = None
    address_line1: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Any) -> "RawAddressInfo":
        data = _as_dict(data)
        return cls(
            title=_as_str(data.get("Title")),
            address_line1=_as_str(data.get("AddressLine1")),
            latitude=coerce_float(data.get("Latitude")),
            longitude=coerce_float(data.get("Longitude")),
        )


@dataclass
class RawConnection:
    connection_type_title: Optional[str] = None
    power_kw: Optional[float] = None
    level_title: Optional[str] = None
    level_id: Any = None
    status: Optional[RawStatusType] = None

    @classmethod
    def from_dict(cls, data: Any) -> "RawConnection":
        data = _as_dict(data)
        return cls(
            connection_type_title=_as_str(_as_dict(data.get("ConnectionType")).get("Title")),
            power_kw=coerce_float(data.get("PowerKW")),
            level_title=_as_str(_as_dict(data.get("Level")).get("Title")),
            level_id=data.get("LevelID"),
            status=RawStatusType.from_dict(data.get("StatusType")),
        )


@dataclass
class RawCharger:
    """One Open Charge Map POI with every field optional."""
    id: Any = None
    address_info: RawAddressInfo = field(default_factory=RawAddressInfo)
    connections: List[RawConnection] = field(default_factory=list)
    usage_cost: Optional[str] = None
    usage_type: Optional[RawUsageType] = None
    status_type: Optional[RawStatusType] = None
    operator_title: Optional[str] = None
    general_comments: Optional[str] = None
    date_last_status_update: Optional[str] = None
    number_of_points: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Any) -> "RawCharger":
        data = _as_dict(data)
        connections = data.get("Connections")
        points = data.get("NumberOfPoints")
        return cls(
            id=data.get("ID"),
            address_info=RawAddressInfo.from_dict(data.get("AddressInfo")),
            connections=[
                RawConnection.from_dict(c)
                for c in (connections if isinstance(connections, list) else [])
            ],
            usage_cost=_as_str(data.get("UsageCost")),
            usage_type=RawUsageType.from_dict(data.get("UsageType")),
            status_type=RawStatusType.from_dict(data.get("StatusType")),
            operator_title=_as_str(_as_dict(data.get("OperatorInfo")).get("Title")),
            general_comments=_as_str(data.get("GeneralComments")),
            date_last_status_update=_as_str(data.get("DateLastStatusUpdate")),
            number_of_points=points if isinstance(points, int) and not isinstance(points, bool) else None,
        )


# =============================================================================
# DERIVATION RULES
# =============================================================================

def derive_power_tier(max_power_kw: float) -> PowerTier:
    """Classify charging speed from the highest reported connector power.

    Zero (nothing reported) lands in level1.  Only a value that compares
    false against every bound, i.e. NaN, is UNKNOWN.
    """
    tiers = CHARGER_MODEL.power_tiers
    if max_power_kw <= tiers.level1_max_kw:
        return PowerTier.LEVEL1
    if max_power_kw <= tiers.level2_max_kw:
        return PowerTier.LEVEL2
    if max_power_kw > tiers.level2_max_kw:
        return PowerTier.DC_FAST
    return PowerTier.UNKNOWN


def derive_is_free(usage_cost: Optional[str], is_pay_at_location: Optional[bool]) -> bool:
    if not usage_cost:
        return False
    return "free" in usage_cost.lower() and is_pay_at_location is not True


def derive_cost_label(
    usage_cost: Optional[str],
    is_free: bool,
    is_pay_at_location: Optional[bool],
) -> str:
    if usage_cost:
        return usage_cost
    if is_free:
        return "Free"
    if is_pay_at_location is True:
        return "Pay At Location"
    return "Paid"


def derive_operational_status(
    status_type: Optional[RawStatusType],
    connections: List[RawConnection],
) -> OperationalStatus:
    title = ((status_type.title if status_type else None) or "").lower()
    site_flag = status_type.is_operational if status_type else None

    if site_flag is False or any(k in title for k in CHARGER_MODEL.non_operational_keywords):
        return OperationalStatus.NOT_OPERATIONAL
    if site_flag is True:
        return OperationalStatus.OPERATIONAL
    if any(c.status is not None and c.status.is_operational is True for c in connections):
        return OperationalStatus.OPERATIONAL
    return OperationalStatus.UNKNOWN


def derive_access_category(usage_type: Optional[RawUsageType]) -> AccessCategory:
    if usage_type is None:
        return AccessCategory.UNKNOWN
    if usage_type.is_membership_required:
        return AccessCategory.PERMIT
    if usage_type.is_access_key_required:
        return AccessCategory.RESTRICTED
    title = (usage_type.title or "").lower()
    for keyword, category in _ACCESS_TITLE_KEYWORDS:
        if keyword in title:
            return category
    return AccessCategory.UNKNOWN


def _level_label(conn: RawConnection) -> str:
    if conn.level_title:
        return conn.level_title
    if conn.level_id:
        return f"Level {conn.level_id}"
    return "Unknown"


def _build_connector(conn: RawConnection) -> Connector:
    return Connector(
        type=conn.connection_type_title or "Unknown",
        power_kw=conn.power_kw or 0.0,
        level_label=_level_label(conn),
        status=conn.status.title if conn.status else None,
        is_operational_raw=conn.status.is_operational if conn.status else None,
    )


# =============================================================================
# NORMALIZATION
# =============================================================================

def normalize_charger(raw: Union[RawCharger, Dict[str, Any]]) -> Charger:
    """Map one upstream POI (parsed or raw dict) to a canonical Charger."""
    if not isinstance(raw, RawCharger):
        raw = RawCharger.from_dict(raw)

    connectors = [_build_connector(c) for c in raw.connections]

    power_values = [c.power_kw for c in connectors if c.power_kw > 0]
    max_power = max(power_values) if power_values else 0.0
    min_power = min(power_values) if power_values else 0.0
    has_multiple = len(power_values) > 1 and min_power != max_power
    tier = derive_power_tier(max_power)

    usage = raw.usage_type
    pay_at_location = usage.is_pay_at_location if usage else None
    is_free = derive_is_free(raw.usage_cost, pay_at_location)

    status = raw.status_type
    addr = raw.address_info

    return Charger(
        id=raw.id,
        name=addr.title or "Unnamed Charger",
        address=addr.address_line1 or "",
        coordinate=parse_coordinate((addr.latitude, addr.longitude)),
        connectors=connectors,
        max_power_kw=max_power,
        min_power_kw=min_power if has_multiple else None,
        has_multiple_power_levels=has_multiple,
        power_tier=tier,
        speed_label=SPEED_LABELS[tier],
        is_free=is_free,
        cost_label=derive_cost_label(raw.usage_cost, is_free, pay_at_location),
        operational_status=derive_operational_status(status, raw.connections),
        status_title=(status.title if status else None) or "Unknown status",
        status_last_updated=raw.date_last_status_update,
        access_category=derive_access_category(usage),
        access_title=(usage.title if usage else None) or "Unknown access",
        is_membership_required=usage.is_membership_required if usage else None,
        is_pay_at_location=pay_at_location,
        number_of_points=raw.number_of_points or len(connectors) or None,
        operator=raw.operator_title,
        comments=raw.general_comments or "",
        has_live_status=any(c.status for c in connectors),
    )
