"""Parsers to convert provider JSON payloads into table rows."""

from typing import Any, Optional
import logging

from fleetsync.services.provider import to_num, to_int, to_epoch_ms

logger = logging.getLogger(__name__)


class MalformedPayloadError(ValueError):
    """Raised when a successful response is missing fields the row cannot do without."""
    pass


def _require_dict(data: Any, context: str) -> dict:
    if not isinstance(data, dict):
        raise MalformedPayloadError(f"{context}: expected an object, got {type(data).__name__}")
    return data


def _as_rows(data: Any) -> list[dict]:
    """History endpoints return a list of readings; anything else means no readings."""
    if not isinstance(data, list):
        return []
    return [row for row in data if isinstance(row, dict)]


def parse_mapping(data: Any) -> list[dict[str, Any]]:
    """Parse the roster into `{vehicleno, deviceno, raw}` entries, one per vehicle."""
    if not isinstance(data, list):
        raise MalformedPayloadError(f"vehicle mapping: expected a list, got {type(data).__name__}")

    entries: dict[str, dict[str, Any]] = {}
    for row in data:
        if not isinstance(row, dict):
            continue
        vehicleno = row.get("vehicleno")
        deviceno = row.get("deviceno")
        if not vehicleno or not deviceno:
            continue
        entries[str(vehicleno)] = {"vehicleno": str(vehicleno), "deviceno": str(deviceno), "raw": row}

    logger.debug(f"Parsed {len(entries)} roster entries from {len(data)} rows")
    return list(entries.values())


def parse_gps_latest(data: Any, vehicleno: str) -> dict[str, Any]:
    d = _require_dict(data, "GPS latest")
    commtime_ms = to_epoch_ms(d.get("commtime"))
    lat, lng = to_num(d.get("lat")), to_num(d.get("lng"))
    if commtime_ms is None or lat is None or lng is None:
        raise MalformedPayloadError(f"GPS latest for {vehicleno} is missing commtime/lat/lng")

    return {
        "vehicleno": vehicleno,
        "commtime_ms": commtime_ms,
        "lat": lat,
        "lng": lng,
        "alti": to_num(d.get("alti")),
        "devbattery": to_num(d.get("devbattery")),
        "vehbattery": to_num(d.get("vehbattery")),
        "speed": to_num(d.get("speed")),
        "heading": to_num(d.get("heading")),
        "ignstatus": to_int(d.get("ignstatus")),
        "mobili": to_int(d.get("mobili")),
        "dout_1": to_int(d.get("dout_1")),
        "dout_2": to_int(d.get("dout_2")),
        "raw": d,
    }


def parse_can_latest(data: Any, vehicleno: str) -> dict[str, Any]:
    """Each CAN metric arrives as `{value, timestamp}`."""
    d = _require_dict(data, "CAN latest")
    row: dict[str, Any] = {"vehicleno": vehicleno, "raw": d}

    timestamps = []
    for metric in ("soc", "battery_temp", "battery_voltage", "current"):
        entry = d.get(metric) if isinstance(d.get(metric), dict) else {}
        ts_ms = to_epoch_ms(entry.get("timestamp"))
        row[f"{metric}_value"] = to_num(entry.get("value"))
        row[f"{metric}_ts_ms"] = ts_ms
        if ts_ms is not None:
            timestamps.append(ts_ms)

    row["reading_ms"] = max(timestamps) if timestamps else None
    return row


def parse_fuel_latest(data: Any, vehicleno: str) -> dict[str, Any]:
    d = _require_dict(data, "Fuel latest")
    fueltime_ms = to_epoch_ms(d.get("fueltime"))
    if fueltime_ms is None:
        raise MalformedPayloadError(f"Fuel latest for {vehicleno} is missing fueltime")

    return {
        "vehicleno": vehicleno,
        "fueltime_ms": fueltime_ms,
        "fuellevel_pct": to_num(d.get("fuellevel")),
        "fuellevel_litres": to_num(d.get("fuellevellitres")),
        "raw": d,
    }


def parse_gps_history(data: Any, vehicleno: str) -> list[dict[str, Any]]:
    """Parse GPS track points. Points without usable coordinates are dropped."""
    rows = []
    for d in _as_rows(data):
        commtime_ms = to_epoch_ms(d.get("commtime"))
        lat, lng = to_num(d.get("lat")), to_num(d.get("lng"))
        if commtime_ms is None or lat is None or lng is None:
            continue
        rows.append({
            "vehicleno": vehicleno,
            "commtime_ms": commtime_ms,
            "lat": lat,
            "lng": lng,
            "alti": to_num(d.get("alti")),
            "speed": to_num(d.get("speed")),
            "heading": to_num(d.get("heading")),
            "ignstatus": to_int(d.get("ignstatus")),
            "mobili": to_int(d.get("mobili")),
            "devbattery": to_num(d.get("devbattery")),
            "vehbattery": to_num(d.get("vehbattery")),
            "raw": d,
        })

    logger.debug(f"Parsed {len(rows)} GPS history points for {vehicleno}")
    return rows


def parse_can_history(data: Any, vehicleno: str) -> list[dict[str, Any]]:
    rows = []
    for d in _as_rows(data):
        time_ms = to_epoch_ms(d.get("time"))
        if time_ms is None:
            continue
        rows.append({
            "vehicleno": vehicleno,
            "time_ms": time_ms,
            "soc": to_num(d.get("soc")),
            "soh": to_num(d.get("soh")),
            "battery_temp": to_num(d.get("battery_temp")),
            "battery_voltage": to_num(d.get("battery_voltage")),
            "current": to_num(d.get("current")),
            "charge_cycle": to_int(d.get("charge_cycle")),
            "raw": d,
        })
    return rows


def parse_fuel_history(data: Any, vehicleno: str, in_litres: bool) -> list[dict[str, Any]]:
    rows = []
    for d in _as_rows(data):
        time_ms = to_epoch_ms(d.get("time"))
        if time_ms is None:
            continue
        rows.append({
            "vehicleno": vehicleno,
            "time_ms": time_ms,
            "in_litres": in_litres,
            "value": to_num(d.get("value")),
            "raw": d,
        })
    return rows


def parse_distance(data: Any) -> Optional[float]:
    """
    Extract the distance travelled from a distance response.

    The provider answers with `{distance}`, a list whose first entry holds
    `distance` or `value`, or a bare number. An empty list means no movement.
    """
    if isinstance(data, dict):
        value = data.get("distance")
    elif isinstance(data, list):
        if not data:
            return 0.0
        first = data[0]
        value = first.get("distance", first.get("value")) if isinstance(first, dict) else first
    else:
        value = data
    return to_num(value)


def flatten_distance_rows(data: Any) -> list[dict[str, Any]]:
    """Flatten `startLoc`/`endLoc` objects into start_lat/start_lng/end_lat/end_lng columns."""
    if isinstance(data, list):
        items = [d for d in data if isinstance(d, dict)]
    elif isinstance(data, dict):
        items = [data]
    elif data is not None:
        items = [{"distance": data}]
    else:
        items = []

    flattened = []
    for item in items:
        flat = dict(item)
        for key, prefix in (("startLoc", "start"), ("endLoc", "end")):
            loc = flat.pop(key, None)
            if isinstance(loc, dict):
                flat[f"{prefix}_lat"] = loc.get("lat")
                flat[f"{prefix}_lng"] = loc.get("lng")
        flattened.append(flat)
    return flattened

