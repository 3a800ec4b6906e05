"""
Raid Engine for result, error and rank calculation.

Implements:
- Distance validation (raid parameters, points, discounts)
- Team check-in validation against the distance
- Team results: leg duration plus penalties for missed points
- Discount intervals that reduce penalties for missed points
- Competition ranking with rank coefficients and user ratings
- Data file import from the chip station app
"""

import json
import os
from datetime import datetime
import pytz

RAID_TZ = pytz.timezone(os.environ.get("RAID_TZ", "Europe/Moscow"))

# ── Point Types ─────────────────────────────────────────────────
POINT_START = 1
POINT_FINISH = 2
POINT_MANDATORY = 3
POINT_OPTIONAL = 4
POINT_CONTROL = 5
POINT_TYPES = {
    POINT_START: "start",
    POINT_FINISH: "finish",
    POINT_MANDATORY: "mandatory",
    POINT_OPTIONAL: "optional",
    POINT_CONTROL: "control",
}

# Chip initialisation pseudo point
INIT_POINT = 0

STATUS_FINISHED = "finished"
STATUS_DNF = "dnf"


class DataFileError(ValueError):
    """Uploaded data file cannot be decoded or is inconsistent."""


# ── Formatting ──────────────────────────────────────────────────
def format_duration(seconds):
    """Seconds -> H:MM:SS, '-' when there is no value."""
    if seconds is None:
        return "-"
    seconds = int(seconds)
    sign = "-" if seconds < 0 else ""
    seconds = abs(seconds)
    return f"{sign}{seconds // 3600}:{seconds % 3600 // 60:02d}:{seconds % 60:02d}"


def format_time(ts):
    """Unixtime -> 'dd.mm.yyyy HH:MM' in the raid timezone."""
    if not ts:
        return "-"
    dt = datetime.fromtimestamp(int(ts), tz=pytz.utc).astimezone(RAID_TZ)
    return dt.strftime("%d.%m.%Y %H:%M")


# ── Distance Helpers ────────────────────────────────────────────
def get_points(raid):
    """Points of a raid keyed by int number (JSON stores keys as strings)."""
    return {int(num): p for num, p in raid.get("points", {}).items()}


def _point_of_type(points, ptype):
    for num in sorted(points):
        if points[num].get("type") == ptype:
            return num
    return None


# ── Error Search ────────────────────────────────────────────────
def find_distance_errors(raid):
    """Check raid parameters, points and discounts. Returns a list of messages."""
    errors = []
    if int(raid.get("raid_id", 0)) <= 0:
        errors.append("Raid id must be positive")
    readonly = int(raid.get("time_readonly", 0) or 0)
    finish = int(raid.get("time_finish", 0) or 0)
    if readonly <= 0:
        errors.append("Readonly time is not set")
    if finish <= 0:
        errors.append("Finish time is not set")
    if readonly > 0 and finish > 0 and finish <= readonly:
        errors.append("Finish time is not after readonly time")
    if not raid.get("name"):
        errors.append("Raid name is empty")

    points = get_points(raid)
    if not points:
        errors.append("Distance has no points")
    elif len(points) < 2:
        errors.append("Distance has fewer than two points")
    if points and _point_of_type(points, POINT_START) is None:
        errors.append("Distance has no start point")
    if points and _point_of_type(points, POINT_FINISH) is None:
        errors.append("Distance has no finish point")
    for num in sorted(points):
        p = points[num]
        label = f"Point {num}"
        ptype = p.get("type", 0)
        if ptype not in POINT_TYPES:
            errors.append(f"{label}: unknown type {ptype}")
        if p.get("penalty", 0) < 0:
            errors.append(f"{label}: negative penalty")
        start = p.get("start", 0) or 0
        end = p.get("end", 0) or 0
        if start > 0 and end < start:
            errors.append(f"{label}: closes before it opens")
        if not p.get("name"):
            errors.append(f"{label}: empty name")

    for i, d in enumerate(raid.get("discounts", []), 1):
        label = f"Discount {i}"
        if d.get("minutes", 0) <= 0:
            errors.append(f"{label}: value must be positive")
        lo, hi = d.get("from", 0), d.get("to", 0)
        if lo <= 0 or hi <= 0 or lo >= hi:
            errors.append(f"{label}: invalid interval {lo}-{hi}")
            continue
        if lo not in points or hi not in points:
            errors.append(f"{label}: interval {lo}-{hi} refers to missing points")
    return errors


def find_team_errors(raid, teams):
    """Check team numbers and chip check-ins against the distance."""
    errors = []
    points = get_points(raid)
    by_number = {}
    for t in teams:
        num = t.get("number")
        if num in by_number:
            errors.append(f"Team number {num} is used by more than one team")
        by_number[num] = t

    for chip in raid.get("chips", []):
        num = chip.get("team_number")
        pnum = chip.get("point_number")
        if num not in by_number:
            errors.append(f"Check-in for unknown team {num} at point {pnum}")
            continue
        if pnum == INIT_POINT:
            continue
        if pnum not in points:
            errors.append(f"Team {num}: check-in at unknown point {pnum}")
            continue
        p = points[pnum]
        ts = chip.get("point_time", 0)
        start = p.get("start", 0) or 0
        end = p.get("end", 0) or 0
        if start and ts < start:
            errors.append(f"Team {num}: check-in at point {pnum} before it opens")
        elif end and ts > end:
            errors.append(f"Team {num}: check-in at point {pnum} after it closes")
        if not chip.get("team_mask"):
            errors.append(f"Team {num}: empty member mask at point {pnum}")

    start_num = _point_of_type(points, POINT_START)
    finish_num = _point_of_type(points, POINT_FINISH)
    if start_num is not None and finish_num is not None:
        for t in teams:
            visits = team_visits(raid, t.get("number"))
            if start_num in visits and finish_num in visits and visits[finish_num] <= visits[start_num]:
                errors.append(f"Team {t.get('number')}: finish time is not after start time")
    return errors


def find_raid_errors(raid, teams):
    return find_distance_errors(raid) + find_team_errors(raid, teams)


# ── Results ─────────────────────────────────────────────────────
def team_visits(raid, team_number):
    """First visit time per point for a team, init point excluded."""
    visits = {}
    for chip in raid.get("chips", []):
        if chip.get("team_number") != team_number:
            continue
        pnum = chip.get("point_number")
        if pnum == INIT_POINT:
            continue
        ts = chip.get("point_time")
        if pnum not in visits or ts < visits[pnum]:
            visits[pnum] = ts
    return visits


def _penalty_minutes(points, missed, discounts):
    """Sum missed point penalties; each discount interval absorbs up to its minutes."""
    covered = set()
    total = 0
    for d in discounts:
        lo, hi = d.get("from", 0), d.get("to", 0)
        in_range = [n for n in missed if lo <= n <= hi and n not in covered]
        covered.update(in_range)
        interval = sum(points[n].get("penalty", 0) for n in in_range)
        total += max(0, interval - d.get("minutes", 0))
    for n in missed:
        if n not in covered:
            total += points[n].get("penalty", 0)
    return total


def calc_team_result(raid, team):
    """Compute duration, penalty and total for one team."""
    points = get_points(raid)
    visits = team_visits(raid, team.get("number"))
    start_num = _point_of_type(points, POINT_START)
    finish_num = _point_of_type(points, POINT_FINISH)

    missed = [n for n in sorted(points)
              if n not in (start_num, finish_num) and n not in visits]
    penalty = _penalty_minutes(points, missed, raid.get("discounts", []))

    start_ts = visits.get(start_num) if start_num is not None else None
    finish_ts = visits.get(finish_num) if finish_num is not None else None

    result = {
        "start": start_ts,
        "finish": finish_ts,
        "duration": None,
        "penalty": penalty,
        "total": None,
        "missed": missed,
        "status": STATUS_DNF,
        "place": None,
        "rank": None,
    }
    if start_ts is None or finish_ts is None or finish_ts <= start_ts:
        return result
    result["duration"] = finish_ts - start_ts
    result["total"] = result["duration"] + penalty * 60
    result["status"] = STATUS_FINISHED
    return result


def recalc_raid_results(raid, teams):
    """Store a fresh result on every team of the raid. Returns the team count."""
    for t in teams:
        t["result"] = calc_team_result(raid, t)
    return len(teams)


# ── Ranking ─────────────────────────────────────────────────────
def recalc_raid_rank(raid, teams):
    """Assign places and rank coefficients. Returns the number of ranked teams."""
    ranked = []
    for t in teams:
        res = t.get("result")
        if res is None:
            res = t["result"] = calc_team_result(raid, t)
        res["place"] = None
        res["rank"] = None
        if res.get("status") == STATUS_FINISHED and not t.get("out_of_range"):
            ranked.append(t)

    ranked.sort(key=lambda t: (t["result"]["total"], t.get("number", 0)))
    if not ranked:
        return 0

    best = ranked[0]["result"]["total"]
    prev_total = None
    place = 0
    for i, t in enumerate(ranked, 1):
        res = t["result"]
        if res["total"] != prev_total:
            place = i
            prev_total = res["total"]
        res["place"] = place
        res["rank"] = round(best / res["total"], 5) if res["total"] > 0 else 1.0
    return len(ranked)


def recalc_user_ratings(teams, participants):
    """Rating = sum of the rank coefficients of all teams a user raced in."""
    for p in participants.values():
        p["rating"] = 0.0
        p["raids_finished"] = 0
    for t in teams:
        rank = (t.get("result") or {}).get("rank")
        if rank is None:
            continue
        for uid in t.get("members", []):
            p = participants.get(str(uid))
            if p is None:
                continue
            p["rating"] = round(p["rating"] + rank, 5)
            p["raids_finished"] += 1
    return len(participants)


# ── Data File Import ────────────────────────────────────────────
def _as_int(value, field):
    try:
        return int(value)
    except (TypeError, ValueError):
        raise DataFileError(f"Field '{field}' must be an integer, got {value!r}")


def _records(value, field):
    """A list of JSON objects, or DataFileError naming the field."""
    if not isinstance(value, list):
        raise DataFileError(f"Field '{field}' must be a list of objects")
    for item in value:
        if not isinstance(item, dict):
            raise DataFileError(f"Field '{field}' must contain objects, got {item!r}")
    return value


def parse_data_file(payload):
    """Decode an uploaded data file (JSON bytes or str) into a normalized dict."""
    if isinstance(payload, bytes):
        try:
            payload = payload.decode("utf-8-sig")
        except UnicodeDecodeError:
            raise DataFileError("Data file is not UTF-8 text")
    try:
        raw = json.loads(payload)
    except json.JSONDecodeError as e:
        raise DataFileError(f"Data file is not valid JSON: {e}")
    if not isinstance(raw, dict):
        raise DataFileError("Data file must contain a JSON object")
    if "raid_id" not in raw:
        raise DataFileError("Data file has no raid_id")

    data = {"raid_id": _as_int(raw["raid_id"], "raid_id")}
    if data["raid_id"] <= 0:
        raise DataFileError("Data file raid_id must be positive")
    for key in ("raid_name", "time_readonly", "time_finish"):
        if key in raw:
            data[key] = raw[key] if key == "raid_name" else _as_int(raw[key], key)

    if "points" in raw:
        points = {}
        for p in _records(raw["points"], "points"):
            num = _as_int(p.get("number"), "points.number")
            points[num] = {
                "type": _as_int(p.get("type", 0), "points.type"),
                "penalty": _as_int(p.get("penalty", 0), "points.penalty"),
                "start": _as_int(p.get("start", 0), "points.start"),
                "end": _as_int(p.get("end", 0), "points.end"),
                "name": str(p.get("name", "")),
            }
        data["points"] = points

    if "discounts" in raw:
        data["discounts"] = [
            {"minutes": _as_int(d.get("minutes"), "discounts.minutes"),
             "from": _as_int(d.get("from"), "discounts.from"),
             "to": _as_int(d.get("to"), "discounts.to")}
            for d in _records(raw["discounts"], "discounts")
        ]

    teams = []
    for t in _records(raw.get("teams", []), "teams"):
        teams.append({
            "number": _as_int(t.get("number"), "teams.number"),
            "name": str(t.get("name", "")),
            "members": [
                {"user_id": _as_int(m.get("user_id"), "teams.members.user_id"),
                 "name": str(m.get("name", ""))}
                for m in _records(t.get("members", []), "teams.members")
            ],
        })
    data["teams"] = teams

    chips = []
    for c in _records(raw.get("chips", []), "chips"):
        chips.append({
            "team_number": _as_int(c.get("team_number"), "chips.team_number"),
            "team_mask": _as_int(c.get("team_mask", 0), "chips.team_mask"),
            "point_number": _as_int(c.get("point_number"), "chips.point_number"),
            "point_time": _as_int(c.get("point_time"), "chips.point_time"),
            "init_time": _as_int(c.get("init_time", 0), "chips.init_time"),
        })
    data["chips"] = chips
    return data


def merge_data_file(raid, data):
    """Merge parsed file data into a raid. Returns the number of new chip events."""
    if "raid_name" in data:
        raid["name"] = data["raid_name"]
    for key in ("time_readonly", "time_finish"):
        if key in data:
            raid[key] = data[key]
    if "points" in data:
        raid["points"] = {str(num): p for num, p in data["points"].items()}
    if "discounts" in data:
        raid["discounts"] = data["discounts"]

    chips = raid.setdefault("chips", [])
    seen = {(c["team_number"], c["point_number"], c["point_time"]) for c in chips}
    added = 0
    for c in data.get("chips", []):
        key = (c["team_number"], c["point_number"], c["point_time"])
        if key in seen:
            continue
        seen.add(key)
        chips.append(c)
        added += 1
    return added
