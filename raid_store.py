"""
JSON-backed store for raids, teams, participants and broadcast messages.
"""

import json
import os
from datetime import datetime

# State file path - use /app/data/ for Docker volume persistence
DATA_DIR = os.environ.get("DATA_DIR", "/app/data")
STORE_FILE = os.path.join(DATA_DIR, "raids.json")

MESSAGE_REGULAR = 1
MESSAGE_URGENT = 2
MESSAGE_TYPES = {MESSAGE_REGULAR: "regular", MESSAGE_URGENT: "urgent"}

# Format: {raid_id_str: {"raid_id", "name", "time_readonly", "time_finish", "points", "discounts", "chips", "errors"}}
raids = {}
# Format: {team_id_str: {"team_id", "raid_id", "number", "name", "members", "out_of_range", "result"}}
teams = {}
# Format: {user_id_str: {"user_id", "name", "discord_id", "notify", "rating", "raids_finished"}}
participants = {}
messages = []


# ----------------------------
# Load / Save
# ----------------------------
def load_store():
    global raids, teams, participants, messages
    try:
        if os.path.exists(STORE_FILE):
            with open(STORE_FILE, 'r', encoding='utf-8') as f:
                data = json.load(f)
            raids = data.get('raids', {})
            teams = data.get('teams', {})
            participants = data.get('participants', {})
            messages = data.get('messages', [])
            print(f"✅ Loaded store from {STORE_FILE} ({len(raids)} raids, {len(teams)} teams)")
            return True
    except Exception as e:
        print(f"❌ Error loading store: {e}")
    raids = {}
    teams = {}
    participants = {}
    messages = []
    return False


def save_store():
    data = {
        'raids': raids,
        'teams': teams,
        'participants': participants,
        'messages': messages,
    }
    try:
        os.makedirs(os.path.dirname(STORE_FILE) or ".", exist_ok=True)
        with open(STORE_FILE, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
        return True
    except Exception as e:
        print(f"❌ Error saving store: {e}")
        return False


# ----------------------------
# Raids & Teams
# ----------------------------
def get_raid(raid_id):
    return raids.get(str(raid_id))


def get_or_create_raid(raid_id):
    key = str(raid_id)
    if key not in raids:
        raids[key] = {
            "raid_id": int(raid_id), "name": "", "time_readonly": 0, "time_finish": 0,
            "points": {}, "discounts": [], "chips": [], "errors": [],
        }
    return raids[key]


def raid_teams(raid_id):
    """Teams of a raid ordered by team number."""
    rid = int(raid_id)
    return sorted((t for t in teams.values() if t.get("raid_id") == rid),
                  key=lambda t: t.get("number", 0))


def _next_team_id():
    return max((int(k) for k in teams), default=0) + 1


def upsert_team(raid_id, team_data):
    """Insert or update a team by (raid, number). Members become participants."""
    rid = int(raid_id)
    team = None
    for t in teams.values():
        if t.get("raid_id") == rid and t.get("number") == team_data["number"]:
            team = t
            break
    if team is None:
        tid = _next_team_id()
        team = {"team_id": tid, "raid_id": rid, "number": team_data["number"],
                "name": "", "members": [], "out_of_range": False, "result": None}
        teams[str(tid)] = team
    if team_data.get("name"):
        team["name"] = team_data["name"]
    members = team_data.get("members")
    if members:
        team["members"] = [m["user_id"] for m in members]
        for m in members:
            upsert_participant(m["user_id"], m.get("name", ""))
    return team


def upsert_participant(user_id, name=""):
    key = str(user_id)
    p = participants.get(key)
    if p is None:
        p = participants[key] = {
            "user_id": int(user_id), "name": name, "discord_id": None,
            "notify": False, "rating": 0.0, "raids_finished": 0,
        }
    elif name:
        p["name"] = name
    return p


def clear_tables():
    """Drop computed data (results, ranks, errors, ratings). Raw data stays."""
    for r in raids.values():
        r["errors"] = []
    for t in teams.values():
        t["result"] = None
    for p in participants.values():
        p["rating"] = 0.0
        p["raids_finished"] = 0
    return len(raids)


def raid_dump(raid_id):
    """Everything known about a raid as one JSON-serialisable dict."""
    raid = get_raid(raid_id)
    if raid is None:
        return None
    team_list = raid_teams(raid_id)
    member_ids = {str(uid) for t in team_list for uid in t.get("members", [])}
    return {
        "raid": raid,
        "teams": team_list,
        "participants": [
            {k: v for k, v in participants[uid].items() if k != "discord_id"}
            for uid in sorted(member_ids, key=int) if uid in participants
        ],
        "exported": datetime.now().isoformat(timespec="seconds"),
    }


# ----------------------------
# Discord Links & Messages
# ----------------------------
def link_discord(user_id, discord_id):
    """Attach a Discord account to a participant and opt them in."""
    p = participants.get(str(user_id))
    if p is None:
        return None
    for other in participants.values():
        if other is not p and other.get("discord_id") == discord_id:
            other["discord_id"] = None
    p["discord_id"] = discord_id
    p["notify"] = True
    save_store()
    return p


def find_by_discord(discord_id):
    for p in participants.values():
        if p.get("discord_id") == discord_id:
            return p
    return None


def set_notify(discord_id, enabled):
    p = find_by_discord(discord_id)
    if p is None:
        return None
    p["notify"] = bool(enabled)
    save_store()
    return p


def message_recipients(raid_id, type_id):
    """Participants to message: urgent goes to every linked account, regular only to opted-in ones."""
    if raid_id and int(raid_id) > 0:
        ids = {str(uid) for t in raid_teams(raid_id) for uid in t.get("members", [])}
        pool = [participants[uid] for uid in ids if uid in participants]
    else:
        pool = list(participants.values())
    result = []
    for p in pool:
        if not p.get("discord_id"):
            continue
        if type_id != MESSAGE_URGENT and not p.get("notify"):
            continue
        result.append(p)
    return sorted(result, key=lambda p: p["user_id"])


def add_message(raid_id, type_id, subject, text, author, recipients=0, delivered=0):
    msg = {
        "message_id": len(messages) + 1,
        "raid_id": int(raid_id or 0),
        "type": MESSAGE_TYPES.get(type_id, "regular"),
        "subject": subject,
        "text": text,
        "author": author,
        "created": datetime.now().isoformat(timespec="seconds"),
        "recipients": recipients,
        "delivered": delivered,
    }
    messages.append(msg)
    save_store()
    return msg
