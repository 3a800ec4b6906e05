"""
Raid admin page: action buttons, data file upload and the broadcast form.
Renders HTML fragments that the dashboard embeds into its page shell.
"""

from html import escape

import raid_engine

MAX_FILE_SIZE = 1000000

# (action, button name, label, raid scope)
# raid scope: "selected" copies RaidId from FindTeamForm, "all" sends 0, "form" keeps the hidden value
ADMIN_ACTIONS = [
    ("JSON", "JSONdump", "Get dump", "selected"),
    ("LoadRaidDataFile", "LoadRaidDataFileButton", "Upload", "selected"),
    ("RecalcRaidResults", "RecalcRaidResultsButton", "Recalculate results", "selected"),
    ("FindRaidErrors", "FindRaidErrorsButton", "Find errors", "selected"),
    ("RecalcRaidRank", "RecalcRaidRankButton", "Recalculate raid rank", "selected"),
    ("RecalcAllRaidsRank", "RecalcAllRaidsRankButton", "Recalculate all ranks", "all"),
    ("ClearTables", "ClearTablesButton", "Clear tables", "form"),
]
ADMIN_ONLY_ACTIONS = {"ClearTables"}
SEND_MESSAGE_ACTION = "SendMessageForAll"
PRINT_TEAMS_ACTION = "PrintRaidTeams"

MESSAGE_TYPE_OPTIONS = [(1, "regular"), (2, "urgent")]
DEFAULT_SUBJECT = "Broadcast subject"
DEFAULT_TEXT = "Message text"

ADMIN_JS = """
<script>
function submitAdminAction(action, scope) {
    var form = document.AdminForm;
    form.action.value = action;
    if (scope === 'selected' && document.FindTeamForm) {
        form.RaidId.value = document.FindTeamForm.RaidId.value;
    } else if (scope === 'all') {
        form.RaidId.value = 0;
    }
    if (action === 'ClearTables' && !confirm('Clear all calculated tables?')) return false;
    form.submit();
    return true;
}
function SendMessageForAll() {
    var form = document.SendMessageForAllForm;
    form.action.value = 'SendMessageForAll';
    if (document.FindTeamForm) {
        form.RaidId.value = document.FindTeamForm.RaidId.value;
    }
    form.submit();
    return true;
}
</script>
"""


def set_short_result(result, message, details=""):
    """Record a short status line for the page around the admin fragment."""
    if result is None:
        return
    result["message"] = message
    result["details"] = details


def _button(name, label, onclick, tab_index):
    return (f'<input type="button" class="btn btn-primary" style="width:185px;" name="{name}" '
            f'value="{escape(label)}" onclick="javascript: {onclick}" tabindex="{tab_index}">')


def render_admin_page(script_url, raid_id, administrator, moderator, result=None, tab_index=100):
    """Admin fragment for a privileged caller, empty string for anyone else."""
    if not administrator and not moderator:
        set_short_result(result, "No rights to export")
        return ""

    url = escape(str(script_url), quote=True)
    rid = escape(str(raid_id), quote=True)

    rows = []
    rows.append(f'<tr><td class="admin-cell"><a href="?action={PRINT_TEAMS_ACTION}&amp;RaidId={rid}" '
                f'target="_blank">Print list</a></td></tr>')
    for action, name, label, scope in ADMIN_ACTIONS:
        if action in ADMIN_ONLY_ACTIONS and not administrator:
            continue
        tab_index += 1
        button = _button(name, label, f"submitAdminAction('{action}', '{scope}');", tab_index)
        if action == "LoadRaidDataFile":
            rows.append(f'<tr><td class="admin-cell">Data file:<br/>'
                        f'<input type="file" name="android" /> &nbsp; {button}</td></tr>')
        else:
            rows.append(f'<tr><td class="admin-cell">{button}</td></tr>')
    rows_html = "\n".join(rows)

    admin_form = f"""
<form name="AdminForm" enctype="multipart/form-data" action="{url}" method="post">
<input type="hidden" name="RaidId" value="{rid}">
<input type="hidden" name="action" value="">
<input type="hidden" name="MAX_FILE_SIZE" value="{MAX_FILE_SIZE}" />
<table border="0" cellpadding="0" cellspacing="0" width="100%">
{rows_html}
</table></form>"""

    options = "".join(
        f'<option value="{value}"{" selected" if value == 1 else ""}>{label}</option>'
        for value, label in MESSAGE_TYPE_OPTIONS
    )
    select_tab = tab_index + 1
    subject_tab = tab_index + 2
    text_tab = tab_index + 3
    send_tab = tab_index + 4

    message_form = f"""
<div class="page-title" style="margin-top:30px">Broadcast to all participants</div>
<form name="SendMessageForAllForm" action="{url}" method="post">
<input type="hidden" name="action" value="">
<input type="hidden" name="RaidId" value="{rid}">
<select name="SendForAllTypeId" class="setting-input" tabindex="{select_tab}">{options}</select>
<input type="text" name="MessageSubject" class="setting-input" style="width:260px" size="30" value="{DEFAULT_SUBJECT}" tabindex="{subject_tab}" placeholder="{DEFAULT_SUBJECT}" title="{DEFAULT_SUBJECT}">
<div class="team_res"><textarea name="MessageText" rows="4" cols="50" tabindex="{text_tab}" title="{DEFAULT_TEXT}">{DEFAULT_TEXT}</textarea></div>
<br/><input type="button" class="btn btn-primary" onclick="javascript: SendMessageForAll();" name="SendMessageForAllButton" value="Send" tabindex="{send_tab}">
</form>"""

    return ADMIN_JS + admin_form + message_form


def render_raid_selector(raid_list, raid_id):
    """FindTeamForm: the raid picker the admin buttons read RaidId from."""
    options = ""
    for r in sorted(raid_list, key=lambda r: r.get("raid_id", 0), reverse=True):
        rid = r.get("raid_id")
        sel = " selected" if str(rid) == str(raid_id) else ""
        name = escape(r.get("name") or f"Raid {rid}")
        options += f'<option value="{rid}"{sel}>{name}</option>'
    # 0 lets an uploaded data file create its own raid
    sel = " selected" if str(raid_id) == "0" else ""
    options += f'<option value="0"{sel}>New raid (from file)</option>'
    return f"""
<form name="FindTeamForm" action="" method="get">
<select name="RaidId" class="setting-input" style="width:260px" onchange="this.form.submit()">{options}</select>
</form>"""


def render_short_result(result):
    if not result or not result.get("message"):
        return ""
    details = ""
    if result.get("details"):
        details = f'<pre class="log-container" style="height:auto;max-height:300px">{escape(result["details"])}</pre>'
    return f'<div class="card short-result"><strong>{escape(result["message"])}</strong>{details}</div>'


def render_print_teams(raid, team_list, participant_map):
    """Printable team list with members and current results."""
    rows = ""
    for t in team_list:
        members = ", ".join(
            escape(participant_map.get(str(uid), {}).get("name") or str(uid))
            for uid in t.get("members", [])
        )
        res = t.get("result") or {}
        place = res.get("place") or ""
        rows += f"""<tr>
            <td>{t.get('number')}</td>
            <td>{escape(t.get('name', ''))}</td>
            <td>{members}</td>
            <td>{raid_engine.format_duration(res.get('total'))}</td>
            <td>{place}</td>
        </tr>"""
    if not rows:
        rows = '<tr><td colspan="5">No teams</td></tr>'

    title = escape(raid.get("name") or f"Raid {raid.get('raid_id')}")
    return f"""<!DOCTYPE html>
<html lang="en"><head><meta charset="UTF-8"><title>{title}: teams</title>
<style>body {{ font-family: sans-serif; }} td, th {{ border: 1px solid #999; padding: 4px 8px; }} table {{ border-collapse: collapse; }}</style>
</head><body>
<h2>{title}</h2>
<p>Finish closes: {raid_engine.format_time(raid.get('time_finish'))}</p>
<table>
<thead><tr><th>No.</th><th>Team</th><th>Members</th><th>Result</th><th>Place</th></tr></thead>
<tbody>{rows}</tbody>
</table>
</body></html>"""
