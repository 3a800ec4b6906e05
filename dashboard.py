"""
Raid Admin Dashboard
aiohttp web server running alongside the Discord bot.
"""

import os
import json
import asyncio
import secrets
import time
from collections import deque
from datetime import datetime
from aiohttp import web
import discord

import admin_page
import raid_engine
import raid_store

# ── Shared state (injected by bot.py) ────────────────────────────
bot_ref = None           # reference to the discord bot
log_buffer = deque(maxlen=500)   # ring buffer for log lines

ADMIN_PASSWORD = os.environ.get("ADMIN_PASSWORD", "admin")
MODERATOR_PASSWORD = os.environ.get("MODERATOR_PASSWORD", "")
VIEWER_PASSWORD = os.environ.get("VIEWER_PASSWORD", "")
DASHBOARD_PORT = int(os.environ.get("DASHBOARD_PORT", "8080"))
SESSION_TOKENS = {}      # token -> (expiry, role)
TOKEN_TTL = 86400        # 24h

ROLE_ADMINISTRATOR = "administrator"
ROLE_MODERATOR = "moderator"
ROLE_VIEWER = "viewer"

def add_log(msg: str):
    """Add a log entry to the ring buffer."""
    ts = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    log_buffer.append(f"[{ts}] {msg}")

# SSE subscribers
_sse_queues = []

async def push_log(msg: str):
    """Push a log line to all SSE subscribers."""
    add_log(msg)
    for q in list(_sse_queues):
        try:
            q.put_nowait(msg)
        except asyncio.QueueFull:
            pass

# ── Auth helpers ─────────────────────────────────────────────────
def _role_for_password(pw):
    if not pw:
        return None
    for role, expected in ((ROLE_ADMINISTRATOR, ADMIN_PASSWORD),
                           (ROLE_MODERATOR, MODERATOR_PASSWORD),
                           (ROLE_VIEWER, VIEWER_PASSWORD)):
        if expected and secrets.compare_digest(pw, expected):
            return role
    return None

def _session_role(request):
    """Role of the logged-in caller, None when the session is missing or expired."""
    token = request.cookies.get("session")
    if not token:
        return None
    entry = SESSION_TOKENS.get(token)
    if not entry or time.time() > entry[0]:
        SESSION_TOKENS.pop(token, None)
        return None
    return entry[1]

def _check_auth(request):
    return _session_role(request) is not None

def _flags(role):
    """(administrator, moderator) flags for the admin page."""
    return role == ROLE_ADMINISTRATOR, role == ROLE_MODERATOR

# ── CSS ──────────────────────────────────────────────────────────
CSS = """
:root {
    --bg: #1a1b1e; --bg2: #25262b; --bg3: #2c2e33;
    --accent: #2f9e44; --accent-hover: #237a34;
    --green: #43b581; --red: #f04747; --orange: #faa61a;
    --text: #dcddde; --text-dim: #96989d; --text-bright: #ffffff;
    --border: #3a3b3f; --radius: 8px; --sidebar-w: 220px;
}
* { margin: 0; padding: 0; box-sizing: border-box; }
body { background: var(--bg); color: var(--text); font-family: 'Segoe UI', system-ui, sans-serif; min-height: 100vh; display: flex; }
a { color: var(--accent); text-decoration: none; }
.sidebar { width: var(--sidebar-w); min-height: 100vh; background: var(--bg2); border-right: 1px solid var(--border); position: fixed; top: 0; left: 0; display: flex; flex-direction: column; }
.sidebar-brand { padding: 24px 16px; font-size: 18px; font-weight: 800; color: var(--text-bright); border-bottom: 1px solid var(--border); }
.sidebar-brand span { color: var(--accent); }
.sidebar-nav { flex: 1; padding: 16px 12px; display: flex; flex-direction: column; gap: 4px; }
.sidebar-nav a, .sidebar-footer a { padding: 10px 14px; border-radius: 8px; color: var(--text-dim); font-size: 14px; }
.sidebar-nav a.active { background: rgba(47,158,68,0.12); color: var(--accent); font-weight: 600; }
.sidebar-footer { padding: 16px 12px; border-top: 1px solid var(--border); }
.sidebar-role { padding: 0 14px 8px; font-size: 12px; color: var(--text-dim); text-transform: uppercase; }
.main { margin-left: var(--sidebar-w); flex: 1; min-height: 100vh; }
.container { max-width: 1100px; margin: 0 auto; padding: 24px; }
.page-title { font-size: 20px; font-weight: 700; color: var(--text-bright); margin-bottom: 16px; padding-bottom: 10px; border-bottom: 1px solid var(--border); }
.card { background: var(--bg2); border: 1px solid var(--border); border-radius: 10px; padding: 20px; margin-bottom: 16px; }
.short-result { border-left: 4px solid var(--orange); }
.admin-cell { padding-top: 5px; padding-bottom: 5px; }
table { width: 100%; border-collapse: collapse; }
td { font-size: 14px; }
.btn { padding: 6px 14px; border-radius: var(--radius); border: none; cursor: pointer; font-size: 13px; font-weight: 600; }
.btn-primary { background: var(--accent); color: white; }
.btn-primary:hover { background: var(--accent-hover); }
.setting-input { background: var(--bg); border: 1px solid var(--border); border-radius: var(--radius); color: var(--text); padding: 6px 10px; font-size: 14px; margin: 4px 4px 4px 0; }
textarea { background: var(--bg); border: 1px solid var(--border); border-radius: var(--radius); color: var(--text); padding: 8px; margin-top: 8px; }
.log-container { background: #0d1117; border: 1px solid var(--border); border-radius: var(--radius); padding: 16px; font-family: 'Consolas', monospace; font-size: 13px; height: 600px; overflow-y: auto; line-height: 1.6; white-space: pre-wrap; }
.log-line .ts { color: var(--accent); }
.log-line.error { color: var(--red); }
.login-wrap { display: flex; align-items: center; justify-content: center; min-height: 100vh; width: 100%; }
.login-box { background: var(--bg2); border: 1px solid var(--border); border-radius: 12px; padding: 40px; width: 360px; text-align: center; }
.login-box h2 { margin-bottom: 24px; color: var(--text-bright); }
.login-box input { width: 100%; padding: 10px 14px; background: var(--bg); border: 1px solid var(--border); border-radius: var(--radius); color: var(--text); margin-bottom: 16px; }
.login-box .btn { width: 100%; padding: 10px; }
.login-error { color: var(--red); font-size: 13px; margin-bottom: 12px; display: none; }
@media (max-width: 768px) {
    .sidebar { position: static; width: 100%; min-height: 0; }
    body { flex-direction: column; }
    .main { margin-left: 0; }
}
"""

# ── HTML Templates ───────────────────────────────────────────────
def _sidebar(active="admin", role=None):
    def cls(page):
        return ' active' if page == active else ''
    return f"""
    <aside class="sidebar">
        <div class="sidebar-brand">Raid <span>Admin</span></div>
        <nav class="sidebar-nav">
            <a href="/admin" class="{cls('admin')}">Raid data</a>
            <a href="/logs" class="{cls('logs')}">System logs</a>
        </nav>
        <div class="sidebar-footer">
            <div class="sidebar-role">{role or ''}</div>
            <a href="/logout">Logout</a>
        </div>
    </aside>"""

def _page(title, content, active="admin", role=None):
    return f"""<!DOCTYPE html>
<html lang="en"><head>
<meta charset="UTF-8"><meta name="viewport" content="width=device-width,initial-scale=1">
<title>{title} — Raid Admin</title>
<style>{CSS}</style>
</head><body>
{_sidebar(active, role)}
<div class="main">
{content}
</div>
</body></html>"""

LOGIN_PAGE = f"""<!DOCTYPE html>
<html lang="en"><head>
<meta charset="UTF-8"><meta name="viewport" content="width=device-width,initial-scale=1">
<title>Login — Raid Admin</title>
<style>{CSS}</style>
</head><body>
<div class="login-wrap">
    <div class="login-box">
        <h2>Raid Admin</h2>
        <div class="login-error" id="err">Invalid credentials</div>
        <form method="POST" action="/login">
            <input type="password" name="password" placeholder="Password" autofocus required>
            <button type="submit" class="btn btn-primary">Log in</button>
        </form>
    </div>
</div>
</body></html>"""

# ── Route Handlers ───────────────────────────────────────────────
routes = web.RouteTableDef()

@routes.get("/login")
async def login_page(request):
    return web.Response(text=LOGIN_PAGE, content_type="text/html")

@routes.post("/login")
async def login_post(request):
    data = await request.post()
    role = _role_for_password(data.get("password", ""))
    if role:
        token = secrets.token_hex(32)
        SESSION_TOKENS[token] = (time.time() + TOKEN_TTL, role)
        resp = web.HTTPFound("/admin")
        resp.set_cookie("session", token, max_age=TOKEN_TTL, httponly=True, samesite="Lax")
        await push_log(f"🔑 Login as {role}")
        return resp
    err_page = LOGIN_PAGE.replace('display: none', 'display: block')
    return web.Response(text=err_page, content_type="text/html", status=401)

@routes.get("/logout")
async def logout(request):
    token = request.cookies.get("session")
    SESSION_TOKENS.pop(token, None)
    resp = web.HTTPFound("/login")
    resp.del_cookie("session")
    return resp

@routes.get("/")
async def home(request):
    raise web.HTTPFound("/admin")

# ── Admin Page ───────────────────────────────────────────────────
def _raid_id(value):
    try:
        return max(int(value), 0)
    except (TypeError, ValueError):
        return 0

def _default_raid_id():
    ids = [r.get("raid_id", 0) for r in raid_store.raids.values()]
    return max(ids, default=0)

def _render_admin(request, role, raid_id, result, status=200):
    administrator, moderator = _flags(role)
    fragment = admin_page.render_admin_page(request.path, raid_id, administrator, moderator, result)
    selector = admin_page.render_raid_selector(list(raid_store.raids.values()), raid_id)

    raid = raid_store.get_raid(raid_id)
    summary = ""
    if raid:
        team_list = raid_store.raid_teams(raid_id)
        finished = sum(1 for t in team_list if (t.get("result") or {}).get("status") == raid_engine.STATUS_FINISHED)
        summary = (f'<div style="font-size:13px;color:var(--text-dim);margin:8px 0">'
                   f'Teams: {len(team_list)} · Check-ins: {len(raid.get("chips", []))} · '
                   f'Finished: {finished} · Errors: {len(raid.get("errors", []))}</div>')

    content = f"""
    <div class="container">
        <div class="page-title">Raid data</div>
        {admin_page.render_short_result(result)}
        <div class="card">{selector}{summary}</div>
        <div class="card">{fragment}</div>
    </div>"""
    return web.Response(text=_page("Raid data", content, "admin", role), content_type="text/html", status=status)

@routes.get("/admin")
async def admin_get(request):
    role = _session_role(request)
    if role is None:
        raise web.HTTPFound("/login")

    raid_id = _raid_id(request.query.get("RaidId", _default_raid_id()))
    if request.query.get("action") == admin_page.PRINT_TEAMS_ACTION:
        raid = raid_store.get_raid(raid_id)
        if raid is None:
            raise web.HTTPNotFound(text="Raid not found")
        html = admin_page.render_print_teams(raid, raid_store.raid_teams(raid_id), raid_store.participants)
        return web.Response(text=html, content_type="text/html")

    return _render_admin(request, role, raid_id, {})

# ── Admin Actions ────────────────────────────────────────────────
def _require_raid(raid_id, result):
    raid = raid_store.get_raid(raid_id)
    if raid is None:
        admin_page.set_short_result(result, f"Raid {raid_id} not found")
    return raid

async def _recalc_results(request, form, raid_id, role, result):
    raid = _require_raid(raid_id, result)
    if raid is None:
        return None
    count = raid_engine.recalc_raid_results(raid, raid_store.raid_teams(raid_id))
    raid_store.save_store()
    await push_log(f"🧮 Recalculated results for raid {raid_id} ({count} teams)")
    admin_page.set_short_result(result, f"Results recalculated for {count} teams")
    return None

async def _find_errors(request, form, raid_id, role, result):
    raid = _require_raid(raid_id, result)
    if raid is None:
        return None
    errors = raid_engine.find_raid_errors(raid, raid_store.raid_teams(raid_id))
    raid["errors"] = errors
    raid_store.save_store()
    await push_log(f"🔎 Error search for raid {raid_id}: {len(errors)} found")
    if errors:
        admin_page.set_short_result(result, f"Found {len(errors)} errors", "\n".join(errors))
    else:
        admin_page.set_short_result(result, "No errors found")
    return None

async def _recalc_rank(request, form, raid_id, role, result):
    raid = _require_raid(raid_id, result)
    if raid is None:
        return None
    count = raid_engine.recalc_raid_rank(raid, raid_store.raid_teams(raid_id))
    raid_store.save_store()
    await push_log(f"🏆 Recalculated rank for raid {raid_id} ({count} ranked)")
    admin_page.set_short_result(result, f"Rank recalculated, {count} teams ranked")
    return None

async def _recalc_all_ranks(request, form, raid_id, role, result):
    for key, raid in raid_store.raids.items():
        raid_engine.recalc_raid_rank(raid, raid_store.raid_teams(key))
    raid_engine.recalc_user_ratings(list(raid_store.teams.values()), raid_store.participants)
    raid_store.save_store()
    await push_log(f"🏆 Recalculated rank for all {len(raid_store.raids)} raids")
    admin_page.set_short_result(result, f"Rank recalculated for {len(raid_store.raids)} raids")
    return None

async def _clear_tables(request, form, raid_id, role, result):
    if role != ROLE_ADMINISTRATOR:
        admin_page.set_short_result(result, "Only administrators can clear tables")
        return None
    count = raid_store.clear_tables()
    raid_store.save_store()
    await push_log(f"🧹 Cleared calculated tables for {count} raids")
    admin_page.set_short_result(result, "Calculated tables cleared")
    return None

async def _load_data_file(request, form, raid_id, role, result):
    upload = form.get("android")
    if upload is None or isinstance(upload, str) or not getattr(upload, "filename", None):
        admin_page.set_short_result(result, "No data file selected")
        return None
    payload = upload.file.read()
    if len(payload) > admin_page.MAX_FILE_SIZE:
        admin_page.set_short_result(result, f"Data file is larger than {admin_page.MAX_FILE_SIZE} bytes")
        return None
    try:
        data = raid_engine.parse_data_file(payload)
    except raid_engine.DataFileError as e:
        await push_log(f"❌ Data file {upload.filename} rejected: {e}")
        admin_page.set_short_result(result, "Data file rejected", str(e))
        return None
    if raid_id and data["raid_id"] != raid_id:
        admin_page.set_short_result(result, f"Data file belongs to raid {data['raid_id']}, not {raid_id}")
        return None

    raid = raid_store.get_or_create_raid(data["raid_id"])
    added = raid_engine.merge_data_file(raid, data)
    for t in data["teams"]:
        raid_store.upsert_team(data["raid_id"], t)
    raid_store.save_store()
    await push_log(f"📥 Loaded {upload.filename} into raid {data['raid_id']}: {added} new check-ins, {len(data['teams'])} teams")
    admin_page.set_short_result(result, f"Data file loaded: {added} new check-ins, {len(data['teams'])} teams")
    return data["raid_id"]

async def _json_dump(request, form, raid_id, role, result):
    dump = raid_store.raid_dump(raid_id)
    if dump is None:
        admin_page.set_short_result(result, f"Raid {raid_id} not found")
        return None
    await push_log(f"📦 JSON dump of raid {raid_id}")
    return web.Response(
        text=json.dumps(dump, indent=2, ensure_ascii=False),
        content_type="application/json",
        headers={"Content-Disposition": f'attachment; filename="raid_{raid_id}.json"'},
    )

def _message_embed(type_id, subject, text):
    urgent = type_id == raid_store.MESSAGE_URGENT
    embed = discord.Embed(
        title=f"{'🚨 ' if urgent else '📢 '}{subject}",
        description=text,
        color=0xe74c3c if urgent else 0x2f9e44,
    )
    embed.set_footer(text="Sent from Raid Admin")
    return embed

async def _send_message_for_all(request, form, raid_id, role, result):
    subject = (form.get("MessageSubject") or "").strip()
    text = (form.get("MessageText") or "").strip()
    type_id = _raid_id(form.get("SendForAllTypeId", raid_store.MESSAGE_REGULAR))
    if type_id not in raid_store.MESSAGE_TYPES:
        type_id = raid_store.MESSAGE_REGULAR
    if not subject or not text:
        admin_page.set_short_result(result, "Message subject and text are required")
        return None

    recipients = raid_store.message_recipients(raid_id, type_id)
    delivered = 0
    failed = []
    if bot_ref and recipients:
        embed = _message_embed(type_id, subject, text)
        for p in recipients:
            try:
                user = await bot_ref.fetch_user(int(p["discord_id"]))
                await user.send(embed=embed)
                delivered += 1
            except Exception as e:
                failed.append(f"{p.get('name') or p['user_id']}: {e}")

    raid_store.add_message(raid_id, type_id, subject, text, role, len(recipients), delivered)
    await push_log(f"📤 Broadcast '{subject}' ({raid_store.MESSAGE_TYPES[type_id]}): {delivered}/{len(recipients)} delivered")
    if bot_ref is None and recipients:
        admin_page.set_short_result(result, f"Message saved, bot is offline: 0 of {len(recipients)} delivered")
    else:
        admin_page.set_short_result(result, f"Message sent: {delivered} of {len(recipients)} delivered", "\n".join(failed))
    return None

ACTION_HANDLERS = {
    "RecalcRaidResults": _recalc_results,
    "FindRaidErrors": _find_errors,
    "RecalcRaidRank": _recalc_rank,
    "RecalcAllRaidsRank": _recalc_all_ranks,
    "ClearTables": _clear_tables,
    "LoadRaidDataFile": _load_data_file,
    "JSON": _json_dump,
    admin_page.SEND_MESSAGE_ACTION: _send_message_for_all,
}

@routes.post("/admin")
async def admin_post(request):
    role = _session_role(request)
    if role is None:
        raise web.HTTPFound("/login")

    result = {}
    try:
        form = await request.post()
    except web.HTTPRequestEntityTooLarge:
        await push_log(f"❌ Admin form rejected: body over {request.client_max_size} bytes")
        admin_page.set_short_result(result, f"Data file is larger than {admin_page.MAX_FILE_SIZE} bytes")
        return _render_admin(request, role, _default_raid_id(), result, status=413)
    raid_id = _raid_id(form.get("RaidId"))
    administrator, moderator = _flags(role)
    if not administrator and not moderator:
        admin_page.set_short_result(result, "No rights to export")
        return _render_admin(request, role, raid_id, result, status=403)

    action = form.get("action", "")
    handler = ACTION_HANDLERS.get(action)
    if handler is None:
        admin_page.set_short_result(result, f"Unknown action '{action}'")
        return _render_admin(request, role, raid_id, result, status=400)

    try:
        outcome = await handler(request, form, raid_id, role, result)
    except Exception as e:
        await push_log(f"❌ Admin action {action} failed: {e}")
        admin_page.set_short_result(result, f"{action} failed", str(e))
        return _render_admin(request, role, raid_id, result, status=500)

    if isinstance(outcome, web.StreamResponse):
        return outcome
    if isinstance(outcome, int):
        raid_id = outcome
    return _render_admin(request, role, raid_id, result)

# ── Logs Page ────────────────────────────────────────────────────
@routes.get("/logs")
async def logs_page(request):
    role = _session_role(request)
    if role is None:
        raise web.HTTPFound("/login")

    content = """
    <div class="container">
        <div class="page-title">Live logs <span style="font-size:12px;color:var(--text-dim)" id="conn-status">Connecting...</span></div>
        <div class="log-container" id="logs"></div>
    </div>
    <script>
    const logsEl = document.getElementById('logs');
    const connEl = document.getElementById('conn-status');
    function addLine(text) {
        const div = document.createElement('div');
        div.className = 'log-line';
        if (text.includes('❌')) div.className += ' error';
        div.textContent = text;
        logsEl.appendChild(div);
        logsEl.scrollTop = logsEl.scrollHeight;
    }
    fetch('/api/logs').then(r=>r.json()).then(d=>{ d.logs.forEach(l => addLine(l)); });
    const es = new EventSource('/api/logs/stream');
    es.onopen = () => { connEl.textContent = 'Connected'; };
    es.onmessage = (e) => addLine(e.data);
    es.onerror = () => { connEl.textContent = 'Disconnected'; };
    </script>"""

    return web.Response(text=_page("Logs", content, "logs", role), content_type="text/html")

# ── API Endpoints ────────────────────────────────────────────────
@routes.get("/api/logs")
async def api_logs(request):
    if not _check_auth(request):
        return web.json_response({"error": "unauthorized"}, status=401)
    return web.json_response({"logs": list(log_buffer)})

@routes.get("/api/logs/stream")
async def api_logs_stream(request):
    if not _check_auth(request):
        return web.json_response({"error": "unauthorized"}, status=401)

    q = asyncio.Queue(maxsize=100)
    _sse_queues.append(q)

    resp = web.StreamResponse()
    resp.headers["Content-Type"] = "text/event-stream"
    resp.headers["Cache-Control"] = "no-cache"
    resp.headers["X-Accel-Buffering"] = "no"
    await resp.prepare(request)

    try:
        while True:
            msg = await q.get()
            ts = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
            await resp.write(f"data: [{ts}] {msg}\n\n".encode())
    except (asyncio.CancelledError, ConnectionResetError):
        pass
    finally:
        _sse_queues.remove(q)
    return resp

@routes.get("/api/status")
async def api_status(request):
    """Health check endpoint."""
    return web.json_response({
        "status": "ok",
        "timestamp": datetime.now().isoformat(),
        "raids": len(raid_store.raids),
        "bot": bot_ref is not None,
    })

# ── Server Lifecycle ─────────────────────────────────────────────
def create_app():
    # uploads are capped by MAX_FILE_SIZE in the handler, leave room for the multipart envelope
    app = web.Application(client_max_size=admin_page.MAX_FILE_SIZE * 2)
    app.add_routes(routes)
    return app

async def start_dashboard(bot):
    """Start the admin dashboard web server. Called from bot.py on_ready()."""
    global bot_ref
    bot_ref = bot

    runner = web.AppRunner(create_app())
    await runner.setup()
    site = web.TCPSite(runner, "0.0.0.0", DASHBOARD_PORT)
    await site.start()
    await push_log(f"🌐 Admin dashboard started on port {DASHBOARD_PORT}")
    print(f"🌐 Admin dashboard started on http://0.0.0.0:{DASHBOARD_PORT}")
    return runner
