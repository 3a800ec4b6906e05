import secrets
import time
from contextlib import asynccontextmanager

import aiohttp
import pytest
from aiohttp.test_utils import TestClient, TestServer
from bs4 import BeautifulSoup

import admin_page
import dashboard
from conftest import sample_bytes


@asynccontextmanager
async def running_client():
    client = TestClient(TestServer(dashboard.create_app()))
    await client.start_server()
    try:
        yield client
    finally:
        await client.close()


def _session(role):
    token = secrets.token_hex(8)
    dashboard.SESSION_TOKENS[token] = (time.time() + 60, role)
    return {"Cookie": f"session={token}"}


class _FakeUser:
    def __init__(self, fail=False):
        self.sent = []
        self.fail = fail

    async def send(self, embed=None):
        if self.fail:
            raise RuntimeError("DMs closed")
        self.sent.append(embed)


class _FakeBot:
    def __init__(self, users):
        self.users = users

    async def fetch_user(self, uid):
        return self.users[uid]


@pytest.fixture(autouse=True)
def _no_bot(monkeypatch):
    monkeypatch.setattr(dashboard, "bot_ref", None)
    monkeypatch.setattr(dashboard, "SESSION_TOKENS", {})


@pytest.mark.asyncio
async def test_admin_requires_login(store):
    async with running_client() as client:
        resp = await client.get("/admin", allow_redirects=False)
        assert resp.status == 302
        assert resp.headers["Location"] == "/login"


@pytest.mark.asyncio
async def test_login_sets_role(store, monkeypatch):
    monkeypatch.setattr(dashboard, "MODERATOR_PASSWORD", "mod-pass")
    async with running_client() as client:
        resp = await client.post("/login", data={"password": "mod-pass"}, allow_redirects=False)
        assert resp.status == 302
        token = resp.cookies["session"].value
        assert dashboard.SESSION_TOKENS[token][1] == dashboard.ROLE_MODERATOR

        resp = await client.post("/login", data={"password": "wrong"}, allow_redirects=False)
        assert resp.status == 401


@pytest.mark.asyncio
async def test_admin_page_renders_for_administrator(loaded_store):
    async with running_client() as client:
        resp = await client.get("/admin", headers=_session(dashboard.ROLE_ADMINISTRATOR))
        assert resp.status == 200
        soup = BeautifulSoup(await resp.text(), "html.parser")
        form = soup.find("form", attrs={"name": "AdminForm"})
        assert form.find("input", attrs={"name": "RaidId"})["value"] == "27"
        assert soup.find("form", attrs={"name": "FindTeamForm"}) is not None
        assert soup.find("input", attrs={"name": "ClearTablesButton"}) is not None


@pytest.mark.asyncio
async def test_viewer_gets_no_forms(loaded_store):
    async with running_client() as client:
        resp = await client.get("/admin", headers=_session(dashboard.ROLE_VIEWER))
        text = await resp.text()
        assert "AdminForm" not in text
        assert "No rights to export" in text

        resp = await client.post("/admin", data={"action": "RecalcRaidResults", "RaidId": "27"},
                                 headers=_session(dashboard.ROLE_VIEWER))
        assert resp.status == 403
        assert loaded_store.raid_teams(27)[0]["result"] is None


@pytest.mark.asyncio
async def test_print_raid_teams(loaded_store):
    async with running_client() as client:
        headers = _session(dashboard.ROLE_MODERATOR)
        resp = await client.get("/admin?action=PrintRaidTeams&RaidId=27", headers=headers)
        assert resp.status == 200
        text = await resp.text()
        assert "Alpha" in text and "Anna, Boris" in text

        resp = await client.get("/admin?action=PrintRaidTeams&RaidId=99", headers=headers)
        assert resp.status == 404


@pytest.mark.asyncio
async def test_load_data_file(store):
    form = aiohttp.FormData()
    form.add_field("action", "LoadRaidDataFile")
    form.add_field("RaidId", "0")
    form.add_field("android", sample_bytes(), filename="raid27.json", content_type="application/json")
    async with running_client() as client:
        resp = await client.post("/admin", data=form, headers=_session(dashboard.ROLE_MODERATOR))
        assert resp.status == 200
        assert "11 new check-ins, 3 teams" in await resp.text()
    assert store.get_raid(27)["name"] == "Spring raid"
    assert len(store.raid_teams(27)) == 3
    assert any("raid27.json" in line for line in dashboard.log_buffer)


@pytest.mark.asyncio
async def test_upload_new_raid_from_rendered_page(loaded_store):
    headers = _session(dashboard.ROLE_ADMINISTRATOR)
    async with running_client() as client:
        resp = await client.get("/admin", headers=headers)
        soup = BeautifulSoup(await resp.text(), "html.parser")
        selector = soup.find("form", attrs={"name": "FindTeamForm"})
        assert [o["value"] for o in selector.find_all("option")] == ["27", "0"]
        upload = soup.find("input", attrs={"name": "LoadRaidDataFileButton"})
        assert "submitAdminAction('LoadRaidDataFile', 'selected')" in upload["onclick"]

        # picking "New raid" reloads the page with RaidId=0
        resp = await client.get("/admin?RaidId=0", headers=headers)
        soup = BeautifulSoup(await resp.text(), "html.parser")
        chosen = soup.find("form", attrs={"name": "FindTeamForm"}).find("option", selected=True)
        hidden = soup.find("form", attrs={"name": "AdminForm"}).find("input", attrs={"name": "RaidId"})
        assert chosen["value"] == hidden["value"] == "0"

        form = aiohttp.FormData()
        form.add_field("action", "LoadRaidDataFile")
        form.add_field("RaidId", chosen["value"])
        form.add_field("android", sample_bytes(raid_id=28, raid_name="Autumn raid"), filename="raid28.json")
        resp = await client.post("/admin", data=form, headers=headers)
        assert resp.status == 200
        assert "11 new check-ins, 3 teams" in await resp.text()
    assert loaded_store.get_raid(28)["name"] == "Autumn raid"
    assert len(loaded_store.raid_teams(28)) == 3
    assert len(loaded_store.raid_teams(27)) == 3


@pytest.mark.asyncio
async def test_data_file_over_max_file_size(store):
    form = aiohttp.FormData()
    form.add_field("action", "LoadRaidDataFile")
    form.add_field("RaidId", "0")
    form.add_field("android", b" " * (admin_page.MAX_FILE_SIZE + 1), filename="big.json")
    async with running_client() as client:
        resp = await client.post("/admin", data=form, headers=_session(dashboard.ROLE_ADMINISTRATOR))
        assert resp.status == 200
        assert f"larger than {admin_page.MAX_FILE_SIZE} bytes" in await resp.text()
    assert store.raids == {}


@pytest.mark.asyncio
async def test_body_over_server_limit_keeps_page(store):
    form = aiohttp.FormData()
    form.add_field("action", "LoadRaidDataFile")
    form.add_field("RaidId", "0")
    form.add_field("android", b" " * (admin_page.MAX_FILE_SIZE * 2 + 1), filename="huge.json")
    async with running_client() as client:
        resp = await client.post("/admin", data=form, headers=_session(dashboard.ROLE_ADMINISTRATOR))
        assert resp.status == 413
        text = await resp.text()
        assert f"larger than {admin_page.MAX_FILE_SIZE} bytes" in text
        assert "AdminForm" in text


@pytest.mark.asyncio
async def test_load_data_file_for_other_raid_is_refused(loaded_store):
    form = aiohttp.FormData()
    form.add_field("action", "LoadRaidDataFile")
    form.add_field("RaidId", "27")
    form.add_field("android", sample_bytes(raid_id=30), filename="raid30.json")
    async with running_client() as client:
        resp = await client.post("/admin", data=form, headers=_session(dashboard.ROLE_ADMINISTRATOR))
        assert "belongs to raid 30, not 27" in await resp.text()
    assert loaded_store.get_raid(30) is None


@pytest.mark.asyncio
async def test_load_bad_data_file(store):
    form = aiohttp.FormData()
    form.add_field("action", "LoadRaidDataFile")
    form.add_field("RaidId", "0")
    form.add_field("android", b"{broken", filename="raid.json")
    async with running_client() as client:
        resp = await client.post("/admin", data=form, headers=_session(dashboard.ROLE_ADMINISTRATOR))
        text = await resp.text()
        assert "Data file rejected" in text
        assert "not valid JSON" in text


@pytest.mark.asyncio
async def test_recalc_results_rank_and_errors(loaded_store):
    headers = _session(dashboard.ROLE_ADMINISTRATOR)
    async with running_client() as client:
        resp = await client.post("/admin", data={"action": "RecalcRaidResults", "RaidId": "27"}, headers=headers)
        assert "Results recalculated for 3 teams" in await resp.text()
        resp = await client.post("/admin", data={"action": "RecalcRaidRank", "RaidId": "27"}, headers=headers)
        assert "2 teams ranked" in await resp.text()
        resp = await client.post("/admin", data={"action": "FindRaidErrors", "RaidId": "27"}, headers=headers)
        assert "No errors found" in await resp.text()
        resp = await client.post("/admin", data={"action": "RecalcRaidResults", "RaidId": "99"}, headers=headers)
        assert "Raid 99 not found" in await resp.text()

    places = {t["number"]: t["result"]["place"] for t in loaded_store.raid_teams(27)}
    assert places == {11: 1, 12: 2, 13: None}


@pytest.mark.asyncio
async def test_recalc_all_raids_rank_updates_ratings(loaded_store):
    async with running_client() as client:
        resp = await client.post("/admin", data={"action": "RecalcAllRaidsRank", "RaidId": "0"},
                                 headers=_session(dashboard.ROLE_MODERATOR))
        assert "Rank recalculated for 1 raids" in await resp.text()
    assert loaded_store.participants["101"]["rating"] == 1.0


@pytest.mark.asyncio
async def test_clear_tables_is_administrator_only(loaded_store):
    loaded_store.get_raid(27)["errors"] = ["old"]
    async with running_client() as client:
        resp = await client.post("/admin", data={"action": "ClearTables", "RaidId": "27"},
                                 headers=_session(dashboard.ROLE_MODERATOR))
        assert "Only administrators can clear tables" in await resp.text()
        assert loaded_store.get_raid(27)["errors"] == ["old"]

        resp = await client.post("/admin", data={"action": "ClearTables", "RaidId": "27"},
                                 headers=_session(dashboard.ROLE_ADMINISTRATOR))
        assert "Calculated tables cleared" in await resp.text()
    assert loaded_store.get_raid(27)["errors"] == []


@pytest.mark.asyncio
async def test_json_dump(loaded_store):
    async with running_client() as client:
        resp = await client.post("/admin", data={"action": "JSON", "RaidId": "27"},
                                 headers=_session(dashboard.ROLE_ADMINISTRATOR))
        assert resp.status == 200
        assert 'filename="raid_27.json"' in resp.headers["Content-Disposition"]
        dump = await resp.json()
        assert dump["raid"]["raid_id"] == 27
        assert len(dump["teams"]) == 3


@pytest.mark.asyncio
async def test_unknown_action(loaded_store):
    async with running_client() as client:
        resp = await client.post("/admin", data={"action": "DropEverything", "RaidId": "27"},
                                 headers=_session(dashboard.ROLE_ADMINISTRATOR))
        assert resp.status == 400
        assert "Unknown action" in await resp.text()


@pytest.mark.asyncio
async def test_send_message_for_all(loaded_store, monkeypatch):
    loaded_store.link_discord(101, 1001)
    loaded_store.link_discord(103, 1003)
    loaded_store.set_notify(1003, False)
    users = {1001: _FakeUser(), 1003: _FakeUser(fail=True)}
    monkeypatch.setattr(dashboard, "bot_ref", _FakeBot(users))

    data = {"action": "SendMessageForAll", "RaidId": "27", "SendForAllTypeId": "2",
            "MessageSubject": "Road closed", "MessageText": "Use the bridge"}
    async with running_client() as client:
        resp = await client.post("/admin", data=data, headers=_session(dashboard.ROLE_MODERATOR))
        text = await resp.text()
    assert "1 of 2 delivered" in text
    assert "DMs closed" in text
    assert users[1001].sent[0].title.endswith("Road closed")
    msg = loaded_store.messages[-1]
    assert (msg["type"], msg["recipients"], msg["delivered"]) == ("urgent", 2, 1)


@pytest.mark.asyncio
async def test_send_message_with_bot_offline(loaded_store):
    loaded_store.link_discord(101, 1001)
    data = {"action": "SendMessageForAll", "RaidId": "27", "SendForAllTypeId": "1",
            "MessageSubject": "Hi", "MessageText": "See you"}
    async with running_client() as client:
        resp = await client.post("/admin", data=data, headers=_session(dashboard.ROLE_ADMINISTRATOR))
        assert "bot is offline" in await resp.text()

        data["MessageText"] = "  "
        resp = await client.post("/admin", data=data, headers=_session(dashboard.ROLE_ADMINISTRATOR))
        assert "subject and text are required" in await resp.text()
    assert len(loaded_store.messages) == 1


@pytest.mark.asyncio
async def test_api_logs_and_status(store):
    async with running_client() as client:
        resp = await client.get("/api/logs")
        assert resp.status == 401
        resp = await client.get("/api/logs", headers=_session(dashboard.ROLE_VIEWER))
        assert "logs" in await resp.json()
        resp = await client.get("/api/status")
        body = await resp.json()
        assert body["status"] == "ok"
        assert body["bot"] is False
