import asyncio
import logging
import sqlite3

import httpx
import pytest

from collegestar.client.errors import AuthenticationMissing, NetworkOrServerError
from collegestar.client.identity import ApiClient, ServiceIdentityStore
from collegestar.client.poller import PaymentVerifier, VerificationStatus
from collegestar.client.scheduler import AsyncioScheduler, VirtualScheduler
from collegestar.client.search import NoteBrowser, filter_notes
from collegestar.client.storage import JsonFileKeyValueStore, MemoryKeyValueStore

def asgi_client(app):
    return ApiClient(
        "http://testserver",
        client=httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://testserver"),
    )

def test_api_client_round_trip(app, pdf_bytes):
    async def scenario():
        api = asgi_client(app)
        user_id = await api.register("asha@example.com", "secret123", "Asha Rao")
        assert api.get_current_user() is None
        user = await api.login("asha@example.com", "secret123")
        assert user == {"id": user_id, "email": "asha@example.com"}

        note = await api.upload_note("Optics", "Physics", ("optics.pdf", pdf_bytes),
                                     description="Lenses", tags=["light", "lens"])
        assert note["tags"] == ["light", "lens"]
        notes = await api.list_notes()
        downloaded = await api.download_note(note["id"])
        mine = await api.list_user_notes(user_id)
        profile = await api.update_profile(user_id, {"institute": "IISc", "studyHours": "4"})
        await api.delete_note(note["id"])
        remaining = await api.list_notes()
        await api.logout()
        return notes, downloaded, mine, profile, remaining, api

    notes, downloaded, mine, profile, remaining, api = asyncio.run(scenario())
    assert notes[0]["author_name"] == "Asha Rao"
    assert downloaded["download_count"] == 1
    assert downloaded["file_url"].startswith("http://testserver/uploads/")
    assert [n["id"] for n in mine] == [downloaded["id"]]
    assert profile["studyHours"] == "4"
    assert profile["profileCompletion"] == 25
    assert remaining == []
    assert api.get_current_user() is None

def test_api_client_errors(app):
    async def scenario():
        api = asgi_client(app)
        with pytest.raises(AuthenticationMissing):
            await api.update_profile("usr_1", {"bio": "x"})
        with pytest.raises(NetworkOrServerError) as excinfo:
            await api.fetch_profile("usr_missing")
        with pytest.raises(AuthenticationMissing):
            await api.login("nobody@example.com", "secret123")
        return excinfo.value

    error = asyncio.run(scenario())
    assert error.status_code == 404
    assert str(error) == "Profile not found"

def test_transport_failures_become_network_errors():
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    async def scenario():
        transport = httpx.MockTransport(refuse)
        api = ApiClient("http://api.invalid",
                        client=httpx.AsyncClient(transport=transport, base_url="http://api.invalid"))
        await api.fetch_profile("usr_1")

    with pytest.raises(NetworkOrServerError):
        asyncio.run(scenario())

def captive_portal_client():
    def html_page(request):
        return httpx.Response(200, text="<html>captive portal</html>",
                              headers={"content-type": "text/html"})

    return ApiClient(
        "http://api.invalid", token="sess_1", user={"id": "usr_1", "email": "asha@example.com"},
        client=httpx.AsyncClient(transport=httpx.MockTransport(html_page), base_url="http://api.invalid"),
    )

def test_non_json_body_is_a_network_error():
    async def scenario():
        await captive_portal_client().fetch_profile("usr_1")

    with pytest.raises(NetworkOrServerError) as excinfo:
        asyncio.run(scenario())
    assert excinfo.value.status_code == 200

def test_poller_times_out_behind_a_captive_portal():
    scheduler = VirtualScheduler()
    verifier = PaymentVerifier(captive_portal_client(), MemoryKeyValueStore(), scheduler)

    async def scenario():
        verifier.start()
        await scheduler.advance(20_000)

    asyncio.run(scenario())
    assert verifier.status is VerificationStatus.TIMEOUT
    assert scheduler.active_count == 0

def test_poller_times_out_behind_a_captive_portal_on_real_timers(caplog):
    async def scenario():
        verifier = PaymentVerifier(captive_portal_client(), MemoryKeyValueStore(), AsyncioScheduler(),
                                   timeout_ms=100, interval_ms=20)
        verifier.start()
        return await verifier.wait()

    assert asyncio.run(scenario()) is VerificationStatus.TIMEOUT
    assert not [r for r in caplog.records if r.levelno >= logging.ERROR]

def test_poller_sees_server_side_confirmation(app):
    async def scenario():
        api = asgi_client(app)
        user_id = await api.register("asha@example.com", "secret123")
        await api.login("asha@example.com", "secret123")
        verifier = PaymentVerifier(api, MemoryKeyValueStore(), AsyncioScheduler(),
                                   timeout_ms=2_000, interval_ms=10)
        assert verifier.start() is VerificationStatus.PENDING
        await asyncio.sleep(0.05)
        assert verifier.status is VerificationStatus.PENDING
        await api.update_profile(user_id, {"donorVerified": True, "donorAmount": 50})
        return await verifier.wait()

    assert asyncio.run(scenario()) is VerificationStatus.VERIFIED

def test_service_identity_store(service):
    user_id = service.register_user("asha@example.com", "secret123")
    token, _ = service.login("asha@example.com", "secret123")

    anonymous = ServiceIdentityStore(service)
    assert anonymous.get_current_user() is None
    assert ServiceIdentityStore(service, token="sess_bogus").get_current_user() is None

    store = ServiceIdentityStore(service, token=token)
    assert store.get_current_user() == {"id": user_id, "email": "asha@example.com"}

    async def scenario():
        updated = await store.update_profile(user_id, {"donorVerified": True, "donorAmount": 20})
        fetched = await store.fetch_profile(user_id)
        with pytest.raises(AuthenticationMissing):
            await store.update_profile("usr_other", {"bio": "x"})
        with pytest.raises(NetworkOrServerError):
            await store.fetch_profile("usr_missing")
        return updated, fetched

    updated, fetched = asyncio.run(scenario())
    assert updated["donorVerified"] is True
    assert fetched["donorAmount"] == 20

def test_service_identity_store_reports_database_errors(service, monkeypatch):
    def broken(user_id):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(service, "get_profile", broken)
    store = ServiceIdentityStore(service)

    with pytest.raises(NetworkOrServerError) as excinfo:
        asyncio.run(store.fetch_profile("usr_1"))
    assert excinfo.value.status_code == 500

NOTES = [
    {"id": "n1", "title": "Organic Chemistry", "subject": "Chemistry", "tags": ["alkanes"]},
    {"id": "n2", "title": "Linear Algebra", "subject": "Math", "tags": ["matrices", "Eigen"]},
    {"id": "n3", "title": "Mechanics", "subject": "Physics", "tags": []},
]

def test_filter_notes_matches_title_subject_and_tags():
    assert [n["id"] for n in filter_notes(NOTES, "chem")] == ["n1"]
    assert [n["id"] for n in filter_notes(NOTES, "PHYSICS")] == ["n3"]
    assert [n["id"] for n in filter_notes(NOTES, "eigen")] == ["n2"]
    assert len(filter_notes(NOTES, "  ")) == 3
    assert filter_notes(NOTES, "biology") == []

def test_note_browser_pages_results():
    notes = [{"id": f"n{i}", "title": f"Note {i}", "subject": "Math", "tags": []} for i in range(5)]
    browser = NoteBrowser(notes, page_size=2)
    assert [n["id"] for n in browser.displayed] == ["n0", "n1"]
    assert browser.has_more
    browser.load_more()
    browser.load_more()
    assert len(browser.displayed) == 5
    assert not browser.has_more
    assert browser.search("note 3") == [notes[3]]

    browser.record_download({**notes[3], "download_count": 1})
    assert browser.displayed[0]["download_count"] == 1

def test_json_file_store_persists(tmp_path):
    path = str(tmp_path / "local.json")
    flags = JsonFileKeyValueStore(path)
    assert not flags.has("donorVerified")
    flags.set_flag("donorVerified")
    flags.set("theme", "dark")

    reopened = JsonFileKeyValueStore(path)
    assert reopened.flag("donorVerified")
    assert reopened.get("theme") == "dark"
    reopened.delete("theme")
    assert not JsonFileKeyValueStore(path).has("theme")

def test_json_file_store_ignores_corrupt_file(tmp_path):
    path = tmp_path / "local.json"
    path.write_text("{not json")
    assert JsonFileKeyValueStore(str(path)).get("donorVerified") is None
