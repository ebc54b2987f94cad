import pytest
from fastapi.testclient import TestClient

from collegestar.backend.config import Settings
from collegestar.backend.main import create_app
from collegestar.client.errors import NetworkOrServerError
from collegestar.client.identity import IdentityStore

PDF_BYTES = b"%PDF-1.4\n% CollegeStar test file\n"

@pytest.fixture
def settings(tmp_path):
    return Settings(
        db_path=str(tmp_path / "collegestar.db"),
        upload_dir=str(tmp_path / "uploads"),
        website_dir=str(tmp_path / "website"),
        max_upload_mb=1,
    )

@pytest.fixture
def app(settings):
    return create_app(settings)

@pytest.fixture
def client(app):
    return TestClient(app)

@pytest.fixture
def service(app):
    return app.state.service

@pytest.fixture
def pdf_bytes():
    return PDF_BYTES

@pytest.fixture
def signup(client):
    def register_and_login(email="asha@example.com", password="secret123", full_name="Asha Rao"):
        """Return ``(user_id, auth headers)`` for a fresh account."""
        res = client.post("/api/auth/register",
                          json={"email": email, "password": password, "full_name": full_name})
        assert res.status_code == 200, res.text
        user_id = res.json()["user_id"]
        res = client.post("/api/auth/login", json={"email": email, "password": password})
        assert res.status_code == 200, res.text
        return user_id, {"Authorization": f"Bearer {res.json()['token']}"}
    return register_and_login

@pytest.fixture
def post_note(client):
    def upload_note(headers, title="Thermodynamics", subject="Physics",
                    tags='["heat", "entropy"]', file_name="thermo.pdf", content=PDF_BYTES):
        return client.post(
            "/api/notes",
            headers=headers,
            data={"title": title, "subject": subject, "description": "Unit 3 summary", "tags": tags},
            files={"file": (file_name, content, "application/pdf")},
        )
    return upload_note

class FakeIdentity(IdentityStore):
    """
    Scripted identity store.

    ``fetch_profile`` reports the donor flag as set from call number
    ``donor_from_call`` on (as ``donor_value``) and raises for the call
    numbers in ``failing_calls``.
    """

    def __init__(self, user=None, donor_from_call=None, failing_calls=(), update_error=None,
                 donor_value=True):
        self.user = user
        self.donor_from_call = donor_from_call
        self.failing_calls = set(failing_calls)
        self.update_error = update_error
        self.donor_value = donor_value
        self.calls = []
        self.patches = []

    def get_current_user(self):
        return self.user

    async def fetch_profile(self, user_id):
        self.calls.append(user_id)
        n = len(self.calls)
        if n in self.failing_calls:
            raise NetworkOrServerError("connection reset")
        donor = self.donor_from_call is not None and n >= self.donor_from_call
        return {"id": user_id, "donorVerified": self.donor_value if donor else False}

    async def update_profile(self, user_id, patch):
        if self.update_error is not None:
            raise self.update_error
        self.patches.append((user_id, patch))
        return {"id": user_id, **patch}

@pytest.fixture
def user():
    return {"id": "usr_1", "email": "asha@example.com"}

@pytest.fixture
def fake_identity():
    """The ``FakeIdentity`` class, for building scripted stores in tests."""
    return FakeIdentity
