import pathlib
import sys
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
import jwt

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from firenoc.main import create_app
from firenoc.store import store

JWT_SECRET = "jwt_test_secret"


def issue_token(*, tenant_id: str, role: str = "admin", secret: str = JWT_SECRET) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": f"user_{tenant_id}",
        "tenant_id": tenant_id,
        "role": role,
        "exp": int((now + timedelta(minutes=30)).timestamp()),
        "iat": int(now.timestamp()),
        "iss": "test-issuer",
        "aud": "test-audience",
    }
    return jwt.encode(payload, secret, algorithm="HS256")


class AuthenticatedClient:
    """Adds a bearer token for the x-tenant-id / x-user-role headers of each call."""

    def __init__(self, client: TestClient, *, jwt_secret: str):
        self._client = client
        self._jwt_secret = jwt_secret

    def request(self, method: str, url: str, **kwargs):
        headers = dict(kwargs.pop("headers", {}) or {})
        if url.startswith("/api/v1/") and "Authorization" not in headers:
            tenant_id = headers.get("x-tenant-id") or "tenant_default"
            role = headers.pop("x-user-role", "admin")
            token = issue_token(secret=self._jwt_secret, tenant_id=str(tenant_id), role=role)
            headers["Authorization"] = f"Bearer {token}"
        return self._client.request(method, url, headers=headers, **kwargs)

    def __getattr__(self, name: str):
        return getattr(self._client, name)

    def get(self, url: str, **kwargs):
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs):
        return self.request("POST", url, **kwargs)

    def put(self, url: str, **kwargs):
        return self.request("PUT", url, **kwargs)

    def patch(self, url: str, **kwargs):
        return self.request("PATCH", url, **kwargs)

    def delete(self, url: str, **kwargs):
        return self.request("DELETE", url, **kwargs)


@pytest.fixture(autouse=True)
def reset_store(tmp_path: pathlib.Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("FIRENOC_FILE_STORAGE_BACKEND", "local")
    monkeypatch.setenv("UPLOADS_ROOT", str(tmp_path / "uploads"))
    monkeypatch.setenv("JWT_SHARED_SECRET", JWT_SECRET)
    monkeypatch.setenv("JWT_ISSUER", "test-issuer")
    monkeypatch.setenv("JWT_AUDIENCE", "test-audience")
    store.reset()
    yield


@pytest.fixture
def client() -> TestClient:
    app = create_app()
    base = TestClient(app)
    return AuthenticatedClient(base, jwt_secret=JWT_SECRET)


@pytest.fixture
def application_form() -> dict[str, str]:
    return {
        "buildingType": "commercial",
        "propertyName": "Lakeview Plaza",
        "plotNumber": "P-17",
        "address": "12 Ring Road",
        "builtupArea": "1250.5",
        "floors": "3",
        "applicantName": "Asha Rao",
        "mobile": "9876543210",
        "email": "asha@example.com",
        "applicantType": "owner",
    }


@pytest.fixture
def safety_review_form() -> dict[str, str]:
    return {
        "buildingName": "Harbor Tower",
        "buildingType": "commercial",
        "address": "4 Dock Street",
        "floors": "3",
        "occupancyLoad": "240",
        "yearConstruction": "2005",
        "ownerName": "R. Menon",
        "contactNumber": "9123456780",
        "fireExtinguishers": "true",
        "hydrants": "false",
        "wiringCondition": "average",
    }
