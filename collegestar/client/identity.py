"""
Identity and profile access for client-side code.

``IdentityStore`` is what the donation flow and the payment poller depend
on. ``ApiClient`` satisfies it over HTTP against the REST API; the
``ServiceIdentityStore`` satisfies it in-process against the service layer.
"""
import abc
import logging
import os
import sqlite3
from typing import Any, Dict, List, Optional, Union

import httpx

from ..backend.domain import AuthError, NotFoundError
from ..backend.models import ProfileUpdate
from ..backend.services import CollegeStar
from .errors import AuthenticationMissing, NetworkOrServerError

logger = logging.getLogger(__name__)

Profile = Dict[str, Any]

class IdentityStore(abc.ABC):

    @abc.abstractmethod
    def get_current_user(self) -> Optional[Dict[str, str]]:
        """The signed-in user (``{"id", "email"}``) or ``None``. Never does I/O."""

    @abc.abstractmethod
    async def fetch_profile(self, user_id: str) -> Profile:
        pass

    @abc.abstractmethod
    async def update_profile(self, user_id: str, patch: Dict[str, Any]) -> Profile:
        """Apply a partial update using the API's camelCase keys."""

class ApiClient(IdentityStore):
    """
    Async HTTP client for the CollegeStar REST API.

    Holds the bearer token and the signed-in user after ``login``. Transport
    failures and error responses surface as ``NetworkOrServerError``; a 401
    surfaces as ``AuthenticationMissing``.
    """

    def __init__(self, base_url: str, token: Optional[str] = None,
                 user: Optional[Dict[str, str]] = None,
                 client: Optional[httpx.AsyncClient] = None, timeout: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.user = user
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)

    async def __aenter__(self) -> "ApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _headers(self, auth: bool) -> Dict[str, str]:
        if not auth:
            return {}
        if not self.token:
            raise AuthenticationMissing()
        return {"Authorization": f"Bearer {self.token}"}

    async def _request(self, method: str, path: str, auth: bool = False, **kwargs) -> Any:
        headers = self._headers(auth)
        try:
            response = await self._client.request(method, path, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            raise NetworkOrServerError(f"{method} {path} failed: {e}") from e
        if response.status_code == 401:
            raise AuthenticationMissing(_detail(response))
        if response.is_error:
            raise NetworkOrServerError(_detail(response), status_code=response.status_code)
        try:
            return response.json()
        except ValueError as e:
            raise NetworkOrServerError(
                f"{method} {path} returned a non-JSON body", status_code=response.status_code
            ) from e

    # Auth

    async def register(self, email: str, password: str, full_name: str = "") -> str:
        data = await self._request(
            "POST", "/api/auth/register",
            json={"email": email, "password": password, "full_name": full_name},
        )
        return data["user_id"]

    async def login(self, email: str, password: str) -> Dict[str, str]:
        data = await self._request("POST", "/api/auth/login", json={"email": email, "password": password})
        self.token = data["token"]
        self.user = await self._request("GET", "/api/auth/me", auth=True)
        return self.user

    async def logout(self) -> None:
        if self.token:
            await self._request("POST", "/api/auth/logout", auth=True)
        self.token = None
        self.user = None

    def get_current_user(self) -> Optional[Dict[str, str]]:
        return self.user if self.token else None

    # Profiles

    async def fetch_profile(self, user_id: str) -> Profile:
        return await self._request("GET", f"/api/profiles/{user_id}", auth=bool(self.token))

    async def update_profile(self, user_id: str, patch: Dict[str, Any]) -> Profile:
        return await self._request("PUT", f"/api/profiles/{user_id}", auth=True, json=patch)

    # Notes

    async def list_notes(self) -> List[Dict[str, Any]]:
        return await self._request("GET", "/api/notes")

    async def list_user_notes(self, user_id: str) -> List[Dict[str, Any]]:
        return await self._request("GET", f"/api/notes/user/{user_id}", auth=True)

    async def upload_note(self, title: str, subject: str, file: Union[str, tuple],
                          description: str = "", tags: Optional[List[str]] = None) -> Dict[str, Any]:
        """
        Upload a note file with its metadata.

        ``file`` is a path on disk or a ``(file_name, bytes)`` pair.
        """
        if isinstance(file, str):
            with open(file, "rb") as fh:
                file = (os.path.basename(file), fh.read())
        data = {
            "title": title,
            "subject": subject,
            "description": description,
            "tags": ",".join(tags or []),
        }
        return await self._request("POST", "/api/notes", auth=True, data=data, files={"file": file})

    async def update_note(self, note_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request("PUT", f"/api/notes/{note_id}", auth=True, json=changes)

    async def delete_note(self, note_id: str) -> None:
        await self._request("DELETE", f"/api/notes/{note_id}", auth=True)

    async def download_note(self, note_id: str) -> Dict[str, Any]:
        """Count a download and return the note with an absolute ``file_url``."""
        note = await self._request("POST", f"/api/notes/{note_id}/download")
        note["file_url"] = f"{self.base_url}{note['file_url']}"
        return note

def _detail(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(data, dict) and "detail" in data:
        return str(data["detail"])
    return response.text

class ServiceIdentityStore(IdentityStore):
    """Identity store that calls the service layer directly, without HTTP."""

    def __init__(self, service: CollegeStar, token: Optional[str] = None):
        self.service = service
        self.token = token

    def get_current_user(self) -> Optional[Dict[str, str]]:
        if not self.token:
            return None
        try:
            return self.service.current_user(self.token)
        except AuthError:
            return None

    async def fetch_profile(self, user_id: str) -> Profile:
        try:
            return self.service.get_profile(user_id).to_dict()
        except NotFoundError as e:
            raise NetworkOrServerError(str(e), status_code=404) from e
        except sqlite3.Error as e:
            raise NetworkOrServerError(f"Database error: {e}", status_code=500) from e

    async def update_profile(self, user_id: str, patch: Dict[str, Any]) -> Profile:
        if not self.token:
            raise AuthenticationMissing()
        changes = ProfileUpdate(**patch).model_dump(exclude_unset=True)
        try:
            return self.service.update_profile(self.token, user_id, changes).to_dict()
        except AuthError as e:
            raise AuthenticationMissing(str(e)) from e
        except ValueError as e:
            raise NetworkOrServerError(str(e), status_code=400) from e
        except sqlite3.Error as e:
            raise NetworkOrServerError(f"Database error: {e}", status_code=500) from e
