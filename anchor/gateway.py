"""Async note gateways used by the sync engine.

Both implementations speak in ``NoteOut``/``NotePage`` and raise the
``anchor.errors`` taxonomy, so the engine never sees transport details.
"""

from __future__ import annotations

import logging
from typing import Protocol

import httpx

from . import services
from .config import NOTES_PER_PAGE
from .errors import AuthRequired, NotFound, TransportFailure, ValidationFailure
from .schemas import NoteOut, NotePage

logger = logging.getLogger(__name__)


class NoteGateway(Protocol):
    async def list(self, page: int, limit: int) -> NotePage: ...

    async def get(self, note_id: str) -> NoteOut: ...

    async def create(self, title: str, content: str) -> NoteOut: ...

    async def update(self, note_id: str, title: str, content: str) -> NoteOut: ...

    async def delete(self, note_id: str) -> None: ...


class LocalNoteGateway:
    """Runs the store functions in process for a fixed owner."""

    def __init__(self, owner_id: str) -> None:
        self.owner_id = owner_id

    async def list(self, page: int = 1, limit: int = NOTES_PER_PAGE) -> NotePage:
        notes, has_more = services.list_notes(self.owner_id, page, limit)
        return NotePage(notes=[NoteOut.model_validate(n) for n in notes], has_more=has_more)

    async def get(self, note_id: str) -> NoteOut:
        return NoteOut.model_validate(services.get_note(self.owner_id, note_id))

    async def create(self, title: str, content: str) -> NoteOut:
        return NoteOut.model_validate(services.create_note(self.owner_id, title, content))

    async def update(self, note_id: str, title: str, content: str) -> NoteOut:
        return NoteOut.model_validate(services.update_note(self.owner_id, note_id, title, content))

    async def delete(self, note_id: str) -> None:
        services.delete_note(self.owner_id, note_id)


class HttpNoteGateway:
    """Talks to the ``/notes`` routes. The client must already carry a session cookie."""

    _HEADERS = {"Accept": "application/json", "X-Requested-With": "XMLHttpRequest"}

    def __init__(self, client: httpx.AsyncClient) -> None:
        self.client = client

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            response = await self.client.request(method, url, headers=self._HEADERS, **kwargs)
        except httpx.TransportError as exc:
            raise TransportFailure(f"{method} {url} failed: {exc}") from exc
        if response.status_code == 404:
            raise NotFound()
        if response.status_code == 401:
            raise AuthRequired()
        if response.status_code in (400, 422):
            raise ValidationFailure(_error_text(response))
        if response.status_code >= 400:
            raise TransportFailure(f"{method} {url} returned {response.status_code}")
        return response

    async def list(self, page: int = 1, limit: int = NOTES_PER_PAGE) -> NotePage:
        response = await self._request("GET", "/notes", params={"page": page, "limit": limit})
        return NotePage.model_validate(response.json())

    async def get(self, note_id: str) -> NoteOut:
        response = await self._request("GET", f"/notes/{note_id}")
        return NoteOut.model_validate(response.json())

    async def create(self, title: str, content: str) -> NoteOut:
        response = await self._request("POST", "/notes", json={"title": title, "content": content})
        return NoteOut.model_validate(response.json())

    async def update(self, note_id: str, title: str, content: str) -> NoteOut:
        response = await self._request("PUT", f"/notes/{note_id}", json={"title": title, "content": content})
        return NoteOut.model_validate(response.json())

    async def delete(self, note_id: str) -> None:
        await self._request("DELETE", f"/notes/{note_id}")


def _error_text(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(data, dict):
        return str(data.get("error") or data.get("detail") or data)
    return str(data)


__all__ = ["NoteGateway", "LocalNoteGateway", "HttpNoteGateway"]
