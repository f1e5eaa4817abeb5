# anchor/app.py
from __future__ import annotations
from html import escape
from typing import Optional
import logging

from fastapi import APIRouter, Depends, FastAPI, Form, Query, Request, WebSocket, WebSocketDisconnect, status
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from pydantic import ValidationError
from starlette.middleware.sessions import SessionMiddleware

from .auth import (
    Identity, authenticate, login, logout, register_user,
    require_identity, session_identity,
)
from .config import MAX_PAGE_SIZE, Settings
from .db import init_db
from .errors import AnchorError, AuthRequired, ValidationFailure
from .log import configure_logging
from .relay import HELLO, BroadcastRelay
from .schemas import NoteOut, NotePage, NoteWrite, RelayFrame
from . import services

logger = logging.getLogger(__name__)


def wants_json(request: Request) -> bool:
    if request.headers.get("x-requested-with", "").lower() == "xmlhttprequest":
        return True
    return "json" in request.headers.get("accept", "")


def _to_out(n) -> NoteOut:
    return NoteOut.model_validate(n)


# ---------- Errors ----------
async def _auth_required(request: Request, exc: AuthRequired):
    if wants_json(request):
        return JSONResponse({"error": exc.message}, status_code=exc.status_code)
    return RedirectResponse("/auth/login", status_code=status.HTTP_303_SEE_OTHER)


async def _anchor_error(request: Request, exc: AnchorError):
    if exc.status_code == 404 and not wants_json(request) and request.method == "GET":
        return HTMLResponse(escape(exc.message), status_code=404)
    return JSONResponse({"error": exc.message}, status_code=exc.status_code)


# ---------- Notes ----------
notes = APIRouter(prefix="/notes", tags=["notes"])


@notes.get("", response_model=None)
def list_notes(
    request: Request,
    page: int = Query(1, ge=1),
    limit: Optional[int] = Query(None, ge=1, le=MAX_PAGE_SIZE),
    identity: Identity = Depends(require_identity),
):
    limit = limit or request.app.state.settings.page_size
    found, has_more = services.list_notes(identity.id, page, limit)
    if wants_json(request):
        return NotePage(notes=[_to_out(n) for n in found], has_more=has_more).model_dump(mode="json", by_alias=True)
    return HTMLResponse(_notes_page(identity))


@notes.post("", status_code=201)
def create_note(payload: NoteWrite, identity: Identity = Depends(require_identity)) -> NoteOut:
    return _to_out(services.create_note(identity.id, payload.title, payload.content))


@notes.get("/{note_id}", response_model=None)
def get_note(note_id: str, request: Request, identity: Identity = Depends(require_identity)):
    note = services.get_note(identity.id, note_id)
    if wants_json(request):
        return _to_out(note).model_dump(mode="json")
    return HTMLResponse(_notes_page(identity))


@notes.put("/{note_id}")
def update_note(note_id: str, payload: NoteWrite, identity: Identity = Depends(require_identity)) -> NoteOut:
    return _to_out(services.update_note(identity.id, note_id, payload.title, payload.content))


@notes.delete("/{note_id}")
def delete_note(note_id: str, identity: Identity = Depends(require_identity)):
    services.delete_note(identity.id, note_id)
    return {"message": "Note deleted successfully"}


# ---------- Auth ----------
accounts = APIRouter(prefix="/auth", tags=["auth"])


def _redirect(url: str) -> RedirectResponse:
    return RedirectResponse(url, status_code=status.HTTP_303_SEE_OTHER)


@accounts.get("/login", response_class=HTMLResponse)
def login_page():
    return _auth_page("Login")


@accounts.post("/login")
def login_submit(request: Request, email: str = Form(""), password: str = Form("")):
    identity = authenticate(email, password)
    if identity is None:
        return _auth_page("Login", error="Invalid credentials")
    login(request, identity)
    return _redirect("/")


@accounts.get("/register", response_class=HTMLResponse)
def register_page():
    return _auth_page("Register")


@accounts.post("/register")
def register_submit(username: str = Form(""), email: str = Form(""), password: str = Form("")):
    try:
        register_user(username, email, password)
    except ValidationFailure as exc:
        return _auth_page("Register", error=exc.message)
    return _redirect("/auth/login")


@accounts.get("/logout")
def logout_route(request: Request):
    logout(request)
    return _redirect("/auth/login")


# ---------- Real-time relay ----------
realtime = APIRouter()


@realtime.websocket("/ws")
async def relay_socket(websocket: WebSocket):
    identity = session_identity(websocket)
    if identity is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    relay: BroadcastRelay = websocket.app.state.relay
    await websocket.accept()
    connection_id = relay.connect(websocket, channel=identity.id)
    try:
        await relay.send(connection_id, HELLO, {"connection_id": connection_id})
        while True:
            data = await websocket.receive_json()
            try:
                frame = RelayFrame.model_validate(data)
            except ValidationError:
                logger.warning("malformed frame from %s", connection_id)
                continue
            await relay.broadcast(frame.event, frame.payload, exclude=connection_id, channel=identity.id)
    except WebSocketDisconnect:
        pass
    except ValueError:
        logger.warning("non-JSON frame from %s; closing", connection_id)
    finally:
        relay.disconnect(connection_id)


# ---------- App ----------
def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)
    init_db()

    app = FastAPI(title="Anchor")
    app.state.settings = settings
    app.state.relay = BroadcastRelay()
    app.add_middleware(
        SessionMiddleware,
        secret_key=settings.session_secret,
        session_cookie="anchor_session",
        max_age=settings.session_max_age,
        same_site="lax",
        https_only=settings.https_only,
    )
    app.add_exception_handler(AuthRequired, _auth_required)
    app.add_exception_handler(AnchorError, _anchor_error)
    app.include_router(notes)
    app.include_router(accounts)
    app.include_router(realtime)

    @app.get("/", response_class=HTMLResponse)
    def index(request: Request):
        if session_identity(request) is not None:
            return _redirect("/notes")
        return HTMLResponse(_page("Anchor", _WELCOME))

    return app


# ---------- Tiny UI (single file, no build) ----------
_HEAD = """<!doctype html>
<html lang="en" class="h-full">
<head>
  <meta charset="utf-8"/>
  <meta name="viewport" content="width=device-width,initial-scale=1"/>
  <title>{title}</title>
  <script src="https://cdn.tailwindcss.com"></script>
  <style>
    .btn {{ display: inline-flex; align-items: center; gap: 8px; padding: 8px 12px; border-radius: 12px;
           border: 1px solid #cbd5e1; background: #fff; }}
    .btn-primary {{ background: #0b5cff; color: #fff; border-color: #0b5cff; }}
    .btn-warn {{ background: #ffe3e3; border-color: #fecaca; }}
  </style>
</head>
<body class="h-full bg-slate-50 text-slate-900">
"""


def _page(title: str, body: str) -> str:
    return _HEAD.format(title=escape(title)) + body + "\n</body>\n</html>\n"


_WELCOME = """
  <main class="max-w-xl mx-auto px-4 py-16 space-y-4">
    <h1 class="text-3xl font-semibold">⚓ Anchor</h1>
    <p class="text-slate-600">Notes that follow you across devices.</p>
    <a class="btn btn-primary" href="/auth/login">Log in</a>
    <a class="btn" href="/auth/register">Register</a>
  </main>
"""


def _auth_page(title: str, error: Optional[str] = None) -> HTMLResponse:
    action = "/auth/login" if title == "Login" else "/auth/register"
    username = "" if title == "Login" else (
        '<input name="username" class="w-full rounded-lg border px-3 py-2" placeholder="Username" required/>'
    )
    other = ('<a href="/auth/register">Create an account</a>' if title == "Login"
             else '<a href="/auth/login">Already registered? Log in</a>')
    alert = f'<div class="rounded-lg border border-rose-400 text-rose-700 px-3 py-2">{escape(error)}</div>' if error else ""
    body = f"""
  <main class="max-w-sm mx-auto px-4 py-16 space-y-3">
    <h1 class="text-2xl font-semibold">{escape(title)}</h1>
    {alert}
    <form method="post" action="{action}" class="space-y-3">
      {username}
      <input name="email" type="email" class="w-full rounded-lg border px-3 py-2" placeholder="Email" required/>
      <input name="password" type="password" class="w-full rounded-lg border px-3 py-2" placeholder="Password" required/>
      <button class="btn btn-primary" type="submit">{escape(title)}</button>
    </form>
    <p class="text-sm">{other}</p>
  </main>
"""
    return HTMLResponse(_page(f"{title} - Anchor", body))


def _notes_page(identity: Identity) -> str:
    header = f"""
  <header class="sticky top-0 border-b bg-white/70 backdrop-blur">
    <div class="max-w-6xl mx-auto px-4 py-3 flex items-center gap-3">
      <h1 class="text-xl font-semibold">⚓ Anchor</h1>
      <div class="flex-1"></div>
      <span class="text-sm text-slate-500">{escape(identity.username)}</span>
      <button id="new-note-btn" class="btn btn-primary">New</button>
      <a class="btn" href="/auth/logout">Log out</a>
    </div>
  </header>
"""
    return _page("Anchor", header + _NOTES_BODY)


_NOTES_BODY = """
  <main class="max-w-6xl mx-auto px-4 py-4 grid grid-cols-1 md:grid-cols-[320px_1fr] gap-4">
    <section class="space-y-2">
      <div id="notes-list" class="grid gap-2 max-h-[75vh] overflow-auto"></div>
      <div id="load-more" class="hidden"><button id="load-more-btn" class="btn w-full">Load more</button></div>
    </section>
    <section class="space-y-3">
      <div class="flex items-center gap-2">
        <input id="note-title" class="flex-1 rounded-lg border px-3 py-2 font-semibold" placeholder="Untitled"/>
        <button id="save-note-btn" class="btn">Save</button>
      </div>
      <textarea id="note-content" class="w-full h-[60vh] rounded-lg border px-3 py-2" placeholder="Write…"></textarea>
      <div id="status" class="text-xs text-slate-400"></div>
    </section>
  </main>
  <script>
    const NOTES_PER_PAGE = 10, AUTOSAVE_DELAY = 1000, PREVIEW = 50;
    const $ = (id) => document.getElementById(id);
    const el = { title: $('note-title'), content: $('note-content'), list: $('notes-list'),
                 more: $('load-more'), moreBtn: $('load-more-btn'), save: $('save-note-btn'), status: $('status') };
    // gen is bumped whenever the editor switches note; responses issued under an older gen leave the editor alone
    const state = { current: null, base: null, gen: 0, page: 1, dirty: false, saving: false, savingGen: -1, resave: false,
                    timer: null, notes: new Map(), deleted: new Set() };
    const json = { 'Accept': 'application/json', 'Content-Type': 'application/json' };
    const esc = (s) => (s||'').replace(/[&<>"]/g, c => ({'&':'&amp;','<':'&lt;','>':'&gt;','"':'&quot;'}[c]));
    const preview = (s) => !s ? '' : (s.length > PREVIEW ? s.slice(0, PREVIEW) + '...' : s);
    function ago(iso){
      const s = Math.round((Date.now() - new Date(iso)) / 1000);
      if (s < 10) return 'just now';
      for (const [n, k] of [['year',31536000],['month',2592000],['week',604800],['day',86400],['hour',3600],['minute',60],['second',1]])
        if (s >= k) { const c = Math.floor(s / k); return `${c} ${n}${c === 1 ? '' : 's'} ago`; }
    }
    function render(){
      const notes = [...state.notes.values()].sort((a, b) => new Date(b.updated_at) - new Date(a.updated_at));
      el.list.innerHTML = notes.map(n => `
        <div class="rounded-xl border p-3 bg-white ${n.id === state.current ? 'ring-2 ring-blue-500' : ''}" data-note-id="${n.id}">
          <div class="flex justify-between gap-2">
            <a href="/notes/${n.id}" class="note-link font-semibold truncate">${esc(n.title || 'Untitled')}</a>
            <small class="note-date text-slate-400" data-at="${n.updated_at}">${ago(n.updated_at)}</small>
          </div>
          <div class="text-sm text-slate-500">${esc(preview(n.content))}</div>
          <button class="delete-note text-xs text-rose-600">delete</button>
        </div>`).join('') || '<div class="text-sm text-slate-500">no notes</div>';
      document.title = state.current && el.title.value ? `${el.title.value} - Anchor` : 'Anchor';
      el.status.textContent = state.saving && state.savingGen === state.gen ? 'saving…' : state.dirty ? 'unsaved changes' : '';
    }
    function upsert(n){
      if (state.deleted.has(n.id)) return;
      const held = state.notes.get(n.id);
      if (held && new Date(n.updated_at) < new Date(held.updated_at)) return;
      state.notes.set(n.id, n);
    }
    function show(n){ state.gen++; state.current = n.id; state.base = n.updated_at; el.title.value = n.title || ''; el.content.value = n.content || ''; state.dirty = false; }
    function reset(){ clearTimeout(state.timer); state.gen++; state.current = null; state.base = null; el.title.value = ''; el.content.value = ''; state.dirty = false; history.pushState({noteId: null}, '', '/notes'); }
    async function fetchPage(){
      try {
        const r = await fetch(`/notes?page=${state.page}&limit=${NOTES_PER_PAGE}`, {headers: json});
        if (!r.ok) throw new Error(r.statusText);
        const data = await r.json();
        data.notes.forEach(upsert);
        el.more.classList.toggle('hidden', !data.hasMore);
      } catch (e) { state.page = Math.max(1, state.page - 1); alert('Failed to load notes. Please try again.'); }
      render();
    }
    const draft = () => JSON.stringify({title: el.title.value, content: el.content.value});
    async function save(){
      if (state.saving) { state.resave = true; return; }
      if (state.current && state.deleted.has(state.current)) return;
      const gen = state.gen, id = state.current, body = draft();
      state.saving = true; state.savingGen = gen; render();
      let failed = false;
      try {
        const r = await fetch(id ? `/notes/${id}` : '/notes', {method: id ? 'PUT' : 'POST', headers: json, body});
        if (r.status === 404 && id) {
          failed = true; state.notes.delete(id);
          if (state.gen === gen && state.current === id && !state.deleted.has(id)) {
            state.current = null; state.base = null;
            alert('This note was deleted elsewhere. Your unsaved changes are kept as a new note.');
          }
        } else {
          if (!r.ok) throw new Error(r.statusText);
          const n = await r.json();
          if (!state.deleted.has(n.id)) {
            upsert(n); emit(id ? 'note-updated' : 'note-created', n);
            const superseded = state.base && new Date(state.base) > new Date(n.updated_at);
            if (state.gen === gen && !superseded) {
              state.current = n.id; state.base = n.updated_at;
              if (draft() === body) state.dirty = false;
              history.replaceState({noteId: n.id}, '', `/notes/${n.id}`);
            }
          }
        }
      } catch (e) { failed = true; if (state.gen === gen) alert('Failed to save note. Please try again.'); }
      state.saving = false;
      const resave = state.resave; state.resave = false;
      // the draft that just failed is not retried on its own
      const sameDraft = state.gen === gen && state.current === id && draft() === body;
      if (resave && state.dirty && !(failed && sameDraft)) save();
      render();
    }
    function onInput(){ state.dirty = true; clearTimeout(state.timer); state.timer = setTimeout(() => state.dirty && save(), AUTOSAVE_DELAY); render(); }
    async function openNote(id, push){
      clearTimeout(state.timer);
      const gen = ++state.gen;
      try {
        const r = await fetch(`/notes/${id}`, {headers: json});
        if (!r.ok) throw new Error('Note not found');
        const n = await r.json();
        if (gen !== state.gen) return;
        upsert(n); show(n);
        if (push) history.pushState({noteId: id}, '', `/notes/${id}`);
      } catch (e) {
        if (gen !== state.gen) return;
        alert('Failed to fetch note. Please try again.'); reset();
      }
      render();
    }
    async function del(id){
      if (!confirm('Are you sure you want to delete this note?')) return;
      const held = state.notes.get(id); state.deleted.add(id); state.notes.delete(id); render();
      try {
        const r = await fetch(`/notes/${id}`, {method: 'DELETE', headers: json});
        if (!r.ok && r.status !== 404) throw new Error(r.statusText);
        emit('note-deleted', id); state.notes.delete(id);
        if (state.current === id) reset();
      } catch (e) {
        state.deleted.delete(id); if (held) upsert(held);
        alert('Failed to delete note. Please try again.');
        if (state.current === id && state.dirty) onInput();
      }
      render();
    }
    let socket = null;
    function emit(event, payload){ if (socket && socket.readyState === 1) socket.send(JSON.stringify({event, payload})); }
    function connect(){
      socket = new WebSocket(`${location.protocol === 'https:' ? 'wss' : 'ws'}://${location.host}/ws`);
      socket.onmessage = (m) => {
        const {event, payload} = JSON.parse(m.data);
        if (event === 'note-created') upsert(payload);
        if (event === 'note-updated') {
          upsert(payload);
          if (payload.id === state.current && !state.deleted.has(payload.id) && (!state.base || new Date(payload.updated_at) > new Date(state.base))) { clearTimeout(state.timer); show(payload); }
        }
        if (event === 'note-deleted') {
          state.notes.delete(payload);
          if (payload === state.current) {
            if (state.dirty) { state.current = null; state.base = null; alert('This note was deleted elsewhere. Your unsaved changes are kept as a new note.'); onInput(); }
            else reset();
          }
        }
        render();
      };
      socket.onclose = () => setTimeout(connect, 2000);
    }
    el.title.addEventListener('input', onInput);
    el.content.addEventListener('input', onInput);
    el.save.addEventListener('click', () => { clearTimeout(state.timer); save(); });
    el.moreBtn.addEventListener('click', () => { state.page += 1; fetchPage(); });
    $('new-note-btn').addEventListener('click', () => {
      if (state.dirty && !confirm('You have unsaved changes. Are you sure you want to create a new note?')) return;
      reset(); render();
    });
    el.list.addEventListener('click', (e) => {
      const link = e.target.closest('.note-link'), delBtn = e.target.closest('.delete-note');
      const id = e.target.closest('[data-note-id]')?.dataset.noteId;
      if (link) {
        e.preventDefault();
        if (state.dirty && !confirm('You have unsaved changes. Are you sure you want to navigate away?')) return;
        openNote(id, true);
      }
      if (delBtn) { e.preventDefault(); del(id); }
    });
    window.addEventListener('beforeunload', (e) => { if (state.dirty) { e.preventDefault(); e.returnValue = ''; } });
    window.addEventListener('popstate', (e) => { const id = e.state && e.state.noteId; if (id) openNote(id); else reset(); });
    setInterval(() => document.querySelectorAll('.note-date').forEach(d => d.textContent = ago(d.dataset.at)), 10000);
    connect();
    (async () => {
      await fetchPage();
      const m = location.pathname.match(/^\\/notes\\/([a-f0-9]{32})$/);
      if (m) openNote(m[1]); else history.replaceState({noteId: null}, '', '/notes');
    })();
  </script>
"""
