import logging
from contextlib import asynccontextmanager
from typing import List, Optional
from urllib.parse import urlencode

from fastapi import Depends, FastAPI, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .enrichment import Fetcher
from .errors import (
    ConflictError,
    DuplicateError,
    LinkCaptureError,
    NetworkError,
    NotFoundError,
    ValidationError,
)
from .lifecycle import AppState
from .models import Link, LinkPatch, Session
from .runtime import Workspace, Workspaces
from .storage import JsonLinkStore

logger = logging.getLogger(__name__)

DEFAULT_OWNER = "local"

# checked in order, so subclasses come first
STATUS_CODES = [
    (ValidationError, 400),
    (NotFoundError, 404),
    (DuplicateError, 409),
    (ConflictError, 409),
    (NetworkError, 503),
]


class LinkIn(BaseModel):
    url: str
    note: Optional[str] = None
    space_id: Optional[str] = None
    tag_ids: Optional[List[str]] = None


class ShareIn(BaseModel):
    text: str


class SpaceIn(BaseModel):
    name: str
    color: Optional[str] = None


class TagIn(BaseModel):
    name: str
    color: Optional[str] = None


class ConfigUpdate(BaseModel):
    page_size: Optional[int] = Field(None, gt=0)
    scroll_threshold: Optional[float] = Field(None, gt=0, le=1)
    metadata_max_attempts: Optional[int] = Field(None, gt=0)
    metadata_timeout_seconds: Optional[float] = Field(None, gt=0)
    metadata_proxy_url: Optional[str] = None
    retry_interval_seconds: Optional[float] = Field(None, ge=0)
    retry_debounce_seconds: Optional[float] = Field(None, ge=0)
    retry_batch_size: Optional[int] = Field(None, gt=0)
    rate_limit_per_second: Optional[int] = Field(None, gt=0)
    rate_limit_per_minute: Optional[int] = Field(None, gt=0)
    deep_link_scheme: Optional[str] = None


async def get_session(
    x_owner_id: str = Header(DEFAULT_OWNER),
    authorization: Optional[str] = Header(None),
) -> Session:
    owner_id = x_owner_id.strip()
    if not owner_id:
        raise ValidationError("Owner id required")
    return Session(owner_id=owner_id, token=authorization)


def create_app(store: Optional[JsonLinkStore] = None, fetcher: Optional[Fetcher] = None) -> FastAPI:
    store = store if store is not None else JsonLinkStore()
    workspaces = Workspaces(store, fetcher)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("state file: %s", store.path)
        # launching the app counts as coming to the foreground
        workspaces.resume(Session(owner_id=DEFAULT_OWNER))
        yield
        await workspaces.close()
        store.save()

    app = FastAPI(title="LinkCapture", lifespan=lifespan)
    app.state.store = store
    app.state.workspaces = workspaces

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    async def get_workspace(session: Session = Depends(get_session)) -> Workspace:
        return workspaces.get(session)

    def link_out(ws: Workspace, link: Link) -> dict:
        data = link.model_dump(mode="json")
        data["metadata_phase"] = ws.coordinator.phase(link).value
        data["pending"] = ws.engine.is_pending(link.id)
        return data

    def window(ws: Workspace) -> dict:
        return {
            "links": [link_out(ws, l) for l in ws.loader.items],
            "cursor": ws.loader.cursor.model_dump(),
            "loading": ws.loader.is_loading,
            "has_more": ws.loader.has_more,
        }

    @app.exception_handler(LinkCaptureError)
    async def handle_core_error(request: Request, exc: LinkCaptureError):
        status = next((code for cls, code in STATUS_CODES if isinstance(exc, cls)), 400)
        return JSONResponse(
            status_code=status,
            content={
                "detail": exc.message,
                "error": type(exc).__name__,
                "suggestion": exc.suggestion,
                "retryable": exc.retryable,
            },
        )

    @app.get("/api/links")
    async def list_links(ws: Workspace = Depends(get_workspace)):
        if ws.loader.cursor.page_index < 0 and not ws.loader.is_loading:
            await ws.loader.load_first_page()
        ws.ui_ready()
        return window(ws)

    @app.post("/api/links")
    async def add_link(body: LinkIn, ws: Workspace = Depends(get_workspace)):
        link = await ws.engine.create(
            ws.session, body.url, note=body.note, space_id=body.space_id, tag_ids=body.tag_ids or []
        )
        return {"link": link_out(ws, link)}

    @app.patch("/api/links/{id}")
    async def update_link(id: str, patch: LinkPatch, ws: Workspace = Depends(get_workspace)):
        link = await ws.engine.update(ws.session, id, patch)
        return {"link": link_out(ws, link)}

    @app.post("/api/links/{id}/open")
    async def open_link(id: str, ws: Workspace = Depends(get_workspace)):
        link = await ws.engine.mark_opened(ws.session, id)
        return {"link": link_out(ws, link)}

    @app.delete("/api/links/{id}")
    async def delete_link(id: str, ws: Workspace = Depends(get_workspace)):
        await ws.engine.delete(ws.session, id)
        return {"ok": True}

    @app.post("/api/links/{id}/metadata")
    async def refresh_metadata(id: str, ws: Workspace = Depends(get_workspace)):
        phase = await ws.coordinator.refresh(ws.session, id)
        link = await store.get_link(id)
        return {"phase": phase.value, "link": link_out(ws, link)}

    @app.post("/api/links/next-page")
    async def next_page(ws: Workspace = Depends(get_workspace)):
        added = await ws.loader.load_next_page()
        return {"added": [link_out(ws, l) for l in added], **window(ws)}

    @app.post("/api/links/refresh")
    async def refresh_links(ws: Workspace = Depends(get_workspace)):
        await ws.loader.refresh()
        return window(ws)

    @app.get("/api/search")
    async def search(q: str = "", ws: Workspace = Depends(get_workspace)):
        ws.loader.set_tags(await store.list_tags(ws.session.owner_id))
        res = ws.loader.search(q)
        return {"results": [link_out(ws, l) for l in res], "count": len(res)}

    @app.post("/api/share")
    async def share(body: ShareIn, ws: Workspace = Depends(get_workspace)):
        if not ws.reconciler.receive_text(body.text):
            raise ValidationError("No link found in the shared text")
        return {"ok": True, "pending": ws.reconciler.pending.url}

    @app.get("/share")
    async def deep_link(url: str, ws: Workspace = Depends(get_workspace)):
        uri = f"{ws.reconciler.scheme}://share?{urlencode({'url': url})}"
        if not ws.reconciler.receive_uri(uri):
            raise ValidationError("No link found in the deep link")
        return {"ok": True, "pending": ws.reconciler.pending.url}

    @app.get("/api/save-flow")
    async def get_save_flow(ws: Workspace = Depends(get_workspace)):
        ws.ui_ready()
        flow = await ws.current_save_flow()
        return {"flow": flow.to_dict() if flow else None}

    @app.post("/api/save-flow/details")
    async def save_flow_details(patch: LinkPatch, ws: Workspace = Depends(get_workspace)):
        flow = await ws.current_save_flow()
        if flow is None or flow.saved is None:
            raise NotFoundError("No link was just saved")
        flow.add_details()
        await flow.save_details(patch)
        return {"flow": flow.to_dict()}

    @app.post("/api/lifecycle/{state}")
    async def lifecycle(state: AppState, ws: Workspace = Depends(get_workspace)):
        task = ws.lifecycle.on_state_changed(state)
        updated = await task if task is not None else 0
        return {"state": state.value, "updated": updated}

    @app.get("/api/config")
    def get_config():
        return store.config

    @app.post("/api/config")
    async def update_config(payload: ConfigUpdate):
        for name, value in payload.model_dump(exclude_unset=True).items():
            if value is None and name != "metadata_proxy_url":
                continue
            setattr(store.config, name, value)
        store.save()
        workspaces.apply_config()
        return store.config

    @app.get("/api/spaces")
    async def list_spaces(session: Session = Depends(get_session)):
        return {"spaces": await store.list_spaces(session.owner_id)}

    @app.post("/api/spaces")
    async def add_space(payload: SpaceIn, session: Session = Depends(get_session)):
        name = payload.name.strip()
        if not name:
            raise ValidationError("Name required")
        return {"space": store.add_space(session.owner_id, name, payload.color)}

    @app.delete("/api/spaces/{id}")
    async def delete_space(id: str, ws: Workspace = Depends(get_workspace)):
        spaces = await store.list_spaces(ws.session.owner_id)
        if not any(s.id == id for s in spaces):
            raise NotFoundError(f"space {id} not found")
        store.remove_space(id)
        await ws.loader.refresh()
        return {"ok": True}

    @app.get("/api/tags")
    async def list_tags(session: Session = Depends(get_session)):
        return {"tags": await store.list_tags(session.owner_id)}

    @app.post("/api/tags")
    async def add_tag(payload: TagIn, session: Session = Depends(get_session)):
        name = payload.name.strip()
        if not name:
            raise ValidationError("Name required")
        return {"tag": store.add_tag(session.owner_id, name, payload.color)}

    return app


app = create_app()
