import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from threadchat.api.routes import auth, chat, health, settings
from threadchat.config import get_settings
from threadchat.services.dispatcher_service import MessageDispatcher
from threadchat.services.session_registry import SessionRegistry
from threadchat.services.storage_service import EphemeralBlobStore

logging.basicConfig(level=logging.INFO)

app = FastAPI(title="threadchat API")

app.add_middleware(
    CORSMiddleware,
    allow_origin_regex=r"http://localhost:\d+",
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router, prefix="/api", tags=["health"])
app.include_router(auth.router, prefix="/api", tags=["auth"])
app.include_router(chat.router, prefix="/api", tags=["chat"])
app.include_router(settings.router, prefix="/api", tags=["settings"])


def init_state(target: FastAPI) -> None:
    """Create the per-process conversation state and hang it on the app."""
    registry = SessionRegistry(model=get_settings().llm_model)
    target.state.registry = registry
    target.state.dispatcher = MessageDispatcher(registry)
    target.state.blobs = EphemeralBlobStore()


@app.on_event("startup")
async def apply_saved_settings():
    """Apply user settings from JSON file on startup if it exists."""
    from threadchat.api.routes.settings import _load_settings, _apply_settings, SETTINGS_FILE
    if SETTINGS_FILE.exists():
        _apply_settings(_load_settings())
    init_state(app)


@app.on_event("startup")
async def ensure_storage_bucket():
    """Create the attachments bucket on startup if possible."""
    from threadchat.services.storage_service import StorageService
    storage = StorageService(app.state.blobs)
    if not await storage.ensure_bucket():
        logging.getLogger(__name__).warning("Attachments will be kept in memory only")


@app.on_event("shutdown")
async def finish_pending_sends():
    await app.state.dispatcher.wait_idle()
