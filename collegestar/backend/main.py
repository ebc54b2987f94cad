import logging
import os
from typing import List, Optional

from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse
from fastapi.staticfiles import StaticFiles

from .. import __version__
from .config import Settings, configure_logging
from .domain import AuthError, NotFoundError, PermissionDenied, UploadTooLarge
from .models import (
    CurrentUserResponse,
    HealthResponse,
    LoginResponse,
    MessageResponse,
    NoteOut,
    NoteUpdate,
    ProfileOut,
    ProfileUpdate,
    RegisterData,
    UserCreds,
    UserResponse,
)
from .services import AuthService, CollegeStar, FileStore, ProfileStore, Storage
from .utils import time_now

logger = logging.getLogger(__name__)

def require_token(authorization: Optional[str] = Header(None)) -> str:
    """Reject requests without an ``Authorization`` header."""
    if not authorization:
        raise HTTPException(status_code=401, detail="Authorization header is required")
    return authorization

def to_http_error(e: Exception) -> HTTPException:
    """Map a domain exception onto the matching HTTP status."""
    if isinstance(e, PermissionDenied):
        return HTTPException(status_code=403, detail=str(e))
    if isinstance(e, AuthError):
        return HTTPException(status_code=401, detail=str(e))
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, UploadTooLarge):
        return HTTPException(status_code=413, detail=str(e))
    if isinstance(e, ValueError):
        return HTTPException(status_code=400, detail=str(e))
    logger.exception("Unhandled error: %s", e)
    return HTTPException(status_code=500, detail="Internal server error")

async def read_upload_with_limit(file: UploadFile, max_bytes: int) -> bytes:
    chunks = []
    size = 0
    while True:
        chunk = await file.read(1024 * 1024)
        if not chunk:
            break
        size += len(chunk)
        if size > max_bytes:
            raise UploadTooLarge(f"File exceeds the {max_bytes // (1024 * 1024)} MB limit")
        chunks.append(chunk)
    return b"".join(chunks)

def build_services(settings: Settings) -> CollegeStar:
    return CollegeStar(
        AuthService(settings.db_path),
        ProfileStore(settings.db_path),
        Storage(settings.db_path),
        FileStore(settings.upload_dir, settings.max_upload_bytes),
    )

def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)
    service = build_services(settings)

    app = FastAPI(
        title="CollegeStar API",
        description="Share, discover and download study notes",
        version=__version__,
    )
    app.state.settings = settings
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.mount("/uploads", StaticFiles(directory=settings.upload_dir), name="uploads")
    if os.path.exists(settings.website_dir):
        app.mount("/static", StaticFiles(directory=settings.website_dir), name="static")

    @app.get("/")
    async def read_root():
        index_path = os.path.join(settings.website_dir, "index.html")
        if os.path.exists(index_path):
            return FileResponse(index_path)
        return {"message": "CollegeStar API is running", "version": __version__}

    # Auth

    @app.post("/api/auth/register", response_model=UserResponse)
    async def register(creds: RegisterData):
        try:
            uid = service.register_user(creds.email, creds.password, creds.full_name)
            return UserResponse(success=True, user_id=uid)
        except AuthError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except Exception as e:
            raise to_http_error(e)

    @app.post("/api/auth/login", response_model=LoginResponse)
    async def login(creds: UserCreds):
        try:
            token, user_id = service.login(creds.email, creds.password)
            return LoginResponse(success=True, token=token, user_id=user_id)
        except Exception as e:
            raise to_http_error(e)

    @app.post("/api/auth/logout", response_model=MessageResponse)
    async def logout(token: str = Depends(require_token)):
        if service.logout(token):
            return MessageResponse(success=True, message="Logged out successfully")
        return MessageResponse(success=False, message="Already logged out")

    @app.get("/api/auth/me", response_model=CurrentUserResponse)
    async def me(token: str = Depends(require_token)):
        try:
            return CurrentUserResponse(**service.current_user(token))
        except Exception as e:
            raise to_http_error(e)

    # Notes

    @app.get("/api/notes", response_model=List[NoteOut])
    async def list_notes():
        return service.list_notes()

    @app.get("/api/notes/user/{user_id}", response_model=List[NoteOut])
    async def list_user_notes(user_id: str, token: str = Depends(require_token)):
        try:
            return [n.to_dict() for n in service.list_user_notes(token, user_id)]
        except Exception as e:
            raise to_http_error(e)

    @app.get("/api/notes/{note_id}", response_model=NoteOut)
    async def get_note(note_id: str):
        try:
            return service.get_note(note_id).to_dict()
        except Exception as e:
            raise to_http_error(e)

    @app.post("/api/notes", response_model=NoteOut, status_code=201)
    async def add_note(
        title: str = Form(...),
        subject: str = Form(...),
        description: str = Form(""),
        tags: str = Form("[]"),
        file: UploadFile = File(...),
        token: str = Depends(require_token),
    ):
        try:
            # Authenticate before reading the body into memory.
            service.auth.validate(token)
            content = await read_upload_with_limit(file, settings.max_upload_bytes)
            note = service.add_note(
                token, title, subject, file.filename or "", content,
                description=description, tags=tags,
            )
            return note.to_dict()
        except Exception as e:
            raise to_http_error(e)
        finally:
            await file.close()

    @app.put("/api/notes/{note_id}", response_model=NoteOut)
    async def update_note(note_id: str, changes: NoteUpdate, token: str = Depends(require_token)):
        try:
            note = service.update_note(token, note_id, changes.model_dump(exclude_unset=True))
            return note.to_dict()
        except Exception as e:
            raise to_http_error(e)

    @app.post("/api/notes/{note_id}/download", response_model=NoteOut)
    async def download_note(note_id: str):
        try:
            return service.record_download(note_id).to_dict()
        except Exception as e:
            raise to_http_error(e)

    @app.delete("/api/notes/{note_id}", response_model=MessageResponse)
    async def delete_note(note_id: str, token: str = Depends(require_token)):
        try:
            if not service.delete_note(token, note_id):
                raise NotFoundError("Note not found")
            return MessageResponse(success=True, message="Note deleted")
        except Exception as e:
            raise to_http_error(e)

    # Profiles

    @app.get("/api/profiles/{user_id}", response_model=ProfileOut)
    async def get_profile(user_id: str):
        try:
            return service.get_profile(user_id).to_dict()
        except Exception as e:
            raise to_http_error(e)

    @app.put("/api/profiles/{user_id}", response_model=ProfileOut)
    async def update_profile(user_id: str, changes: ProfileUpdate, token: str = Depends(require_token)):
        try:
            profile = service.update_profile(token, user_id, changes.model_dump(exclude_unset=True))
            return profile.to_dict()
        except Exception as e:
            raise to_http_error(e)

    @app.get("/health", response_model=HealthResponse)
    async def health_check():
        return HealthResponse(
            status="healthy",
            timestamp=time_now(),
            users_count=len(service.auth.users),
            active_sessions=len(service.auth.active),
            notes_count=service.store.count(),
        )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        response = await call_next(request)
        logger.debug("%s %s -> %s", request.method, request.url.path, response.status_code)
        return response

    logger.info("CollegeStar API ready (db=%s, uploads=%s)", settings.db_path, settings.upload_dir)
    return app

def run() -> None:
    import uvicorn

    settings = Settings.from_env()
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)

if __name__ == "__main__":
    run()
