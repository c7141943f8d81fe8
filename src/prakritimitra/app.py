import socketio
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.staticfiles import StaticFiles

from prakritimitra.config import Settings
from prakritimitra.database import lifespan
from prakritimitra.exceptions import (
    ProblemException,
    UnprocessableContent,
    problem_exception_handler,
)
from prakritimitra.routes.chatbox import UPLOAD_URL_PREFIX, router as chatbox_router
from prakritimitra.routes.events import router as events_router
from prakritimitra.routes.problems import router as problems_router
from prakritimitra.routes.registrations import router as registrations_router
from prakritimitra.socketio import sio

app = FastAPI(title="PrakritiMitra API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=Settings().cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register exception handlers
app.add_exception_handler(ProblemException, problem_exception_handler)


@app.exception_handler(RequestValidationError)
async def _validation_exception_handler(
    _request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Convert FastAPI validation errors to RFC 9457 problem detail."""
    detail = "; ".join(
        f"{'.'.join(str(x) for x in e['loc'])}: {e['msg']}" for e in exc.errors()
    )
    problem = UnprocessableContent.create(detail=detail)
    return JSONResponse(
        status_code=422,
        content=problem.model_dump(exclude_none=True),
        media_type="application/problem+json",
    )


# Include routers
app.include_router(chatbox_router)
app.include_router(events_router)
app.include_router(problems_router)
app.include_router(registrations_router)

# Uploaded attachments; check_dir=False because the lifespan creates it
app.mount(
    UPLOAD_URL_PREFIX,
    StaticFiles(directory=Settings().media_path, check_dir=False),
    name="uploads",
)

# Mount Socket.IO
socket_app = socketio.ASGIApp(sio, other_asgi_app=app)
