from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from research_chat.api.routes import chat
from research_chat.config import settings
from research_chat.dependencies import build_dependencies
from research_chat.models.schemas import HealthResponse


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    if getattr(app.state, "deps", None) is None:
        app.state.deps = build_dependencies(settings)
    yield
    # Shutdown
    deps = app.state.deps
    await deps.background.drain(timeout=10)
    closer = getattr(deps.provider, "aclose", None)
    if closer is not None:
        await closer()


app = FastAPI(
    title="Research Chat",
    description="Streaming company research chat over the OpenAI Responses API",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routes
app.include_router(chat.router)


@app.get("/api/health", response_model=HealthResponse)
async def health():
    return HealthResponse(
        status="ok",
        service="research-chat",
        details={
            "default_model": settings.default_model,
            "deep_model": settings.deep_model,
            "supabase": bool(settings.supabase_url),
        },
    )
