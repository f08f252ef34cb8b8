"""Main FastAPI application."""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from parley import __version__
from parley.api.endpoints import router
from parley.utils.logging import setup_logging

setup_logging()

app = FastAPI(
    title="Parley",
    description=(
        "Tool-calling conversation orchestration for LLM backends, with bounded correction, "
        "tiered context compaction and per-conversation persistence."
    ),
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_tags=[
        {
            "name": "Conversation",
            "description": "Run, stream, cancel and inspect conversation turns scoped by user and world.",
        },
        {
            "name": "Tools",
            "description": "Registered tools and their execution statistics.",
        },
        {
            "name": "Health",
            "description": "Service health monitoring and status checks.",
        },
    ],
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("parley.main:app", host="0.0.0.0", port=8000, reload=True, log_level="info")
