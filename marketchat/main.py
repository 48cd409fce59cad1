from dotenv import load_dotenv

from fastapi import FastAPI, Depends
from fastapi.middleware.cors import CORSMiddleware

from .chat import routers as chat_router
from .core.dependencies import verify_token
from .core.middleware import logging_middleware
from .utils.env_helper import env_list
from .utils.logging_config import setup_logging

load_dotenv()
setup_logging()

app = FastAPI(title="marketchat")
app.include_router(chat_router.router, prefix="/chat", tags=["Chat"])
app.middleware("http")(logging_middleware)


origins = env_list(
    "CORS_ORIGINS",
    [
        "http://localhost:8081",
        "http://localhost:19006",
    ],
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/auth/check")
def auth_check(user=Depends(verify_token)):
    """Lets a client confirm its Supabase token is accepted before opening chats."""
    return {"email": user.get("email"), "sub": user.get("sub")}
