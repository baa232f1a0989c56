from fastapi import FastAPI, HTTPException, Depends, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from typing import List
import logging
import os
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

from config import ScoringConfig
from db import UserProfile, UserStore, UsernameTakenError, db
from schemas import (
    CheckUsernameRequest, CheckUsernameResponse,
    UserSummary,
    RegisterStartRequest, RegisterStartResponse,
    CalibrationSubmitRequest, CalibrationSubmitResponse,
    SecretSetupRequest, SecretSetupResponse,
    LoginStartRequest, LoginStartResponse,
    LoginSubmitRequest, LoginSubmitResponse,
)
from enroll_handlers import register_start, register_mantra, register_secret, register_answer
from verify_handlers import UserNotFoundError, login_start, login_mantra, login_challenge

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

scoring_config = ScoringConfig.from_env()


def get_store() -> UserStore:
    """Dependency returning the user store."""
    return db


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    await db.connect()
    logger.info("User store initialized")

    yield

    await db.disconnect()


app = FastAPI(lifespan=lifespan)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning(f"Validation error on {request.url.path}: {exc.errors()}")
    return JSONResponse(
        status_code=422,
        content={"detail": exc.errors()}
    )

# Enable CORS for frontend
from fastapi.middleware.cors import CORSMiddleware

app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def summarize_user(user: UserProfile) -> UserSummary:
    return UserSummary(
        id=user.id,
        username=user.username,
        secret_question=user.secret_question,
        mantra_quality=user.mantra_profile.quality,
        answer_quality=user.answer_profile.quality,
        created_at=user.created_at.isoformat(),
        last_login=user.last_login.isoformat() if user.last_login else None,
    )


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "ok"}


@app.get("/users", response_model=List[UserSummary])
async def api_list_users(store: UserStore = Depends(get_store)):
    """List registered users."""
    users = await store.list_users()
    return [summarize_user(u) for u in users]


@app.get("/users/{user_id}", response_model=UserSummary)
async def api_get_user(user_id: str, store: UserStore = Depends(get_store)):
    user = await store.get_user(user_id)
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")
    return summarize_user(user)


@app.delete("/users/{user_id}")
async def api_delete_user(user_id: str, store: UserStore = Depends(get_store)):
    """Delete a user (administrative)."""
    if not await store.delete_user(user_id):
        raise HTTPException(status_code=404, detail="User not found")
    return {"message": "User deleted"}


@app.delete("/reset")
async def api_reset(store: UserStore = Depends(get_store)):
    """Clear all users (administrative)."""
    await store.reset()
    return {"message": "Database cleared"}


@app.post("/check-username", response_model=CheckUsernameResponse)
async def api_check_username(req: CheckUsernameRequest, store: UserStore = Depends(get_store)):
    return CheckUsernameResponse(exists=await store.username_exists(req.username))


@app.post("/register/start", response_model=RegisterStartResponse)
async def api_register_start(req: RegisterStartRequest, store: UserStore = Depends(get_store)):
    """
    Start registration: reserve a session for the username and return the mantra.
    """
    try:
        return await register_start(req, store)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.post("/register/mantra", response_model=CalibrationSubmitResponse)
async def api_register_mantra(req: CalibrationSubmitRequest):
    """Submit one mantra calibration attempt."""
    return await register_mantra(req, scoring_config)


@app.post("/register/secret", response_model=SecretSetupResponse)
async def api_register_secret(req: SecretSetupRequest):
    """Set the secret question and answer."""
    return register_secret(req)


@app.post("/register/answer", response_model=CalibrationSubmitResponse)
async def api_register_answer(req: CalibrationSubmitRequest, store: UserStore = Depends(get_store)):
    """
    Submit one secret-answer calibration attempt; the last one persists the user.
    """
    try:
        return await register_answer(req, store, scoring_config)
    except UsernameTakenError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.exception(f"Error completing registration: {e}")
        raise HTTPException(status_code=500, detail="Failed to save user")


@app.post("/login/start", response_model=LoginStartResponse)
async def api_login_start(req: LoginStartRequest, store: UserStore = Depends(get_store)):
    """Select the user to authenticate."""
    try:
        return await login_start(req, store, scoring_config)
    except UserNotFoundError:
        raise HTTPException(status_code=404, detail="User not found")


@app.post("/login/mantra", response_model=LoginSubmitResponse)
async def api_login_mantra(req: LoginSubmitRequest, store: UserStore = Depends(get_store)):
    """
    Score the mantra attempt.

    Returns GRANTED, DENIED, or AWAITING_CHALLENGE_INPUT with the secret question.
    """
    try:
        return await login_mantra(req, store)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.post("/login/challenge", response_model=LoginSubmitResponse)
async def api_login_challenge(req: LoginSubmitRequest, store: UserStore = Depends(get_store)):
    """Score the secret answer attempt. The outcome is final."""
    try:
        return await login_challenge(req, store)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
