"""
Handlers for the /login endpoints.

This module implements:
- Login start: bind a stored user to a new authentication session
- Mantra stage: score the mantra attempt and apply the primary decision
- Challenge stage: score the secret answer attempt and apply the final decision
"""
import logging
import os
import uuid
from datetime import datetime, timedelta
from typing import Dict, Optional

from config import DEFAULT_CONFIG, ScoringConfig
from db import UserProfile, UserStore
from keystroke_features import extract_timings
from policy import AuthState, AuthenticationFlow, InvalidTransitionError
from schemas import (
    LivenessInfo,
    LoginStartRequest, LoginStartResponse,
    LoginSubmitRequest, LoginSubmitResponse,
    MatchInfo,
)
from scoring import MatchResult

logger = logging.getLogger(__name__)

SESSION_TTL_MINUTES = int(os.getenv("SESSION_TTL_MINUTES", "60"))


class UserNotFoundError(LookupError):
    """Raised when a login targets an unknown user id."""


class LoginSession:
    """One authentication attempt for one user."""

    def __init__(self, user: UserProfile, config: ScoringConfig = DEFAULT_CONFIG):
        self.session_token = str(uuid.uuid4())
        self.user = user
        self.flow = AuthenticationFlow(config)
        self.flow.select_subject(user)
        self.created_at = datetime.utcnow()
        self.expires_at = self.created_at + timedelta(minutes=SESSION_TTL_MINUTES)

    def is_expired(self) -> bool:
        return datetime.utcnow() > self.expires_at


# In-memory session storage
_login_sessions: Dict[str, LoginSession] = {}


def match_to_info(match: Optional[MatchResult]) -> Optional[MatchInfo]:
    if match is None:
        return None
    return MatchInfo(
        distance=match.distance,
        confidence=match.confidence,
        dwell_score=match.dwell_score,
        flight_score=match.flight_score,
        dd_score=match.dd_score,
        weights=match.weights,
        liveness=LivenessInfo(**match.liveness.to_dict()),
    )


def _response(session: LoginSession) -> LoginSubmitResponse:
    flow = session.flow
    return LoginSubmitResponse(
        state=flow.state.value,
        confidence=flow.confidence,
        reasons=list(flow.reasons),
        mantra_match=match_to_info(flow.mantra_match),
        answer_match=match_to_info(flow.answer_match),
        combined_distance=flow.challenge.combined_distance if flow.challenge else None,
        secret_question=(
            session.user.secret_question
            if flow.state == AuthState.AWAITING_CHALLENGE_INPUT else None
        ),
    )


def _get_session(token: str) -> LoginSession:
    session = _login_sessions.get(token)
    if session is None:
        raise ValueError("invalid_session_token")
    if session.is_expired():
        _login_sessions.pop(token, None)
        raise ValueError("session_expired")
    return session


def cleanup_expired_sessions() -> int:
    """Remove expired login sessions from memory."""
    expired = [
        token for token, session in _login_sessions.items()
        if session.is_expired()
    ]
    for token in expired:
        del _login_sessions[token]
    if expired:
        logger.debug(f"Dropped {len(expired)} expired login sessions")
    return len(expired)


async def _finish(session: LoginSession, store: UserStore) -> None:
    if not session.flow.is_terminal:
        return
    _login_sessions.pop(session.session_token, None)

    state = session.flow.state
    logger.info(
        f"Authentication {state.value} for {session.user.username} "
        f"(confidence={session.flow.confidence}, reasons={session.flow.reasons})"
    )
    if state == AuthState.GRANTED:
        await store.update_last_login(session.user.id)


async def login_start(
    request: LoginStartRequest,
    store: UserStore,
    config: ScoringConfig = DEFAULT_CONFIG
) -> LoginStartResponse:
    """
    Select the user to authenticate.

    Raises:
        UserNotFoundError: If the user does not exist
    """
    user = await store.get_user(request.user_id)
    if user is None:
        raise UserNotFoundError(f"User {request.user_id} not found")

    cleanup_expired_sessions()
    session = LoginSession(user, config)
    _login_sessions[session.session_token] = session

    return LoginStartResponse(
        session_token=session.session_token,
        username=user.username,
        mantra_text=user.mantra_profile.target_text,
        state=session.flow.state.value,
    )


async def login_mantra(request: LoginSubmitRequest, store: UserStore) -> LoginSubmitResponse:
    """
    Score the mantra attempt and apply the primary decision.

    Raises:
        ValueError: For unknown/expired sessions or out-of-order submissions
    """
    session = _get_session(request.session_token)
    timings = extract_timings([k.to_raw() for k in request.keystrokes])

    try:
        session.flow.score_primary(timings, session.user.mantra_profile)
    except InvalidTransitionError as e:
        raise ValueError(str(e)) from e

    await _finish(session, store)
    return _response(session)


async def login_challenge(request: LoginSubmitRequest, store: UserStore) -> LoginSubmitResponse:
    """
    Score the secret answer attempt and apply the final decision.

    Raises:
        ValueError: For unknown/expired sessions or out-of-order submissions
    """
    session = _get_session(request.session_token)
    timings = extract_timings([k.to_raw() for k in request.keystrokes])

    try:
        session.flow.score_challenge(timings, session.user.answer_profile)
    except InvalidTransitionError as e:
        raise ValueError(str(e)) from e

    await _finish(session, store)
    return _response(session)
